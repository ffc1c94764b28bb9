"""Main FastAPI application."""

import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from concierge.booking import BookingService
from concierge.call_client import OutboundCallClient
from concierge.config import VERSION, Config
from concierge.database import create_db_engine, create_session_factory, init_db
from concierge.dispatcher import BatchDispatcher
from concierge.errors import (
    ConciergeError,
    InvalidTransitionError,
    NotFoundError,
    VendorError,
    WorkflowEngineUnavailableError,
)
from concierge.health import router as health_router
from concierge.http import build_async_client
from concierge.kestra_client import WorkflowEngineClient
from concierge.logging_config import configure_logging, get_logger
from concierge.metrics import api_request_duration, api_requests_total
from concierge.notifications import NotificationDispatcher, SmsClient
from concierge.orchestrator import StatusOrchestrator
from concierge.reconciler import ResultReconciler
from concierge.research import ResearchService
from concierge.routers.bookings import router as bookings_router
from concierge.routers.core import router as core_router
from concierge.routers.notifications import router as notifications_router
from concierge.routers.providers import router as providers_router
from concierge.routers.requests import router as requests_router
from concierge.routers.twilio import router as twilio_router
from concierge.routers.vapi import router as vapi_router
from concierge.vapi_client import VapiApiClient
from concierge.webhook import WebhookReceiver
from concierge.webhook_cache import WebhookCache

logger = get_logger(__name__)


def build_components(
    app: FastAPI,
    config: Config,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    twilio_client: Optional[Any] = None,
) -> list[httpx.AsyncClient]:
    """Wire every service onto app.state. Returns the HTTP clients to close on shutdown."""
    engine = create_db_engine(config.DATABASE_URL, echo=config.DEBUG)
    init_db(engine)
    session_factory = create_session_factory(engine)
    logger.info("database_initialized", url=engine.url.render_as_string(hide_password=True))

    extra = {"transport": transport} if transport is not None else {}
    vapi_http = build_async_client(config.HTTP_TIMEOUT_SECONDS, **extra)
    places_http = build_async_client(config.HTTP_TIMEOUT_SECONDS, **extra)
    kestra_http = build_async_client(config.HTTP_TIMEOUT_SECONDS, **extra)
    retry = {"max_retries": config.HTTP_MAX_RETRIES, "backoff": config.HTTP_RETRY_BACKOFF_SECONDS}

    vapi = VapiApiClient(config.VAPI_API_KEY, vapi_http, base_url=config.VAPI_BASE_URL, **retry)
    cache = WebhookCache(ttl_seconds=config.WEBHOOK_CACHE_TTL_SECONDS)
    reconciler = ResultReconciler(session_factory)
    call_client = OutboundCallClient(config, vapi, cache=cache)
    dispatcher = BatchDispatcher(
        call_client,
        max_concurrent=config.MAX_CONCURRENT_CALLS,
        group_delay=config.BATCH_GROUP_DELAY_SECONDS,
    )

    workflow = None
    if config.KESTRA_ENABLED:
        workflow = WorkflowEngineClient(
            kestra_http,
            config.KESTRA_URL,
            namespace=config.KESTRA_NAMESPACE,
            auth=config.kestra_auth(),
            api_token=config.KESTRA_API_TOKEN,
            health_timeout=config.KESTRA_HEALTH_CHECK_TIMEOUT_SECONDS,
            poll_interval=config.KESTRA_POLL_INTERVAL_SECONDS,
            poll_timeout=config.KESTRA_POLL_TIMEOUT_SECONDS,
            **retry,
        )

    research = ResearchService(
        places_http,
        api_key=config.GOOGLE_PLACES_API_KEY,
        base_url=config.PLACES_BASE_URL,
        workflow=workflow,
        kestra_strict=config.KESTRA_STRICT,
        **retry,
    )
    sms = SmsClient(
        config.TWILIO_ACCOUNT_SID,
        config.TWILIO_AUTH_TOKEN,
        config.TWILIO_PHONE_NUMBER,
        client=twilio_client,
    )
    notifier = NotificationDispatcher(
        session_factory,
        sms,
        call_client=call_client if config.has_vapi_config() else None,
        reconciler=reconciler,
        frontend_url=config.FRONTEND_URL,
    )
    booking = BookingService(
        session_factory, call_client, reconciler, workflow=workflow, kestra_strict=config.KESTRA_STRICT
    )
    orchestrator = StatusOrchestrator(
        session_factory,
        reconciler,
        dispatcher,
        booking,
        notifier=notifier,
        research=research,
        workflow=workflow,
        kestra_strict=config.KESTRA_STRICT,
    )
    receiver = WebhookReceiver(
        cache,
        reconciler,
        vapi=vapi if config.VAPI_API_KEY else None,
        enrichment_delays=config.VAPI_ENRICHMENT_DELAYS,
        on_settled=orchestrator.handle_settled_call,
    )

    state = app.state
    state.engine = engine
    state.session_factory = session_factory
    state.webhook_cache = cache
    state.reconciler = reconciler
    state.call_client = call_client
    state.dispatcher = dispatcher
    state.workflow = workflow
    state.research = research
    state.notifier = notifier
    state.booking = booking
    state.orchestrator = orchestrator
    state.webhook_receiver = receiver

    logger.info(
        "components_ready",
        vapi_configured=config.has_vapi_config(),
        webhook_mode="hybrid" if call_client.hybrid else "polling",
        kestra_enabled=config.KESTRA_ENABLED,
        sms_available=sms.available,
        live_calls=config.LIVE_CALLS_ENABLED,
    )
    return [vapi_http, places_http, kestra_http]


def _error(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, "message": message, **extra})


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
            for err in exc.errors()
        ]
        logger.warning("request_validation_failed", path=request.url.path, errors=len(details))
        return _error(422, "validation_error", "Invalid request body", details=details)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, "not_found", str(exc))

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return _error(409, "invalid_transition", str(exc))

    @app.exception_handler(WorkflowEngineUnavailableError)
    async def workflow_unavailable_handler(request: Request, exc: WorkflowEngineUnavailableError):
        return _error(503, "workflow_engine_unavailable", str(exc))

    @app.exception_handler(VendorError)
    async def vendor_error_handler(request: Request, exc: VendorError):
        logger.error("vendor_error", path=request.url.path, error=str(exc), status_code=exc.status_code)
        return _error(502, "vendor_error", str(exc))

    @app.exception_handler(ConciergeError)
    async def concierge_error_handler(request: Request, exc: ConciergeError):
        logger.error("request_failed", path=request.url.path, error=str(exc))
        return _error(500, "internal_error", str(exc))


def create_app(
    config: Optional[Config] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    twilio_client: Optional[Any] = None,
) -> FastAPI:
    """
    Build the application.

    `transport` replaces the network for every outbound HTTP client and
    `twilio_client` replaces the Twilio SDK client; both exist for tests.
    """
    config = config or Config()
    configure_logging(config.LOG_LEVEL, config.DEBUG, version=VERSION)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - startup and shutdown."""
        logger.info("application_starting", version=VERSION)
        clients = build_components(app, config, transport=transport, twilio_client=twilio_client)

        yield

        logger.info("application_shutting_down")
        await app.state.webhook_receiver.drain()
        for client in clients:
            await client.aclose()
        app.state.engine.dispose()

    app = FastAPI(
        title="ConciergeAI API",
        description="AI concierge that researches, calls and books local service providers",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_metrics(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        api_requests_total.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
        api_request_duration.observe(time.perf_counter() - started)
        return response

    register_exception_handlers(app)

    # GET /metrics
    # Gets: nothing
    # Returns: Prometheus text exposition
    # Example:
    #   curl http://localhost:8000/metrics
    @app.get("/metrics", tags=["Health & Monitoring"])
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(core_router)
    app.include_router(health_router)
    app.include_router(requests_router)
    app.include_router(providers_router)
    app.include_router(vapi_router)
    app.include_router(bookings_router)
    app.include_router(notifications_router)
    app.include_router(twilio_router)

    return app


app = create_app()
