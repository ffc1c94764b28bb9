"""
Service layer for database operations.
Route handlers and background workers go through these instead of querying models directly.
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from concierge.db_models import (
    ContactChannel,
    DBInteractionLog,
    DBProvider,
    DBServiceRequest,
    InteractionStatus,
    RequestStatus,
    RequestType,
    Urgency,
)
from concierge.errors import NotFoundError
from concierge.logging_config import get_logger
from concierge.phone import normalize_phone_to_e164

logger = get_logger(__name__)

# Statuses in which an inbound SMS reply can still pick a provider
AWAITING_SELECTION_STATUSES = (
    RequestStatus.RECOMMENDED,
    RequestStatus.BOOKING,
    RequestStatus.CALLING,
    RequestStatus.ANALYZING,
)


class ServiceRequestService:
    """Service for managing service requests."""

    @staticmethod
    def create_request(
        db: Session,
        title: str,
        location: str,
        description: Optional[str] = None,
        criteria: str = "",
        urgency: Urgency = Urgency.WITHIN_2_DAYS,
        request_type: RequestType = RequestType.RESEARCH_AND_BOOK,
        user_name: Optional[str] = None,
        user_phone: Optional[str] = None,
        preferred_contact: ContactChannel = ContactChannel.TEXT,
    ) -> DBServiceRequest:
        """Create a new service request in RESEARCHING."""
        service_request = DBServiceRequest(
            type=request_type,
            title=title,
            description=description,
            criteria=criteria,
            location=location,
            urgency=urgency,
            status=RequestStatus.RESEARCHING,
            user_name=user_name,
            user_phone=normalize_phone_to_e164(user_phone) or user_phone,
            preferred_contact=preferred_contact,
        )
        db.add(service_request)
        db.commit()
        db.refresh(service_request)

        logger.info("service_request_created", request_id=service_request.id, type=request_type.value)
        return service_request

    @staticmethod
    def get_request(db: Session, request_id: str) -> Optional[DBServiceRequest]:
        """Get service request by ID."""
        return db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).first()

    @staticmethod
    def require_request(db: Session, request_id: str) -> DBServiceRequest:
        """Get service request by ID or raise NotFoundError."""
        service_request = ServiceRequestService.get_request(db, request_id)
        if service_request is None:
            logger.warning("service_request_not_found", request_id=request_id)
            raise NotFoundError(f"Service request {request_id} not found")
        return service_request

    @staticmethod
    def list_requests(
        db: Session,
        skip: int = 0,
        limit: int = 100,
        status: Optional[RequestStatus] = None,
    ) -> List[DBServiceRequest]:
        """List service requests, newest first."""
        query = db.query(DBServiceRequest)

        if status:
            query = query.filter(DBServiceRequest.status == status)

        return query.order_by(DBServiceRequest.created_at.desc()).offset(skip).limit(limit).all()

    @staticmethod
    def latest_awaiting_selection(db: Session, phone: str) -> Optional[DBServiceRequest]:
        """Most recent request for this phone that has recommendations to choose from."""
        normalized = normalize_phone_to_e164(phone) or phone
        return (
            db.query(DBServiceRequest)
            .filter(DBServiceRequest.user_phone == normalized)
            .filter(DBServiceRequest.status.in_(AWAITING_SELECTION_STATUSES))
            .filter(DBServiceRequest.recommendations.isnot(None))
            .order_by(DBServiceRequest.created_at.desc())
            .first()
        )

    @staticmethod
    def latest_for_phone(db: Session, phone: str) -> Optional[DBServiceRequest]:
        normalized = normalize_phone_to_e164(phone) or phone
        return (
            db.query(DBServiceRequest)
            .filter(DBServiceRequest.user_phone == normalized)
            .order_by(DBServiceRequest.created_at.desc())
            .first()
        )


class ProviderService:
    """Service for managing providers."""

    @staticmethod
    def add_providers(db: Session, request_id: str, providers: List[dict]) -> List[DBProvider]:
        """
        Persist research results for a request.

        Entries without a dialable phone number are skipped.
        """
        created = []
        for entry in providers:
            phone = normalize_phone_to_e164(entry.get("phone"))
            if phone is None:
                logger.info("provider_skipped_no_phone", request_id=request_id, name=entry.get("name"))
                continue
            provider = DBProvider(
                request_id=request_id,
                name=entry["name"],
                phone=phone,
                rating=entry.get("rating"),
                review_count=entry.get("review_count"),
                address=entry.get("address"),
                source_id=entry.get("source_id"),
            )
            db.add(provider)
            created.append(provider)

        db.commit()
        for provider in created:
            db.refresh(provider)

        logger.info("providers_added", request_id=request_id, count=len(created))
        return created

    @staticmethod
    def get_provider(db: Session, provider_id: str) -> Optional[DBProvider]:
        """Get provider by ID."""
        return db.query(DBProvider).filter(DBProvider.id == provider_id).first()

    @staticmethod
    def require_provider(db: Session, provider_id: str, request_id: Optional[str] = None) -> DBProvider:
        """Get provider by ID (optionally scoped to a request) or raise NotFoundError."""
        provider = ProviderService.get_provider(db, provider_id)
        if provider is None or (request_id is not None and provider.request_id != request_id):
            logger.warning("provider_not_found", provider_id=provider_id, request_id=request_id)
            raise NotFoundError(f"Provider {provider_id} not found")
        return provider

    @staticmethod
    def list_for_request(db: Session, request_id: str) -> List[DBProvider]:
        """Providers of a request in research order."""
        return (
            db.query(DBProvider)
            .filter(DBProvider.request_id == request_id)
            .order_by(DBProvider.created_at, DBProvider.id)
            .all()
        )


class InteractionLogService:
    """Service for the append-only interaction log."""

    @staticmethod
    def add_log(
        db: Session,
        request_id: str,
        step_name: str,
        detail: str = "",
        status: InteractionStatus = InteractionStatus.INFO,
        transcript: Optional[Any] = None,
        call_id: Optional[str] = None,
        commit: bool = True,
    ) -> Optional[DBInteractionLog]:
        """
        Append a log entry.

        Returns None without writing when an entry for `call_id` already exists.
        """
        if call_id and InteractionLogService.has_call_log(db, call_id):
            logger.debug("interaction_log_duplicate", request_id=request_id, call_id=call_id)
            return None

        entry = DBInteractionLog(
            request_id=request_id,
            step_name=step_name,
            detail=detail,
            status=status,
            transcript=transcript,
            call_id=call_id or None,
            created_at=datetime.utcnow(),
        )
        db.add(entry)
        if commit:
            db.commit()
            db.refresh(entry)
        return entry

    @staticmethod
    def has_call_log(db: Session, call_id: str) -> bool:
        return db.query(DBInteractionLog.id).filter(DBInteractionLog.call_id == call_id).first() is not None

    @staticmethod
    def list_logs(db: Session, request_id: str) -> List[DBInteractionLog]:
        """Log entries of a request in canonical (chronological) order."""
        return (
            db.query(DBInteractionLog)
            .filter(DBInteractionLog.request_id == request_id)
            .order_by(DBInteractionLog.created_at, DBInteractionLog.id)
            .all()
        )
