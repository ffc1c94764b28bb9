"""
User notifications.

Tells the user their recommendations are ready, exactly once per request, by
SMS or by a phone call that reads the options out and captures a choice.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from concierge.assistant import notification_assistant
from concierge.call_client import OutboundCallClient
from concierge.db_models import ContactChannel, DBServiceRequest, InteractionStatus
from concierge.errors import NotFoundError, PersistenceError
from concierge.logging_config import get_logger
from concierge.metrics import notifications_sent
from concierge.models import CallKind, CallRequest, CallResult, CallResultStatus
from concierge.reconciler import ResultReconciler

logger = get_logger(__name__)

# Claim marker written while a send is in flight
SENDING = "sending"
SMS_REASON_LIMIT = 100
SMS_OVERALL_LIMIT = 120


class SmsResult(BaseModel):
    success: bool
    message_sid: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class NotificationResult(BaseModel):
    success: bool
    method: str  # vapi | sms | already_sent | skipped
    call_id: Optional[str] = None
    message_sid: Optional[str] = None
    selected_provider: Optional[int] = None
    error: Optional[str] = None


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit - 3] + "..."


def format_recommendations_sms(
    user_name: Optional[str],
    recommendations: List[dict],
    overall: Optional[str] = None,
    request_url: Optional[str] = None,
) -> str:
    name = user_name or "Customer"
    if not recommendations:
        return (
            f"Hi {name}, unfortunately no providers matched your criteria. "
            "Please try again with different requirements. - AI Concierge"
        )

    count = len(recommendations)
    top = recommendations[0]
    lines = [f"ACTION NEEDED: {name}, your AI Concierge found {count} qualified provider{'s' if count > 1 else ''}!", ""]
    lines.append(f"TOP PICK: {top.get('providerName')}")
    if top.get("rating"):
        rating = f"{'★' * round(top['rating'])} {top['rating']:.1f}"
        if top.get("reviewCount"):
            rating += f" ({top['reviewCount']} reviews)"
        lines.append(rating)
    lines.append(f"Available: {top.get('earliestAvailability') or 'Contact for details'}")
    if top.get("estimatedRate"):
        lines.append(f"Est. Rate: {top['estimatedRate']}")
    if top.get("reasoning"):
        lines.append(f"Why: {_truncate(top['reasoning'], SMS_REASON_LIMIT)}")

    if count > 1:
        lines.extend(["", "OTHER OPTIONS:"])
        for index, rec in enumerate(recommendations[1:3], start=2):
            line = f"{index}. {rec.get('providerName')}"
            if rec.get("rating"):
                line += f" ({rec['rating']:.1f}★)"
            line += f" - {rec.get('earliestAvailability') or 'Contact'}"
            lines.append(line)

    if overall:
        lines.extend(["", f"AI RECOMMENDATION: {_truncate(overall, SMS_OVERALL_LIMIT)}"])
    if request_url:
        lines.extend(["", f"Details: {request_url}"])

    options = ", ".join(str(i) for i in range(1, min(count, 3) + 1))
    lines.extend(["", f"Reply {options} NOW to book before slots fill up!", "", "- AI Concierge"])
    return "\n".join(lines)


def format_confirmation_sms(
    user_name: Optional[str],
    provider_name: str,
    booking_date: Optional[str] = None,
    booking_time: Optional[str] = None,
    confirmation_number: Optional[str] = None,
) -> str:
    lines = [f"Hi{' ' + user_name if user_name else ''}! Great news - your appointment is confirmed!", ""]
    lines.append(f"Provider: {provider_name}")
    if booking_date:
        lines.append(f"Date: {booking_date}")
    if booking_time:
        lines.append(f"Time: {booking_time}")
    if confirmation_number:
        lines.append(f"Confirmation #: {confirmation_number}")
    lines.extend(["", "We'll send you a reminder before your appointment.", "", "- AI Concierge"])
    return "\n".join(lines)


class SmsClient:
    """Twilio messaging. The SDK is blocking, so sends run in a worker thread."""

    def __init__(self, account_sid: str, auth_token: str, from_number: str, client: Optional[Any] = None):
        self.from_number = from_number
        self._client = client
        if self._client is None and account_sid and auth_token:
            self._client = Client(account_sid, auth_token)
        if not self.available:
            logger.warning("sms_disabled", reason="Twilio credentials not configured")

    @property
    def available(self) -> bool:
        return self._client is not None and bool(self.from_number)

    async def send(self, to: str, body: str) -> SmsResult:
        if not self.available:
            return SmsResult(success=False, error="Twilio not configured")
        try:
            message = await asyncio.to_thread(
                self._client.messages.create, body=body, to=to, from_=self.from_number
            )
        except (TwilioException, OSError) as e:
            logger.error("sms_send_failed", to=to, error=str(e))
            return SmsResult(success=False, error=str(e))

        logger.info("sms_sent", to=to, message_sid=message.sid, status=message.status)
        return SmsResult(success=True, message_sid=message.sid, status=message.status)


class NotificationDispatcher:
    """Sends the recommendations notification at most once per request."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sms: SmsClient,
        call_client: Optional[OutboundCallClient] = None,
        reconciler: Optional[ResultReconciler] = None,
        frontend_url: str = "http://localhost:3000",
    ):
        self.session_factory = session_factory
        self.sms = sms
        self.call_client = call_client
        self.reconciler = reconciler
        self.frontend_url = frontend_url.rstrip("/")

    def _claim(self, request_id: str) -> bool:
        """Atomically mark the request as being notified. False if already sent or in flight."""
        with self.session_factory() as db:
            try:
                claimed = (
                    db.query(DBServiceRequest)
                    .filter(DBServiceRequest.id == request_id)
                    .filter(DBServiceRequest.notification_sent_at.is_(None))
                    .filter(
                        (DBServiceRequest.notification_method.is_(None))
                        | (DBServiceRequest.notification_method != SENDING)
                    )
                    .update({DBServiceRequest.notification_method: SENDING}, synchronize_session=False)
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("notification_claim_failed", request_id=request_id, error=str(e))
                raise PersistenceError(f"Failed to claim notification for {request_id}: {e}") from e
        return claimed == 1

    def _finish(self, request_id: str, method: Optional[str]) -> None:
        """Record the sent timestamp, or release the claim so a retry is possible."""
        values = {DBServiceRequest.notification_method: method}
        if method is not None:
            values[DBServiceRequest.notification_sent_at] = datetime.utcnow()
        with self.session_factory() as db:
            try:
                db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).update(
                    values, synchronize_session=False
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("notification_status_update_failed", request_id=request_id, error=str(e))

    async def notify(self, request_id: str, channel: Optional[ContactChannel] = None) -> NotificationResult:
        """
        Notify the user of request `request_id` about its recommendations.

        Returns an `already_sent` result when a notification was sent (or is
        being sent) before. Send failures come back as unsuccessful results
        and leave the request unmarked.
        """
        with self.session_factory() as db:
            request = db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).first()
            if request is None:
                logger.warning("notification_request_missing", request_id=request_id)
                raise NotFoundError(f"Service request {request_id} not found")
            snapshot = {
                "user_name": request.user_name,
                "user_phone": request.user_phone,
                "service": request.title,
                "location": request.location,
                "channel": channel or request.preferred_contact or ContactChannel.TEXT,
                "payload": request.recommendations or {},
            }

        if not snapshot["user_phone"]:
            return NotificationResult(success=False, method="skipped", error="No user phone on request")
        recommendations = snapshot["payload"].get("recommendations") or []
        if not recommendations:
            logger.warning("notification_skipped_no_providers", request_id=request_id)
            return NotificationResult(success=False, method="skipped", error="No providers to recommend")

        if not self._claim(request_id):
            logger.info("notification_already_sent", request_id=request_id)
            return NotificationResult(success=True, method="already_sent")

        try:
            if snapshot["channel"] == ContactChannel.PHONE:
                result = await self._notify_by_phone(request_id, snapshot, recommendations)
            else:
                result = await self._notify_by_sms(request_id, snapshot, recommendations)
        except Exception as e:
            logger.error("notification_failed", request_id=request_id, error=str(e), exc_info=True)
            result = NotificationResult(success=False, method="skipped", error=str(e))

        self._finish(request_id, result.method if result.success else None)
        if result.success:
            notifications_sent.labels(method=result.method).inc()
        logger.info(
            "notification_finished",
            request_id=request_id,
            success=result.success,
            method=result.method,
            error=result.error,
        )
        return result

    async def _notify_by_sms(self, request_id: str, snapshot: dict, recommendations: List[dict]) -> NotificationResult:
        if not self.sms.available:
            return NotificationResult(success=False, method="skipped", error="Twilio not configured")
        body = format_recommendations_sms(
            snapshot["user_name"],
            recommendations,
            snapshot["payload"].get("overallRecommendation"),
            f"{self.frontend_url}/request/{request_id}",
        )
        sent = await self.sms.send(snapshot["user_phone"], body)
        return NotificationResult(success=sent.success, method="sms", message_sid=sent.message_sid, error=sent.error)

    async def _notify_by_phone(self, request_id: str, snapshot: dict, recommendations: List[dict]) -> NotificationResult:
        if self.call_client is None:
            logger.warning("notification_phone_unavailable", request_id=request_id, fallback="sms")
            return await self._notify_by_sms(request_id, snapshot, recommendations)

        request = CallRequest(
            provider_name=snapshot["user_name"] or "Customer",
            provider_phone=snapshot["user_phone"],
            service_needed=snapshot["service"],
            location=snapshot["location"],
            service_request_id=request_id,
            call_kind=CallKind.NOTIFICATION,
        )
        assistant = notification_assistant(
            snapshot["user_name"],
            snapshot["service"],
            snapshot["location"],
            recommendations[:3],
            snapshot["payload"].get("overallRecommendation"),
        )
        result = await self.call_client.initiate_call(request, assistant=assistant)
        self._log_call(request_id, result)

        if result.status != CallResultStatus.COMPLETED:
            logger.warning(
                "notification_call_failed",
                request_id=request_id,
                status=result.status.value,
                error=result.error,
                fallback="sms",
            )
            return await self._notify_by_sms(request_id, snapshot, recommendations)

        selected = result.structured.selected_provider
        if selected is not None and not 1 <= selected <= min(len(recommendations), 3):
            selected = None
        return NotificationResult(success=True, method="vapi", call_id=result.call_id, selected_provider=selected)

    def _log_call(self, request_id: str, result: CallResult) -> None:
        if self.reconciler is None:
            return
        try:
            self.reconciler.log_event(
                request_id,
                "User Notification Call",
                detail=result.analysis.summary or result.error or result.ended_reason,
                status=InteractionStatus.SUCCESS if result.status == CallResultStatus.COMPLETED else InteractionStatus.WARNING,
                transcript={"text": result.transcript} if result.transcript else None,
                call_id=result.call_id or None,
            )
        except PersistenceError as e:
            logger.warning("notification_call_log_failed", request_id=request_id, error=str(e))

    async def send_booking_confirmation(
        self,
        user_phone: Optional[str],
        user_name: Optional[str],
        provider_name: str,
        booking_date: Optional[str] = None,
        booking_time: Optional[str] = None,
        confirmation_number: Optional[str] = None,
    ) -> SmsResult:
        if not user_phone:
            return SmsResult(success=False, error="No user phone")
        body = format_confirmation_sms(user_name, provider_name, booking_date, booking_time, confirmation_number)
        return await self.sms.send(user_phone, body)
