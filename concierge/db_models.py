"""
SQLAlchemy database models.

Three tables: service requests, the providers found for each request, and an
append-only interaction log. Every status column is backed by one of the
enums below; nothing else in the code base compares raw status strings.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Boolean, Float, Integer, JSON, Enum as SQLEnum
from sqlalchemy.orm import relationship

from concierge.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class RequestStatus(str, enum.Enum):
    """Service request lifecycle, in order."""
    RESEARCHING = "RESEARCHING"
    CALLING = "CALLING"
    ANALYZING = "ANALYZING"
    RECOMMENDED = "RECOMMENDED"
    BOOKING = "BOOKING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RequestType(str, enum.Enum):
    RESEARCH_AND_BOOK = "research_and_book"
    DIRECT_TASK = "direct_task"


class Urgency(str, enum.Enum):
    IMMEDIATE = "immediate"
    WITHIN_24_HOURS = "within_24_hours"
    WITHIN_2_DAYS = "within_2_days"
    FLEXIBLE = "flexible"


class ContactChannel(str, enum.Enum):
    PHONE = "phone"
    TEXT = "text"


class ProviderCallStatus(str, enum.Enum):
    """Per-provider call status. NULL in the database means never dispatched."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"
    VOICEMAIL = "voicemail"
    TIMEOUT = "timeout"
    BOOKING_IN_PROGRESS = "booking_in_progress"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_CALL_STATUSES


TERMINAL_CALL_STATUSES = frozenset({
    ProviderCallStatus.COMPLETED,
    ProviderCallStatus.ERROR,
    ProviderCallStatus.VOICEMAIL,
    ProviderCallStatus.TIMEOUT,
})


class InteractionStatus(str, enum.Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    PENDING = "pending"
    INFO = "info"


class DBServiceRequest(Base):
    """One user-initiated job."""
    __tablename__ = "service_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    type = Column(SQLEnum(RequestType), default=RequestType.RESEARCH_AND_BOOK, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    criteria = Column(Text, default="")
    location = Column(String(255), nullable=False)
    urgency = Column(SQLEnum(Urgency), default=Urgency.WITHIN_2_DAYS, nullable=False)
    status = Column(SQLEnum(RequestStatus), default=RequestStatus.RESEARCHING, nullable=False, index=True)

    selected_provider_id = Column(String(36), nullable=True)  # providers.id
    final_outcome = Column(Text, nullable=True)
    recommendations = Column(JSON, nullable=True)

    user_name = Column(String(255))
    user_phone = Column(String(50), index=True)
    preferred_contact = Column(SQLEnum(ContactChannel), default=ContactChannel.TEXT)
    notification_sent_at = Column(DateTime, nullable=True)
    notification_method = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    providers = relationship("DBProvider", back_populates="request", order_by="DBProvider.created_at")
    interaction_logs = relationship(
        "DBInteractionLog",
        back_populates="request",
        order_by="DBInteractionLog.id",
    )


class DBProvider(Base):
    """A candidate business found during research, owned by one request."""
    __tablename__ = "providers"

    id = Column(String(36), primary_key=True, default=_uuid)
    request_id = Column(String(36), ForeignKey("service_requests.id"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    phone = Column(String(50))  # E.164
    rating = Column(Float, nullable=True)
    review_count = Column(Integer, nullable=True)
    address = Column(String(500))
    source_id = Column(String(255), nullable=True)  # Places result id

    # Research call
    call_status = Column(SQLEnum(ProviderCallStatus), nullable=True)
    call_id = Column(String(100), unique=True, nullable=True, index=True)
    call_result = Column(JSON, nullable=True)
    call_transcript = Column(Text)
    call_summary = Column(Text)
    call_duration_minutes = Column(Float)
    call_cost = Column(Float)
    call_method = Column(String(20))
    called_at = Column(DateTime, nullable=True)

    # Booking call
    booking_call_id = Column(String(100), unique=True, nullable=True, index=True)
    booking_transcript = Column(Text)
    booking_confirmed = Column(Boolean, default=False)
    booking_date = Column(String(50))
    booking_time = Column(String(50))
    confirmation_number = Column(String(100))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    request = relationship("DBServiceRequest", back_populates="providers")


class DBInteractionLog(Base):
    """
    Append-only audit trail entry.
    Rows are never updated or deleted; created_at is the read order.
    """
    __tablename__ = "interaction_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String(36), ForeignKey("service_requests.id"), nullable=False, index=True)
    step_name = Column(String(255), nullable=False)
    detail = Column(Text)
    status = Column(SQLEnum(InteractionStatus), default=InteractionStatus.INFO)
    transcript = Column(JSON, nullable=True)
    # Unique so the same call can never be logged twice
    call_id = Column(String(100), unique=True, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    request = relationship("DBServiceRequest", back_populates="interaction_logs")
