"""Event definitions for fee payment, refund and fraud workflows."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types emitted by the payment service."""

    # Payment events
    PAYMENT_INITIATED = "payment.initiated"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_REJECTED = "payment.rejected"

    # Fraud events
    FRAUD_ALERT = "fraud.alert"

    # Refund events
    REFUND_REQUESTED = "refund.requested"
    REFUND_APPROVED = "refund.approved"
    REFUND_REJECTED = "refund.rejected"
    REFUND_PROCESSED = "refund.processed"
    REFUND_FAILED = "refund.failed"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # payment_id or refund_id
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: UUID  # payment_id, shared by every event of one payment
    causation_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_encoders = {
            datetime: lambda v: v.isoformat(),
            UUID: lambda v: str(v)
        }


# Payment Events
class PaymentInitiatedEvent(BaseEvent):
    """Event emitted when a charge has been opened with the gateway."""
    event_type: EventType = EventType.PAYMENT_INITIATED
    payment_id: UUID
    student_id: UUID
    school_id: UUID
    fee_id: UUID
    amount: float
    provider_reference: str
    student_email: Optional[str] = None


class PaymentConfirmedEvent(BaseEvent):
    """Event emitted the first time a payment is confirmed."""
    event_type: EventType = EventType.PAYMENT_CONFIRMED
    payment_id: UUID
    student_id: UUID
    school_id: UUID
    fee_id: UUID
    amount: float
    provider_reference: str
    student_email: Optional[str] = None
    school_email: Optional[str] = None


class PaymentRejectedEvent(BaseEvent):
    """Event emitted when the gateway reports a failed charge."""
    event_type: EventType = EventType.PAYMENT_REJECTED
    payment_id: UUID
    student_id: UUID
    school_id: UUID
    amount: float
    provider_reference: str
    reason: str
    student_email: Optional[str] = None


# Fraud Events
class FraudAlertEvent(BaseEvent):
    """Event emitted when the anomaly oracle flags a payment as high risk."""
    event_type: EventType = EventType.FRAUD_ALERT
    payment_id: UUID
    student_id: UUID
    school_id: UUID
    fraud_score: float
    anomaly_scale: str
    school_email: Optional[str] = None


# Refund Events
class RefundRequestedEvent(BaseEvent):
    """Event emitted when a student requests a refund."""
    event_type: EventType = EventType.REFUND_REQUESTED
    refund_id: UUID
    payment_id: UUID
    student_id: UUID
    school_id: UUID
    amount: float
    reason: str
    school_email: Optional[str] = None


class RefundApprovedEvent(BaseEvent):
    """Event emitted when the gateway accepts an approved refund."""
    event_type: EventType = EventType.REFUND_APPROVED
    refund_id: UUID
    payment_id: UUID
    student_id: UUID
    school_id: UUID
    amount: float
    gateway_reference: Optional[str] = None
    student_email: Optional[str] = None


class RefundRejectedEvent(BaseEvent):
    """Event emitted when a school rejects a refund request."""
    event_type: EventType = EventType.REFUND_REJECTED
    refund_id: UUID
    payment_id: UUID
    student_id: UUID
    school_id: UUID
    amount: float
    student_email: Optional[str] = None


class RefundProcessedEvent(BaseEvent):
    """Event emitted when the gateway reports the refund as paid out."""
    event_type: EventType = EventType.REFUND_PROCESSED
    refund_id: UUID
    payment_id: UUID
    student_id: UUID
    school_id: UUID
    amount: float
    student_email: Optional[str] = None


class RefundFailedEvent(BaseEvent):
    """Event emitted when a refund ends in failure."""
    event_type: EventType = EventType.REFUND_FAILED
    refund_id: UUID
    payment_id: UUID
    student_id: UUID
    school_id: UUID
    amount: float
    reason: str
    student_email: Optional[str] = None


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.PAYMENT_INITIATED: PaymentInitiatedEvent,
    EventType.PAYMENT_CONFIRMED: PaymentConfirmedEvent,
    EventType.PAYMENT_REJECTED: PaymentRejectedEvent,

    EventType.FRAUD_ALERT: FraudAlertEvent,

    EventType.REFUND_REQUESTED: RefundRequestedEvent,
    EventType.REFUND_APPROVED: RefundApprovedEvent,
    EventType.REFUND_REJECTED: RefundRejectedEvent,
    EventType.REFUND_PROCESSED: RefundProcessedEvent,
    EventType.REFUND_FAILED: RefundFailedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
