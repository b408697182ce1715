"""Database models for the Payment Service."""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from shared.database import Base, JSONType

PAYSTACK = "Paystack"


class PaymentStatus(str, Enum):
    """Payment status."""
    INITIATED = "initiated"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class FeeAssignmentStatus(str, Enum):
    """Fee assignment status, derived from the running balance."""
    ASSIGNED = "assigned"
    PARTIALLY_PAID = "partially_paid"
    FULLY_PAID = "fully_paid"
    OVERDUE = "overdue"


class RefundStatus(str, Enum):
    """Refund status."""
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSED = "processed"
    FAILED = "failed"


class FraudCheckStatus(str, Enum):
    """Status of a deferred fraud check."""
    QUEUED = "queued"
    PROCESSED = "processed"
    FAILED = "failed"


def derive_fee_status(
    amount_paid: Decimal,
    amount_due: Decimal,
    due_date: Optional[date],
    today: Optional[date] = None,
) -> FeeAssignmentStatus:
    """Status of a fee assignment as a pure function of its balance and due date."""
    if amount_paid >= amount_due:
        return FeeAssignmentStatus.FULLY_PAID
    if amount_paid > 0:
        return FeeAssignmentStatus.PARTIALLY_PAID
    today = today or datetime.utcnow().date()
    if due_date is not None and due_date < today:
        return FeeAssignmentStatus.OVERDUE
    return FeeAssignmentStatus.ASSIGNED


class School(Base):
    """School owning fees and gateway configuration."""

    __tablename__ = "schools"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)

    # [{"provider": "Paystack", "public_key": "..."}]
    payment_providers = Column(JSONType, nullable=False, default=list)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def has_provider(self, provider: str) -> bool:
        return any(p.get("provider") == provider for p in (self.payment_providers or []))


class Student(Base):
    """Student paying fees."""

    __tablename__ = "students"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    school_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    student_number = Column(String(50), nullable=True)
    student_type = Column(String(50), nullable=True)  # Full-time, Part-time, Foreign, Day, ...

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Fee(Base):
    """Billable obligation defined by a school."""

    __tablename__ = "fees"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    school_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    fee_type = Column(String(100), nullable=False)
    academic_session = Column(String(20), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    due_date = Column(Date, nullable=True)
    allow_partial_payment = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class FeeAssignment(Base):
    """A student's running balance against one fee."""

    __tablename__ = "fee_assignments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    student_id = Column(UUID(as_uuid=True), nullable=False)
    fee_id = Column(UUID(as_uuid=True), nullable=False)
    school_id = Column(UUID(as_uuid=True), nullable=False, index=True)

    amount_due = Column(Numeric(12, 2), nullable=False)
    amount_paid = Column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    due_date = Column(Date, nullable=True)
    status = Column(String(20), default=FeeAssignmentStatus.ASSIGNED.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_fee_assignments_student_fee", "student_id", "fee_id", unique=True),
    )


class Payment(Base):
    """One attempt to pay a fee."""

    __tablename__ = "payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    student_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    school_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    fee_id = Column(UUID(as_uuid=True), nullable=False)

    amount = Column(Numeric(12, 2), nullable=False)
    payment_provider = Column(String(50), default=PAYSTACK, nullable=False)
    provider_reference = Column(String(120), nullable=True, unique=True)
    provider_metadata = Column(JSONType, nullable=False, default=dict)
    status = Column(String(20), default=PaymentStatus.INITIATED.value, nullable=False, index=True)

    fraud_score = Column(Float, nullable=True)
    anomaly_scale = Column(String(20), nullable=True)
    receipt_url = Column(Text, nullable=True)
    invoice_url = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payments_student_status_created", "student_id", "status", "created_at"),
    )


class Refund(Base):
    """Request to reverse part or all of a payment."""

    __tablename__ = "refunds"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    payment_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    student_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    school_id = Column(UUID(as_uuid=True), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(Text, nullable=False)
    fraud_score = Column(Float, default=0.0, nullable=False)
    status = Column(String(20), default=RefundStatus.REQUESTED.value, nullable=False)
    gateway_reference = Column(String(120), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    audit_trail = relationship(
        "RefundAuditEntry",
        order_by="RefundAuditEntry.id",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_refunds_payment_status", "payment_id", "status"),
    )


class RefundAuditEntry(Base):
    """Append-only audit trail entry of a refund."""

    __tablename__ = "refund_audit_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    refund_id = Column(UUID(as_uuid=True), ForeignKey("refunds.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    actor_id = Column(UUID(as_uuid=True), nullable=True)
    actor_type = Column(String(20), nullable=False)  # student, admin, system
    details = Column("metadata", JSONType, nullable=False, default=dict)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)


class TransactionLog(Base):
    """Immutable audit record of everything that happens to payments and refunds."""

    __tablename__ = "transaction_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    payment_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    refund_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    student_id = Column(UUID(as_uuid=True), nullable=True)
    school_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    action = Column(String(100), nullable=False)
    details = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_transaction_logs_student_action_created", "student_id", "action", "created_at"),
    )


class FraudLog(Base):
    """Result of one successful fraud evaluation."""

    __tablename__ = "fraud_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    payment_id = Column(UUID(as_uuid=True), nullable=False)
    school_id = Column(UUID(as_uuid=True), nullable=False)
    action = Column(String(50), default="fraud_evaluated", nullable=False)
    reconstruction_error = Column(Float, nullable=False)
    anomaly_scale = Column(String(20), nullable=False, index=True)
    details = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_fraud_logs_payment_school", "payment_id", "school_id"),
    )


class FraudCheckQueue(Base):
    """Fraud check deferred after a failed oracle call."""

    __tablename__ = "fraud_check_queue"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    payment_id = Column(UUID(as_uuid=True), nullable=False)
    school_id = Column(UUID(as_uuid=True), nullable=False)
    request_data = Column(JSONType, nullable=False)
    status = Column(String(20), default=FraudCheckStatus.QUEUED.value, nullable=False)
    retries = Column(Integer, default=0, nullable=False)
    last_attempt = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_fraud_check_queue_payment_status", "payment_id", "status"),
        Index("ix_fraud_check_queue_status_created", "status", "created_at"),
    )
