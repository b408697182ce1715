"""Request and response models of the payment service API."""
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


# Requests
class InitializePaymentRequest(BaseModel):
    """Initialize payment request."""
    fee_id: UUID
    amount: float = Field(gt=0, allow_inf_nan=False)


class RefundRequestBody(BaseModel):
    """Refund request."""
    payment_id: UUID
    amount: float = Field(gt=0, allow_inf_nan=False)
    reason: str = Field(min_length=1)


class ReviewRefundRequest(BaseModel):
    """Refund review by a school administrator."""
    refund_id: UUID
    status: str


# Responses
class PaymentResponse(BaseModel):
    """Payment response."""
    id: UUID
    student_id: UUID
    school_id: UUID
    fee_id: UUID
    amount: float
    payment_provider: str
    provider_reference: Optional[str] = None
    status: str
    fraud_score: Optional[float] = None
    anomaly_scale: Optional[str] = None
    receipt_url: Optional[str] = None
    invoice_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SettlementPreviewResponse(BaseModel):
    amount_due: float
    amount_paid: float
    projected_paid: float
    projected_status: str
    outstanding: float

    class Config:
        from_attributes = True


class InitializePaymentResponse(BaseModel):
    success: bool = True
    message: str
    payment_url: str
    payment: PaymentResponse
    settlement_preview: SettlementPreviewResponse


class PaymentEnvelope(BaseModel):
    success: bool = True
    message: str
    payment: PaymentResponse


class PaymentHistoryItem(PaymentResponse):
    fee_type: str
    academic_session: Optional[str] = None


class PaymentHistoryResponse(BaseModel):
    success: bool = True
    message: str
    payments: List[PaymentHistoryItem]


class FeeAssignmentResponse(BaseModel):
    id: UUID
    fee_id: UUID
    fee_type: str
    academic_session: Optional[str] = None
    amount_due: float
    amount_paid: float
    due_date: Optional[date] = None
    status: str
    allow_partial_payment: bool


class FeeAssignmentListResponse(BaseModel):
    success: bool = True
    message: str
    fee_assignments: List[FeeAssignmentResponse]


class RefundAuditEntryResponse(BaseModel):
    action: str
    actor_id: Optional[UUID] = None
    actor_type: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    class Config:
        from_attributes = True


class RefundResponse(BaseModel):
    """Refund response."""
    id: UUID
    payment_id: UUID
    student_id: UUID
    school_id: UUID
    amount: float
    reason: str
    fraud_score: float
    status: str
    gateway_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    audit_trail: List[RefundAuditEntryResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True


class RefundEnvelope(BaseModel):
    success: bool = True
    message: str
    refund: RefundResponse


class RefundRequestEnvelope(RefundEnvelope):
    refundable_amount: float


class RefundListResponse(BaseModel):
    success: bool = True
    message: str
    refunds: List[RefundResponse]


class WebhookAckResponse(BaseModel):
    success: bool = True
    message: str
    ack: str
