"""Payment Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.database import Database
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher

from .audit import RequestContext
from .auth import Principal, decode_principal
from .documents import DocumentClient
from .errors import PaymentServiceError
from .fraud_oracle import FraudOracleClient
from .fraud_retry import FraudCheckRetryWorker
from .gateway import SIGNATURE_HEADER, PaystackClient
from .payment_workflow import PaymentWorkflow
from .refund_workflow import RefundWorkflow
from .schemas import (
    FeeAssignmentListResponse,
    FeeAssignmentResponse,
    InitializePaymentRequest,
    InitializePaymentResponse,
    PaymentEnvelope,
    PaymentHistoryItem,
    PaymentHistoryResponse,
    PaymentResponse,
    RefundEnvelope,
    RefundListResponse,
    RefundRequestBody,
    RefundRequestEnvelope,
    RefundResponse,
    ReviewRefundRequest,
    SettlementPreviewResponse,
    WebhookAckResponse,
)

# Settings
settings = Settings(
    service_name="payment-service",
    service_port=8003,
    postgres_db="payment_db",
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database, message broker and external clients
database = Database(settings.database_url)
message_broker = MessageBroker(settings.rabbitmq_url)
gateway = PaystackClient(
    settings.paystack_secret_key,
    base_url=settings.paystack_base_url,
    timeout=settings.http_timeout,
)
fraud_oracle = FraudOracleClient(settings.fraud_oracle_url, timeout=settings.fraud_oracle_timeout)
document_client = DocumentClient(settings.document_service_url, timeout=settings.http_timeout)

outbox_publisher: Optional[OutboxPublisher] = None
fraud_retry_worker: Optional[FraudCheckRetryWorker] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher, fraud_retry_worker

    # Startup
    logger.info("Starting Payment Service...")

    await database.create_tables()
    await message_broker.connect()

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
        poll_interval=settings.outbox_poll_interval,
    )
    await outbox_publisher.start()

    fraud_retry_worker = FraudCheckRetryWorker(
        session_factory=database.session_factory,
        oracle=fraud_oracle,
        poll_interval=settings.fraud_retry_poll_interval,
        batch_size=settings.fraud_retry_batch_size,
        max_attempts=settings.fraud_retry_max_attempts,
    )
    await fraud_retry_worker.start()

    logger.info("Payment Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Payment Service...")
    if fraud_retry_worker:
        await fraud_retry_worker.stop()
    if outbox_publisher:
        await outbox_publisher.stop()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Payment Service", lifespan=lifespan)


# Error handlers
@app.exception_handler(PaymentServiceError)
async def payment_service_error_handler(request: Request, exc: PaymentServiceError):
    content = {"success": False, "message": exc.message, "error": exc.code}
    if exc.detail:
        content["detail"] = exc.detail
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": "Invalid request",
            "error": "ValidationError",
            # The rejected input is left out; it may be NaN, which JSON cannot carry
            "detail": jsonable_encoder(
                [{"loc": err["loc"], "msg": err["msg"], "type": err["type"]} for err in exc.errors()]
            ),
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {str(exc)}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Server error", "error": str(exc)},
    )


# Dependencies
async def get_session() -> AsyncSession:
    """Get database session."""
    async for session in database.get_session():
        yield session


def get_gateway() -> PaystackClient:
    return gateway


def get_fraud_oracle() -> FraudOracleClient:
    return fraud_oracle


def get_document_client() -> Optional[DocumentClient]:
    return document_client


def get_current_student(authorization: Optional[str] = Header(None)) -> Principal:
    return decode_principal(authorization, settings.student_jwt_secret, settings.jwt_algorithm)


def get_current_school(authorization: Optional[str] = Header(None)) -> Principal:
    return decode_principal(authorization, settings.jwt_secret, settings.jwt_algorithm)


def request_context(request: Request, principal: Optional[Principal] = None, actor_type: str = "system") -> RequestContext:
    return RequestContext(
        ip=request.client.host if request.client else None,
        device_info=request.headers.get("user-agent"),
        actor_id=principal.id if principal else None,
        actor_type=actor_type,
        email=principal.email if principal else None,
        webhook=principal is None,
    )


def get_payment_workflow(
    session: AsyncSession = Depends(get_session),
    gateway: PaystackClient = Depends(get_gateway),
    oracle: FraudOracleClient = Depends(get_fraud_oracle),
    documents: Optional[DocumentClient] = Depends(get_document_client),
) -> PaymentWorkflow:
    return PaymentWorkflow(
        session,
        gateway,
        oracle,
        documents=documents,
        callback_url=settings.paystack_callback_url,
    )


def get_refund_workflow(
    session: AsyncSession = Depends(get_session),
    gateway: PaystackClient = Depends(get_gateway),
) -> RefundWorkflow:
    return RefundWorkflow(session, gateway)


# Payments
@app.post("/payments/initialize", response_model=InitializePaymentResponse)
async def initialize_payment(
    body: InitializePaymentRequest,
    request: Request,
    student: Principal = Depends(get_current_student),
    workflow: PaymentWorkflow = Depends(get_payment_workflow),
):
    """Open a Paystack charge for one of the student's fees."""
    result = await workflow.initialize(
        student.id,
        body.fee_id,
        body.amount,
        request_context(request, student, "student"),
    )
    return InitializePaymentResponse(
        message="Payment initialized successfully",
        payment_url=result.redirect_url,
        payment=PaymentResponse.model_validate(result.payment),
        settlement_preview=SettlementPreviewResponse.model_validate(result.settlement_preview),
    )


@app.get("/payments/verify", response_model=PaymentEnvelope)
async def verify_payment(
    reference: str,
    request: Request,
    school: Principal = Depends(get_current_school),
    workflow: PaymentWorkflow = Depends(get_payment_workflow),
):
    """Confirm a payment with the gateway."""
    payment = await workflow.verify(reference, request_context(request, school, "admin"))
    return PaymentEnvelope(
        message="Payment verified successfully",
        payment=PaymentResponse.model_validate(payment),
    )


@app.post("/payments/webhook", response_model=WebhookAckResponse)
async def payment_webhook(
    request: Request,
    workflow: PaymentWorkflow = Depends(get_payment_workflow),
):
    """Paystack charge webhook."""
    result = await workflow.handle_webhook(
        await request.body(),
        request.headers.get(SIGNATURE_HEADER),
        request_context(request),
    )
    return WebhookAckResponse(message=result.message, ack=result.ack.value)


@app.get("/payments", response_model=PaymentHistoryResponse)
async def list_payments(
    status: Optional[str] = None,
    student: Principal = Depends(get_current_student),
    workflow: PaymentWorkflow = Depends(get_payment_workflow),
):
    """The student's payments, newest first."""
    rows = await workflow.list_payments(student.id, status)
    payments = [
        PaymentHistoryItem(
            **PaymentResponse.model_validate(payment).model_dump(),
            fee_type=fee.fee_type,
            academic_session=fee.academic_session,
        )
        for payment, fee in rows
    ]
    message = "Payments retrieved successfully" if payments else "No payments found"
    return PaymentHistoryResponse(message=message, payments=payments)


@app.get("/fee-assignments", response_model=FeeAssignmentListResponse)
async def list_fee_assignments(
    status: Optional[str] = None,
    student: Principal = Depends(get_current_student),
    workflow: PaymentWorkflow = Depends(get_payment_workflow),
):
    """The student's fee assignments."""
    rows = await workflow.list_fee_assignments(student.id, status)
    assignments = [
        FeeAssignmentResponse(
            id=assignment.id,
            fee_id=fee.id,
            fee_type=fee.fee_type,
            academic_session=fee.academic_session,
            amount_due=assignment.amount_due,
            amount_paid=assignment.amount_paid,
            due_date=assignment.due_date,
            status=assignment.status,
            allow_partial_payment=fee.allow_partial_payment,
        )
        for assignment, fee in rows
    ]
    message = "Fee assignments retrieved successfully" if assignments else "No fee assignments found"
    return FeeAssignmentListResponse(message=message, fee_assignments=assignments)


# Refunds
@app.post("/refunds", response_model=RefundRequestEnvelope)
async def request_refund(
    body: RefundRequestBody,
    request: Request,
    student: Principal = Depends(get_current_student),
    workflow: RefundWorkflow = Depends(get_refund_workflow),
):
    """Request a refund of one of the student's payments."""
    result = await workflow.request(
        student.id,
        body.payment_id,
        body.amount,
        body.reason,
        request_context(request, student, "student"),
    )
    return RefundRequestEnvelope(
        message="Refund requested successfully",
        refund=RefundResponse.model_validate(result.refund),
        refundable_amount=result.refundable_before,
    )


@app.post("/refunds/review", response_model=RefundEnvelope)
async def review_refund(
    body: ReviewRefundRequest,
    request: Request,
    school: Principal = Depends(get_current_school),
    workflow: RefundWorkflow = Depends(get_refund_workflow),
):
    """Approve or reject a refund request."""
    refund = await workflow.review(
        school.id,
        body.refund_id,
        body.status,
        request_context(request, school, "admin"),
    )
    return RefundEnvelope(
        message=f"Refund {body.status} successfully",
        refund=RefundResponse.model_validate(refund),
    )


@app.post("/refunds/webhook", response_model=WebhookAckResponse)
async def refund_webhook(
    request: Request,
    workflow: RefundWorkflow = Depends(get_refund_workflow),
):
    """Paystack refund webhook."""
    result = await workflow.handle_webhook(
        await request.body(),
        request.headers.get(SIGNATURE_HEADER),
        request_context(request),
    )
    return WebhookAckResponse(message=result.message, ack=result.ack.value)


@app.get("/refunds", response_model=RefundListResponse)
async def list_school_refunds(
    status: Optional[str] = None,
    school: Principal = Depends(get_current_school),
    workflow: RefundWorkflow = Depends(get_refund_workflow),
):
    refunds = await workflow.list_for_school(school.id, status)
    return RefundListResponse(
        message="Refunds retrieved successfully",
        refunds=[RefundResponse.model_validate(refund) for refund in refunds],
    )


@app.get("/refunds/mine", response_model=RefundListResponse)
async def list_my_refunds(
    student: Principal = Depends(get_current_student),
    workflow: RefundWorkflow = Depends(get_refund_workflow),
):
    refunds = await workflow.list_for_student(student.id)
    return RefundListResponse(
        message="Refunds retrieved successfully",
        refunds=[RefundResponse.model_validate(refund) for refund in refunds],
    )


@app.get("/refunds/{refund_id}", response_model=RefundEnvelope)
async def get_refund(
    refund_id: UUID,
    school: Principal = Depends(get_current_school),
    workflow: RefundWorkflow = Depends(get_refund_workflow),
):
    refund = await workflow.get_for_school(school.id, refund_id)
    return RefundEnvelope(
        message="Refund retrieved successfully",
        refund=RefundResponse.model_validate(refund),
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "payment-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
