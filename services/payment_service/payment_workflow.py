"""
Payment workflow: initialization, verification and gateway webhooks.

Each public method is one unit of work on the session it was given. State
changes, their TransactionLog entries and their outbox events commit
together; receipts and invoices are generated after the commit and can
only fail on their own.
"""
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.events import (
    FraudAlertEvent,
    PaymentConfirmedEvent,
    PaymentInitiatedEvent,
    PaymentRejectedEvent,
)
from shared.outbox import save_event_to_outbox

from .audit import SYSTEM_CONTEXT, WEBHOOK_CONTEXT, AuditLog, RequestContext
from .documents import DocumentClient
from .errors import (
    FeeAssignmentNotFound,
    FeeNotFound,
    GatewayInitializationFailed,
    GatewayVerificationFailed,
    InvalidAmount,
    InvalidSignature,
    InvalidTransition,
    PartialPaymentNotAllowed,
    PaymentNotFound,
    SchoolOrProviderNotConfigured,
    ValidationFailure,
)
from .fraud_oracle import FraudOracleClient
from .fraud_scoring import FraudScoringEngine
from .gateway import GatewayError, PaystackClient, PaystackMetadata, parse_provider_metadata
from .models import (
    PAYSTACK,
    Fee,
    FeeAssignment,
    FeeAssignmentStatus,
    Payment,
    PaymentStatus,
    School,
    Student,
    derive_fee_status,
)
from .state_machine import PAYMENT_STATE_MACHINE, PaymentEvent, apply_transition

logger = logging.getLogger(__name__)

HIGH_RISK_SCALE = "High"


class WebhookAck(str, Enum):
    """How a webhook delivery was handled; all of them are acknowledged with 200."""
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


@dataclass
class SettlementPreview:
    """What the fee assignment will look like once the payment is confirmed."""
    amount_due: Decimal
    amount_paid: Decimal
    projected_paid: Decimal
    projected_status: str
    outstanding: Decimal


@dataclass
class InitializationResult:
    payment: Payment
    redirect_url: str
    settlement_preview: SettlementPreview


@dataclass
class WebhookResult:
    ack: WebhookAck
    message: str
    payment: Optional[Payment] = None


def preview_settlement(assignment: FeeAssignment, amount: Decimal) -> SettlementPreview:
    projected = assignment.amount_paid + amount
    return SettlementPreview(
        amount_due=assignment.amount_due,
        amount_paid=assignment.amount_paid,
        projected_paid=projected,
        projected_status=derive_fee_status(projected, assignment.amount_due, assignment.due_date).value,
        outstanding=max(assignment.amount_due - projected, Decimal("0")),
    )


def parse_webhook_payload(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        raise ValidationFailure("Malformed webhook payload", detail=str(e)) from e
    if not isinstance(payload, dict):
        raise ValidationFailure("Malformed webhook payload")
    if not isinstance(payload.get("data") or {}, dict):
        raise ValidationFailure("Malformed webhook payload", detail="data must be an object")
    return payload


class PaymentWorkflow:
    """Moves payments from initiation to confirmation or rejection."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaystackClient,
        oracle: FraudOracleClient,
        documents: Optional[DocumentClient] = None,
        callback_url: Optional[str] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.oracle = oracle
        self.documents = documents
        self.callback_url = callback_url
        self.audit = AuditLog(session)

    # Initialization
    async def initialize(
        self,
        student_id: UUID,
        fee_id: UUID,
        amount,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> InitializationResult:
        """
        Open a charge with the gateway for ``amount`` of fee ``fee_id``.

        The payment row, the gateway reference, the fraud verdict and the
        ``payment.initiated`` event commit together. A gateway failure rolls
        all of it back and leaves only a ``payment_initialization_error``
        log entry behind.

        Raises:
            FeeNotFound, InvalidAmount, PartialPaymentNotAllowed,
            SchoolOrProviderNotConfigured, FeeAssignmentNotFound,
            GatewayInitializationFailed
        """
        scope = {"student_id": student_id}
        try:
            payment, redirect_url, assignment = await self._initialize(
                student_id, fee_id, Decimal(str(amount)), context, scope
            )
        except Exception as e:
            logger.warning(f"Payment initialization failed for student {student_id}: {str(e)}")
            await self.session.rollback()
            await self.audit.record_failure(
                "payment_initialization_error",
                context,
                fee_id=str(fee_id),
                error=str(e),
                **scope,
            )
            raise

        preview = preview_settlement(assignment, payment.amount)
        await self._generate_document("receipt", payment, context)

        return InitializationResult(payment=payment, redirect_url=redirect_url, settlement_preview=preview)

    async def _initialize(
        self,
        student_id: UUID,
        fee_id: UUID,
        amount: Decimal,
        context: RequestContext,
        scope: dict,
    ) -> Tuple[Payment, str, FeeAssignment]:
        fee = await self.session.get(Fee, fee_id)
        if fee is None:
            raise FeeNotFound()
        scope["school_id"] = fee.school_id

        if not amount.is_finite() or amount <= 0:
            raise InvalidAmount()

        if not fee.allow_partial_payment and amount != fee.amount:
            raise PartialPaymentNotAllowed()

        school = await self.session.get(School, fee.school_id)
        if school is None or not school.has_provider(PAYSTACK):
            raise SchoolOrProviderNotConfigured()

        assignment = await self._get_assignment(student_id, fee_id)
        if assignment is None:
            raise FeeAssignmentNotFound()

        student = await self.session.get(Student, student_id)
        email = context.email or (student.email if student else None)

        now = datetime.utcnow()
        payment = Payment(
            id=uuid4(),
            student_id=student_id,
            school_id=fee.school_id,
            fee_id=fee_id,
            amount=amount,
            payment_provider=PAYSTACK,
            provider_metadata={},
            status=PaymentStatus.INITIATED.value,
            provider_reference=None,
            fraud_score=None,
            anomaly_scale=None,
            receipt_url=None,
            invoice_url=None,
            created_at=now,
            updated_at=now,
        )
        self.session.add(payment)
        await self.session.flush()

        reference = f"PAY-{payment.id}-{int(time.time() * 1000)}"
        try:
            charge = await self.gateway.initialize_charge(email, amount, reference, self.callback_url)
        except GatewayError as e:
            raise GatewayInitializationFailed(
                f"Paystack initialization failed: {e.message}", transport=e.transport
            ) from e

        payment.provider_reference = charge.reference
        payment.provider_metadata = PaystackMetadata(
            reference=charge.reference,
            access_code=charge.access_code,
        ).model_dump()

        fraud = await FraudScoringEngine(self.session, self.oracle, self.audit).score(payment, context)
        payment.fraud_score = fraud.fraud_score
        payment.anomaly_scale = fraud.anomaly_scale

        self.audit.record(
            "payment_initiated",
            context,
            payment_id=payment.id,
            student_id=student_id,
            school_id=fee.school_id,
            amount=amount,
            provider_reference=charge.reference,
            fraud_score=fraud.fraud_score,
        )

        await save_event_to_outbox(
            self.session,
            PaymentInitiatedEvent(
                aggregate_id=payment.id,
                correlation_id=payment.id,
                payment_id=payment.id,
                student_id=student_id,
                school_id=fee.school_id,
                fee_id=fee_id,
                amount=float(amount),
                provider_reference=charge.reference,
                student_email=email,
            ),
        )

        if fraud.anomaly_scale == HIGH_RISK_SCALE:
            logger.warning(f"Payment {payment.id} flagged as high risk (score={fraud.fraud_score:.2f})")
            await save_event_to_outbox(
                self.session,
                FraudAlertEvent(
                    aggregate_id=payment.id,
                    correlation_id=payment.id,
                    payment_id=payment.id,
                    student_id=student_id,
                    school_id=fee.school_id,
                    fraud_score=fraud.fraud_score,
                    anomaly_scale=fraud.anomaly_scale,
                    school_email=school.email,
                ),
            )

        await self.session.commit()
        logger.info(f"Payment {payment.id} initiated with reference {charge.reference}")

        return payment, charge.redirect_url, assignment

    # Verification
    async def verify(self, reference: str, context: RequestContext = SYSTEM_CONTEXT) -> Payment:
        """
        Confirm a payment by asking the gateway about ``reference``.

        An already confirmed payment is returned as is. A charge the gateway
        reports as unsuccessful rejects the payment before the error is raised.

        Raises:
            PaymentNotFound, GatewayVerificationFailed, InvalidTransition
        """
        payment = await self._get_by_reference(reference)
        if payment is None:
            raise PaymentNotFound()

        if payment.status == PaymentStatus.CONFIRMED.value:
            logger.info(f"Payment {payment.id} already confirmed")
            return payment

        payment_id, student_id, school_id = payment.id, payment.student_id, payment.school_id

        try:
            verification = await self.gateway.verify_charge(reference)
        except GatewayError as e:
            await self.audit.record_failure(
                "payment_verification_error",
                context,
                payment_id=payment_id,
                student_id=student_id,
                school_id=school_id,
                error=e.message,
            )
            raise GatewayVerificationFailed(
                f"Payment verification failed: {e.message}", transport=e.transport
            ) from e

        if verification.success:
            changed = await self._confirm(payment, verification.raw, context)
            await self.session.commit()
            if changed:
                await self._generate_document("invoice", payment, context)
            return payment

        reason = verification.message or "Payment verification failed"
        await self._reject(payment, reason, verification.raw, context)
        await self.session.commit()
        raise GatewayVerificationFailed(f"Payment verification failed: {reason}")

    # Webhooks
    async def handle_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        context: RequestContext = WEBHOOK_CONTEXT,
    ) -> WebhookResult:
        """
        Apply a ``charge.success`` or ``charge.failed`` delivery.

        Raises:
            InvalidSignature: the signature header does not match the body.
        """
        if not self.gateway.verify_signature(raw_body, signature):
            logger.warning("Rejected payment webhook with invalid signature")
            raise InvalidSignature()

        payload = parse_webhook_payload(raw_body)
        event = payload.get("event")
        data = payload.get("data") or {}

        if event not in ("charge.success", "charge.failed"):
            logger.info(f"Ignoring payment webhook event {event}")
            return WebhookResult(WebhookAck.IGNORED, f"Event {event} ignored")

        reference = data.get("reference")
        payment = await self._get_by_reference(reference) if reference else None
        if payment is None:
            logger.warning(f"Payment webhook for unknown reference {reference}")
            return WebhookResult(WebhookAck.NOT_FOUND, "Payment not found")

        try:
            if event == "charge.success":
                changed = await self._confirm(payment, payload, context)
            else:
                reason = data.get("gateway_response") or "Payment failed"
                changed = await self._reject(payment, reason, payload, context)
        except InvalidTransition as e:
            await self.session.rollback()
            logger.warning(f"Payment webhook {event} conflicts with payment state: {e.message}")
            return WebhookResult(WebhookAck.CONFLICT, e.message)

        await self.session.commit()

        if not changed:
            return WebhookResult(WebhookAck.DUPLICATE, "Webhook already processed", payment)

        if event == "charge.success":
            await self._generate_document("invoice", payment, context)
        return WebhookResult(WebhookAck.PROCESSED, "Webhook processed", payment)

    # Listings
    async def list_payments(self, student_id: UUID, status: Optional[str] = None) -> List[Tuple[Payment, Fee]]:
        query = (
            select(Payment, Fee)
            .join(Fee, Fee.id == Payment.fee_id)
            .where(Payment.student_id == student_id)
            .order_by(Payment.created_at.desc())
        )
        if status:
            query = query.where(Payment.status == status)

        result = await self.session.execute(query)
        return [(payment, fee) for payment, fee in result.all()]

    async def list_fee_assignments(
        self,
        student_id: UUID,
        status: Optional[str] = None,
    ) -> List[Tuple[FeeAssignment, Fee]]:
        """A student's fee assignments, after moving unpaid ones past their due date to overdue."""
        now = datetime.utcnow()
        await self.session.execute(
            update(FeeAssignment)
            .where(
                FeeAssignment.student_id == student_id,
                FeeAssignment.status == FeeAssignmentStatus.ASSIGNED.value,
                FeeAssignment.amount_paid == 0,
                FeeAssignment.due_date < now.date(),
            )
            .values(status=FeeAssignmentStatus.OVERDUE.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        query = (
            select(FeeAssignment, Fee)
            .join(Fee, Fee.id == FeeAssignment.fee_id)
            .where(FeeAssignment.student_id == student_id)
            .order_by(FeeAssignment.due_date)
            .execution_options(populate_existing=True)
        )
        if status:
            query = query.where(FeeAssignment.status == status)

        result = await self.session.execute(query)
        return [(assignment, fee) for assignment, fee in result.all()]

    # Internals
    async def _confirm(self, payment: Payment, raw: dict, context: RequestContext) -> bool:
        """Confirm and settle. Returns False when the payment was already confirmed."""
        metadata = parse_provider_metadata(payment.payment_provider, payment.provider_metadata)
        metadata.raw_payload = raw

        transition = await apply_transition(
            self.session,
            payment,
            PAYMENT_STATE_MACHINE,
            PaymentEvent.CONFIRM,
            provider_metadata=metadata.model_dump(),
        )
        if not transition.changed:
            logger.info(f"Payment {payment.id} already confirmed, settlement skipped")
            return False

        assignment = await self._settle(payment)

        self.audit.record(
            "payment_confirmed",
            context,
            payment_id=payment.id,
            student_id=payment.student_id,
            school_id=payment.school_id,
            amount=payment.amount,
            fee_status=assignment.status if assignment else None,
        )

        student, school = await self._contacts(payment)
        await save_event_to_outbox(
            self.session,
            PaymentConfirmedEvent(
                aggregate_id=payment.id,
                correlation_id=payment.id,
                payment_id=payment.id,
                student_id=payment.student_id,
                school_id=payment.school_id,
                fee_id=payment.fee_id,
                amount=float(payment.amount),
                provider_reference=payment.provider_reference,
                student_email=student.email if student else None,
                school_email=school.email if school else None,
            ),
        )
        return True

    async def _reject(self, payment: Payment, reason: str, raw: dict, context: RequestContext) -> bool:
        metadata = parse_provider_metadata(payment.payment_provider, payment.provider_metadata)
        metadata.raw_payload = raw

        transition = await apply_transition(
            self.session,
            payment,
            PAYMENT_STATE_MACHINE,
            PaymentEvent.REJECT,
            provider_metadata=metadata.model_dump(),
        )
        if not transition.changed:
            return False

        self.audit.record(
            "payment_rejected",
            context,
            payment_id=payment.id,
            student_id=payment.student_id,
            school_id=payment.school_id,
            reason=reason,
        )

        student, _ = await self._contacts(payment)
        await save_event_to_outbox(
            self.session,
            PaymentRejectedEvent(
                aggregate_id=payment.id,
                correlation_id=payment.id,
                payment_id=payment.id,
                student_id=payment.student_id,
                school_id=payment.school_id,
                amount=float(payment.amount),
                provider_reference=payment.provider_reference,
                reason=reason,
                student_email=student.email if student else None,
            ),
        )
        logger.info(f"Payment {payment.id} rejected: {reason}")
        return True

    async def _settle(self, payment: Payment) -> Optional[FeeAssignment]:
        """Add the payment to its fee assignment and recompute the status."""
        result = await self.session.execute(
            update(FeeAssignment)
            .where(
                FeeAssignment.student_id == payment.student_id,
                FeeAssignment.fee_id == payment.fee_id,
            )
            .values(
                amount_paid=FeeAssignment.amount_paid + payment.amount,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"No fee assignment to settle payment {payment.id} against")
            return None

        assignment = (
            await self.session.execute(
                select(FeeAssignment)
                .where(
                    FeeAssignment.student_id == payment.student_id,
                    FeeAssignment.fee_id == payment.fee_id,
                )
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        assignment.status = derive_fee_status(
            assignment.amount_paid, assignment.amount_due, assignment.due_date
        ).value

        logger.info(
            f"Settled payment {payment.id}: paid {assignment.amount_paid} of "
            f"{assignment.amount_due} ({assignment.status})"
        )
        return assignment

    async def _generate_document(self, kind: str, payment: Payment, context: RequestContext):
        """Render a receipt or invoice for a committed payment; failures are logged only."""
        if self.documents is None:
            return

        payment_id, student_id, school_id = payment.id, payment.student_id, payment.school_id
        document_number = f"{'REC' if kind == 'receipt' else 'INV'}-{payment_id}-{int(time.time() * 1000)}"
        render = self.documents.generate_receipt if kind == "receipt" else self.documents.generate_invoice

        try:
            url = await render(
                {
                    "payment_id": str(payment_id),
                    "number": document_number,
                    "student_id": str(student_id),
                    "school_id": str(school_id),
                    "fee_id": str(payment.fee_id),
                    "amount": float(payment.amount),
                    "provider_reference": payment.provider_reference,
                }
            )
            setattr(payment, f"{kind}_url", url)
            payment.updated_at = datetime.utcnow()
            self.audit.record(
                f"{kind}_generated",
                context,
                payment_id=payment_id,
                student_id=student_id,
                school_id=school_id,
                number=document_number,
                url=url,
            )
            await self.session.commit()
        except Exception as e:
            logger.error(f"Failed to generate {kind} for payment {payment_id}: {str(e)}", exc_info=True)
            await self.session.rollback()
            await self.audit.record_failure(
                f"{kind}_generation_error",
                context,
                payment_id=payment_id,
                student_id=student_id,
                school_id=school_id,
                error=str(e),
            )
            await self.session.refresh(payment)

    async def _get_assignment(self, student_id: UUID, fee_id: UUID) -> Optional[FeeAssignment]:
        result = await self.session.execute(
            select(FeeAssignment).where(
                FeeAssignment.student_id == student_id,
                FeeAssignment.fee_id == fee_id,
            )
        )
        return result.scalar_one_or_none()

    async def _get_by_reference(self, reference: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.provider_reference == reference)
        )
        return result.scalar_one_or_none()

    async def _contacts(self, payment: Payment) -> Tuple[Optional[Student], Optional[School]]:
        student = await self.session.get(Student, payment.student_id)
        school = await self.session.get(School, payment.school_id)
        return student, school
