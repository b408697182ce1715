"""
Refund workflow: student requests, school review and gateway webhooks.

Only approved and processed refunds count against the payment amount.
Requests are checked against that cap when they are made and again when a
school approves them, with the payment row locked so concurrent approvals
of one payment are serialized.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.events import (
    RefundApprovedEvent,
    RefundFailedEvent,
    RefundProcessedEvent,
    RefundRejectedEvent,
    RefundRequestedEvent,
)
from shared.outbox import save_event_to_outbox

from .audit import SYSTEM_CONTEXT, WEBHOOK_CONTEXT, AuditLog, RequestContext
from .errors import (
    GatewayRefundFailed,
    InvalidDecision,
    InvalidRefundAmount,
    InvalidSignature,
    InvalidTransition,
    PaymentNotFound,
    ProviderNotConfigured,
    ProviderReferenceMissing,
    RefundNotFound,
    Unauthorized,
    UnsupportedProvider,
)
from .gateway import PROVIDER_METADATA, GatewayError, PaystackClient, RefundInitiation, parse_provider_metadata
from .models import PAYSTACK, Payment, Refund, RefundStatus, School, Student
from .payment_workflow import WebhookAck, WebhookResult, parse_webhook_payload
from .state_machine import REFUND_STATE_MACHINE, RefundEvent, apply_transition

logger = logging.getLogger(__name__)

# Refunds counted against the payment amount
COMMITTED_REFUND_STATUSES = (RefundStatus.APPROVED.value, RefundStatus.PROCESSED.value)
# Refunds a gateway webhook may still settle
OPEN_REFUND_STATUSES = (RefundStatus.APPROVED.value, RefundStatus.REQUESTED.value)

REVIEW_DECISIONS = {
    RefundStatus.APPROVED.value: RefundEvent.APPROVE,
    RefundStatus.REJECTED.value: RefundEvent.REJECT,
}

RefundScorer = Callable[[Payment, Decimal], Awaitable[float]]


async def no_refund_score(payment: Payment, amount: Decimal) -> float:
    return 0.0


@dataclass
class RefundRequestResult:
    refund: Refund
    refundable_before: Decimal


class RefundWorkflow:
    """Requests, reviews and settles refunds."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaystackClient,
        scorer: RefundScorer = no_refund_score,
    ):
        self.session = session
        self.gateway = gateway
        self.scorer = scorer
        self.audit = AuditLog(session)

    # Request
    async def request(
        self,
        student_id: UUID,
        payment_id: UUID,
        amount,
        reason: str,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> RefundRequestResult:
        """
        Open a refund request against one of the student's payments.

        A rejected request is rolled back and leaves only a
        ``refund_request_error`` log entry behind.

        Raises:
            PaymentNotFound, Unauthorized, InvalidRefundAmount
        """
        scope = {"payment_id": payment_id, "student_id": student_id}
        try:
            return await self._request(student_id, payment_id, Decimal(str(amount)), reason, context, scope)
        except Exception as e:
            logger.warning(f"Refund request failed for payment {payment_id}: {str(e)}")
            await self.session.rollback()
            await self.audit.record_failure("refund_request_error", context, error=str(e), **scope)
            raise

    async def _request(
        self,
        student_id: UUID,
        payment_id: UUID,
        amount: Decimal,
        reason: str,
        context: RequestContext,
        scope: dict,
    ) -> RefundRequestResult:
        payment = await self.session.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFound()
        scope["school_id"] = payment.school_id
        if payment.student_id != student_id:
            raise Unauthorized("Unauthorized: Payment does not belong to this student")

        if not amount.is_finite():
            raise InvalidRefundAmount("Invalid refund amount")

        refundable = payment.amount - await self._committed_total(payment.id)
        if amount <= 0 or amount > refundable:
            raise InvalidRefundAmount(f"Invalid refund amount. Maximum refundable: {refundable}")

        fraud_score = await self.scorer(payment, amount)

        now = datetime.utcnow()
        refund = Refund(
            id=uuid4(),
            payment_id=payment.id,
            student_id=student_id,
            school_id=payment.school_id,
            amount=amount,
            reason=reason,
            fraud_score=fraud_score,
            status=RefundStatus.REQUESTED.value,
            gateway_reference=None,
            created_at=now,
            updated_at=now,
        )
        self.session.add(refund)

        self.audit.append_refund_entry(refund, "refund_requested", context, amount=amount, reason=reason)
        self.audit.record(
            "refund_requested",
            context,
            payment_id=payment.id,
            refund_id=refund.id,
            student_id=student_id,
            school_id=payment.school_id,
            amount=amount,
            fraud_score=fraud_score,
        )

        school = await self.session.get(School, payment.school_id)
        await save_event_to_outbox(
            self.session,
            RefundRequestedEvent(
                aggregate_id=refund.id,
                correlation_id=payment.id,
                refund_id=refund.id,
                payment_id=payment.id,
                student_id=student_id,
                school_id=payment.school_id,
                amount=float(amount),
                reason=reason,
                school_email=school.email if school else None,
            ),
        )

        await self.session.commit()
        logger.info(f"Refund {refund.id} of {amount} requested for payment {payment.id}")

        return RefundRequestResult(refund=refund, refundable_before=refundable)

    # Review
    async def review(
        self,
        school_id: UUID,
        refund_id: UUID,
        decision: str,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> Refund:
        """
        Approve or reject a requested refund.

        Approval sends the refund to the gateway inside the same unit of
        work. A declined or failed gateway call leaves the refund ``failed``.

        Raises:
            RefundNotFound, Unauthorized, InvalidDecision, PaymentNotFound,
            InvalidRefundAmount, UnsupportedProvider, ProviderReferenceMissing,
            ProviderNotConfigured, GatewayRefundFailed, InvalidTransition
        """
        scope = {"refund_id": refund_id, "school_id": school_id}
        try:
            return await self._review(school_id, refund_id, decision, context, scope)
        except Exception as e:
            logger.warning(f"Review of refund {refund_id} failed: {str(e)}")
            await self.session.rollback()
            await self.audit.record_failure(
                "refund_review_error", context, decision=decision, error=str(e), **scope
            )
            raise

    async def _review(
        self,
        school_id: UUID,
        refund_id: UUID,
        decision: str,
        context: RequestContext,
        scope: dict,
    ) -> Refund:
        refund = await self.session.get(Refund, refund_id)
        if refund is None:
            raise RefundNotFound()
        scope.update(payment_id=refund.payment_id, student_id=refund.student_id)
        if refund.school_id != school_id:
            raise Unauthorized("Unauthorized: Refund does not belong to this school")

        event = REVIEW_DECISIONS.get(decision)
        if event is None:
            raise InvalidDecision()

        # Only requested refunds can be reviewed
        REFUND_STATE_MACHINE.transition(refund.status, event)

        if event == RefundEvent.REJECT:
            await apply_transition(self.session, refund, REFUND_STATE_MACHINE, event)
            self._record(refund, "refund_rejected", context, amount=refund.amount)
            student = await self.session.get(Student, refund.student_id)
            await save_event_to_outbox(
                self.session,
                RefundRejectedEvent(
                    aggregate_id=refund.id,
                    correlation_id=refund.payment_id,
                    refund_id=refund.id,
                    payment_id=refund.payment_id,
                    student_id=refund.student_id,
                    school_id=refund.school_id,
                    amount=float(refund.amount),
                    student_email=student.email if student else None,
                ),
            )
            await self.session.commit()
            logger.info(f"Refund {refund.id} rejected by school {school_id}")
            return refund

        return await self._approve(refund, context)

    async def _approve(self, refund: Refund, context: RequestContext) -> Refund:
        payment = (
            await self.session.execute(
                select(Payment).where(Payment.id == refund.payment_id).with_for_update()
            )
        ).scalar_one_or_none()
        if payment is None:
            raise PaymentNotFound("Associated payment not found")

        remaining = payment.amount - await self._committed_total(payment.id)
        if refund.amount > remaining:
            raise InvalidRefundAmount(f"Invalid refund amount. Maximum refundable: {remaining}")

        if payment.payment_provider not in PROVIDER_METADATA:
            raise UnsupportedProvider(f"Unsupported payment provider: {payment.payment_provider}")

        metadata = parse_provider_metadata(payment.payment_provider, payment.provider_metadata)
        provider_reference = metadata.reference or payment.provider_reference
        if not provider_reference:
            raise ProviderReferenceMissing()

        school = await self.session.get(School, refund.school_id)
        if school is None or not school.has_provider(PAYSTACK):
            raise ProviderNotConfigured()

        await apply_transition(self.session, refund, REFUND_STATE_MACHINE, RefundEvent.APPROVE)
        self._record(refund, "refund_approved", context, amount=refund.amount)

        try:
            initiation = await self.gateway.initiate_refund(provider_reference, refund.amount)
        except GatewayError as e:
            initiation = RefundInitiation(accepted=False, message=e.message, raw=e.raw)
            transport = True
        else:
            transport = False

        student = await self.session.get(Student, refund.student_id)
        student_email = student.email if student else None

        if not initiation.accepted:
            reason = initiation.message or "Paystack refund initiation failed"
            await apply_transition(self.session, refund, REFUND_STATE_MACHINE, RefundEvent.FAIL)
            self._record(refund, "refund_failed", context, provider_reference=provider_reference, error=reason)
            await save_event_to_outbox(self.session, self._failed_event(refund, reason, student_email))
            await self.session.commit()

            logger.warning(f"Gateway declined refund {refund.id}: {reason}")
            raise GatewayRefundFailed(f"Paystack refund initiation failed: {reason}", transport=transport)

        refund.gateway_reference = initiation.reference
        refund.updated_at = datetime.utcnow()
        self._record(
            refund,
            "refund_initiated",
            context,
            provider_reference=provider_reference,
            gateway_reference=initiation.reference,
        )
        await save_event_to_outbox(
            self.session,
            RefundApprovedEvent(
                aggregate_id=refund.id,
                correlation_id=refund.payment_id,
                refund_id=refund.id,
                payment_id=refund.payment_id,
                student_id=refund.student_id,
                school_id=refund.school_id,
                amount=float(refund.amount),
                gateway_reference=initiation.reference,
                student_email=student_email,
            ),
        )
        await self.session.commit()

        logger.info(f"Refund {refund.id} approved and sent to gateway ({initiation.reference})")
        return refund

    # Webhooks
    async def handle_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        context: RequestContext = WEBHOOK_CONTEXT,
    ) -> WebhookResult:
        """
        Apply a ``refund.processed`` or ``refund.failed`` delivery.

        Raises:
            InvalidSignature: the signature header does not match the body;
                nothing is read or written in that case.
        """
        if not self.gateway.verify_signature(raw_body, signature):
            logger.warning("Rejected refund webhook with invalid signature")
            raise InvalidSignature()

        payload = parse_webhook_payload(raw_body)
        event_name = payload.get("event")
        data = payload.get("data") or {}

        events = {"refund.processed": RefundEvent.PROCESS, "refund.failed": RefundEvent.FAIL}
        event = events.get(event_name)
        if event is None:
            logger.info(f"Ignoring refund webhook event {event_name}")
            return WebhookResult(WebhookAck.IGNORED, "Webhook event ignored")

        transaction = data.get("transaction")
        reference = (
            transaction.get("reference") if isinstance(transaction, dict) else None
        ) or data.get("transaction_reference")

        payment = None
        if reference:
            payment = (
                await self.session.execute(select(Payment).where(Payment.provider_reference == reference))
            ).scalar_one_or_none()
        if payment is None:
            logger.warning(f"Refund webhook for unknown payment reference {reference}")
            return WebhookResult(WebhookAck.NOT_FOUND, "Payment not found")

        gateway_reference = data.get("id") or data.get("refund_reference")
        refund = await self._match_refund(payment.id, gateway_reference)
        if refund is None:
            target = RefundStatus.PROCESSED if event == RefundEvent.PROCESS else RefundStatus.FAILED
            if await self._has_refund_in(payment.id, target.value):
                return WebhookResult(WebhookAck.DUPLICATE, "Webhook already processed")
            logger.warning(f"Refund webhook for payment {payment.id} matched no open refund")
            return WebhookResult(WebhookAck.NOT_FOUND, "Refund not found")

        try:
            transition = await apply_transition(self.session, refund, REFUND_STATE_MACHINE, event)
        except InvalidTransition as e:
            await self.session.rollback()
            logger.warning(f"Refund webhook {event_name} conflicts with refund state: {e.message}")
            return WebhookResult(WebhookAck.CONFLICT, e.message)

        if not transition.changed:
            return WebhookResult(WebhookAck.DUPLICATE, "Webhook already processed")

        customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
        self._record(
            refund,
            f"refund_{transition.current}",
            context,
            provider_reference=reference,
            student_email=customer.get("email") or "",
        )

        student = await self.session.get(Student, refund.student_id)
        student_email = student.email if student else None
        if event == RefundEvent.PROCESS:
            outbox_event = RefundProcessedEvent(
                aggregate_id=refund.id,
                correlation_id=refund.payment_id,
                refund_id=refund.id,
                payment_id=refund.payment_id,
                student_id=refund.student_id,
                school_id=refund.school_id,
                amount=float(refund.amount),
                student_email=student_email,
            )
        else:
            outbox_event = self._failed_event(
                refund, data.get("reason") or "Refund failed at gateway", student_email
            )
        await save_event_to_outbox(self.session, outbox_event)

        await self.session.commit()
        logger.info(f"Refund {refund.id} {transition.current} via webhook")
        return WebhookResult(WebhookAck.PROCESSED, "Refund webhook processed successfully")

    # Listings
    async def list_for_school(self, school_id: UUID, status: Optional[str] = None) -> List[Refund]:
        query = select(Refund).where(Refund.school_id == school_id).order_by(Refund.created_at.desc())
        if status:
            query = query.where(Refund.status == status)
        return list((await self.session.execute(query)).scalars().all())

    async def list_for_student(self, student_id: UUID) -> List[Refund]:
        query = select(Refund).where(Refund.student_id == student_id).order_by(Refund.created_at.desc())
        return list((await self.session.execute(query)).scalars().all())

    async def get_for_school(self, school_id: UUID, refund_id: UUID) -> Refund:
        refund = await self.session.get(Refund, refund_id)
        if refund is None:
            raise RefundNotFound()
        if refund.school_id != school_id:
            raise Unauthorized("Unauthorized: Refund does not belong to this school")
        return refund

    # Internals
    def _record(self, refund: Refund, action: str, context: RequestContext, **details):
        """Audit entry on the refund plus the matching TransactionLog row."""
        self.audit.append_refund_entry(refund, action, context, **details)
        self.audit.record(
            action,
            context,
            payment_id=refund.payment_id,
            refund_id=refund.id,
            student_id=refund.student_id,
            school_id=refund.school_id,
            **details,
        )

    def _failed_event(self, refund: Refund, reason: str, student_email: Optional[str]) -> RefundFailedEvent:
        return RefundFailedEvent(
            aggregate_id=refund.id,
            correlation_id=refund.payment_id,
            refund_id=refund.id,
            payment_id=refund.payment_id,
            student_id=refund.student_id,
            school_id=refund.school_id,
            amount=float(refund.amount),
            reason=reason,
            student_email=student_email,
        )

    async def _committed_total(self, payment_id: UUID) -> Decimal:
        total = (
            await self.session.execute(
                select(func.coalesce(func.sum(Refund.amount), 0)).where(
                    Refund.payment_id == payment_id,
                    Refund.status.in_(COMMITTED_REFUND_STATUSES),
                )
            )
        ).scalar_one()
        return Decimal(str(total))

    async def _match_refund(self, payment_id: UUID, gateway_reference) -> Optional[Refund]:
        if gateway_reference is not None:
            refund = (
                await self.session.execute(
                    select(Refund).where(
                        Refund.payment_id == payment_id,
                        Refund.gateway_reference == str(gateway_reference),
                    )
                )
            ).scalar_one_or_none()
            if refund is not None:
                return refund

        return (
            await self.session.execute(
                select(Refund)
                .where(Refund.payment_id == payment_id, Refund.status.in_(OPEN_REFUND_STATUSES))
                .order_by(Refund.created_at)
                .limit(1)
            )
        ).scalar_one_or_none()

    async def _has_refund_in(self, payment_id: UUID, status: str) -> bool:
        count = (
            await self.session.execute(
                select(func.count(Refund.id)).where(Refund.payment_id == payment_id, Refund.status == status)
            )
        ).scalar_one()
        return count > 0
