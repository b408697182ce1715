"""
Fraud scoring for new payments.

The engine builds a feature vector from the payment and the student's
history, asks the anomaly oracle for a verdict and turns it into a 0-100
score. Oracle or lookup failures never reach the caller: the check is
queued for the retry worker and the payment is scored 0 / "Low".
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import SYSTEM_CONTEXT, AuditLog, RequestContext
from .fraud_oracle import FraudFeatures, FraudOracleClient, OracleVerdict
from .models import (
    PAYSTACK,
    FeeAssignment,
    FraudCheckQueue,
    FraudCheckStatus,
    FraudLog,
    Payment,
    PaymentStatus,
    Student,
    TransactionLog,
)

logger = logging.getLogger(__name__)

FALLBACK_SCORE = 0.0
FALLBACK_SCALE = "Low"
DEFAULT_DAYS_SINCE_LAST_PAYMENT = 30
DEFAULT_STUDENT_TYPE = "Full-time"
UNIVERSITY_STUDENT_TYPES = ("Full-time", "Part-time", "Foreign")

# Actions whose device signature the current request is compared against
DEVICE_HISTORY_ACTIONS = ("student_login_success", "payment_initiated", "payment_confirmed")


@dataclass(frozen=True)
class FraudResult:
    fraud_score: float
    anomaly_scale: str


def map_payment_method(provider: Optional[str]) -> str:
    return "Mobile Money" if provider == PAYSTACK else "Bank"


def map_student_type(student_type: Optional[str]) -> str:
    return "university" if (student_type or DEFAULT_STUDENT_TYPE) in UNIVERSITY_STUDENT_TYPES else "middle"


def compute_fraud_score(reconstruction_error: float, threshold: float) -> float:
    """Scale a reconstruction error to 0-100, saturating at 2.5x the threshold."""
    score = reconstruction_error / (threshold * 2.5) * 100
    return max(0.0, min(score, 100.0))


def record_evaluation(
    session: AsyncSession,
    audit: AuditLog,
    payment: Payment,
    features: FraudFeatures,
    verdict: OracleVerdict,
    action: str,
    context: RequestContext = SYSTEM_CONTEXT,
):
    """Write the TransactionLog entry and the FraudLog row of one oracle verdict."""
    request_data = features.model_dump()
    audit.record(
        action,
        context,
        payment_id=payment.id,
        student_id=payment.student_id,
        school_id=payment.school_id,
        reconstruction_error=verdict.reconstruction_error,
        anomaly_scale=verdict.anomaly_scale,
        request_data=request_data,
    )
    session.add(
        FraudLog(
            payment_id=payment.id,
            school_id=payment.school_id,
            reconstruction_error=verdict.reconstruction_error,
            anomaly_scale=verdict.anomaly_scale,
            details={"request_data": request_data, "response": verdict.model_dump()},
        )
    )


class FraudScoringEngine:
    """Scores a payment against the anomaly oracle."""

    def __init__(self, session: AsyncSession, oracle: FraudOracleClient, audit: Optional[AuditLog] = None):
        self.session = session
        self.oracle = oracle
        self.audit = audit or AuditLog(session)

    async def score(self, payment: Payment, context: RequestContext = SYSTEM_CONTEXT) -> FraudResult:
        gathered: Dict[str, Any] = {
            "amount_paid": float(payment.amount),
            "payment_method": map_payment_method(payment.payment_provider),
        }

        try:
            async with self.session.begin_nested():
                features = await self._build_features(payment, context, gathered)
                verdict = await self.oracle.predict(features)
                fraud_score = compute_fraud_score(verdict.reconstruction_error, verdict.threshold)
                record_evaluation(self.session, self.audit, payment, features, verdict, "fraud_check", context)

            logger.info(
                f"Fraud check for payment {payment.id}: score={fraud_score:.2f}, "
                f"scale={verdict.anomaly_scale}"
            )
            return FraudResult(fraud_score=fraud_score, anomaly_scale=verdict.anomaly_scale)

        except Exception as e:
            logger.warning(f"Fraud check failed for payment {payment.id}, queued for retry: {str(e)}")
            self._enqueue(payment, context, gathered, str(e))
            return FraudResult(fraud_score=FALLBACK_SCORE, anomaly_scale=FALLBACK_SCALE)

    async def _build_features(
        self,
        payment: Payment,
        context: RequestContext,
        gathered: Dict[str, Any],
    ) -> FraudFeatures:
        """Collect the feature vector; ``gathered`` keeps whatever was found before a failure."""
        assignment = (
            await self.session.execute(
                select(FeeAssignment).where(
                    FeeAssignment.student_id == payment.student_id,
                    FeeAssignment.fee_id == payment.fee_id,
                )
            )
        ).scalar_one_or_none()
        if assignment is None:
            raise LookupError("Fee assignment not found")
        gathered["fee_amount_due"] = float(assignment.amount_due)

        student = await self.session.get(Student, payment.student_id)
        if student is None:
            raise LookupError("Student not found")
        gathered["student_type"] = map_student_type(student.student_type)

        # Only the most recent login or payment record counts
        last_log = (
            await self.session.execute(
                select(TransactionLog)
                .where(
                    TransactionLog.student_id == payment.student_id,
                    TransactionLog.action.in_(DEVICE_HISTORY_ACTIONS),
                )
                .order_by(TransactionLog.created_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        gathered["is_new_device"] = (
            last_log is None
            or (last_log.details or {}).get("device_info") != context.device_info
        )

        last_payment = (
            await self.session.execute(
                select(Payment)
                .where(
                    Payment.student_id == payment.student_id,
                    Payment.status == PaymentStatus.CONFIRMED.value,
                )
                .order_by(Payment.created_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        gathered["time_since_last_payment_days"] = (
            (datetime.utcnow() - last_payment.created_at).days
            if last_payment is not None
            else DEFAULT_DAYS_SINCE_LAST_PAYMENT
        )

        return FraudFeatures(**gathered)

    def _enqueue(self, payment: Payment, context: RequestContext, gathered: Dict[str, Any], error: str):
        gathered.setdefault("student_type", map_student_type(None))
        request_data = FraudFeatures(**gathered).model_dump()

        self.audit.record(
            "fraud_check_error",
            context,
            payment_id=payment.id,
            student_id=payment.student_id,
            school_id=payment.school_id,
            error=error,
        )
        self.session.add(
            FraudCheckQueue(
                payment_id=payment.id,
                school_id=payment.school_id,
                request_data=request_data,
                status=FraudCheckStatus.QUEUED.value,
                retries=0,
            )
        )
