"""Background consumer of deferred fraud checks."""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select

from .audit import AuditLog
from .fraud_oracle import FraudFeatures, FraudOracleClient
from .fraud_scoring import compute_fraud_score, record_evaluation
from .models import FraudCheckQueue, FraudCheckStatus, Payment

logger = logging.getLogger(__name__)


class FraudCheckRetryWorker:
    """Re-runs queued fraud checks until they succeed or run out of attempts."""

    def __init__(
        self,
        session_factory,
        oracle: FraudOracleClient,
        poll_interval: int = 30,
        batch_size: int = 50,
        max_attempts: int = 5,
    ):
        """
        Initialize the retry worker.

        Args:
            session_factory: Async session factory for database access
            oracle: Fraud oracle client
            poll_interval: Seconds to wait between polls
            batch_size: Number of queued checks per batch
            max_attempts: Failed attempts after which a check is marked failed
        """
        self.session_factory = session_factory
        self.oracle = oracle
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the retry worker."""
        if self._running:
            logger.warning("Fraud check retry worker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll())
        logger.info("Fraud check retry worker started")

    async def stop(self):
        """Stop the retry worker."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Fraud check retry worker stopped")

    async def _poll(self):
        while self._running:
            try:
                await self.process_queued_checks()
            except Exception as e:
                logger.error(f"Error in fraud check retry worker: {str(e)}", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    async def process_queued_checks(self) -> int:
        """Retry one batch of queued checks. Returns the number attempted."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(FraudCheckQueue)
                .where(FraudCheckQueue.status == FraudCheckStatus.QUEUED.value)
                .order_by(FraudCheckQueue.created_at)
                .limit(self.batch_size)
            )
            entries = result.scalars().all()

            if not entries:
                return 0

            logger.info(f"Retrying {len(entries)} queued fraud checks")
            audit = AuditLog(session)

            for entry in entries:
                entry.last_attempt = datetime.utcnow()
                try:
                    payment = await session.get(Payment, entry.payment_id)
                    if payment is None:
                        raise LookupError(f"Payment {entry.payment_id} not found")

                    features = FraudFeatures(**entry.request_data)
                    verdict = await self.oracle.predict(features)

                    payment.fraud_score = compute_fraud_score(verdict.reconstruction_error, verdict.threshold)
                    payment.anomaly_scale = verdict.anomaly_scale
                    payment.updated_at = datetime.utcnow()
                    record_evaluation(session, audit, payment, features, verdict, "fraud_check_retry")

                    entry.status = FraudCheckStatus.PROCESSED.value
                    entry.error_message = None
                    logger.info(f"Fraud check for payment {entry.payment_id} processed on retry")

                except Exception as e:
                    entry.retries += 1
                    entry.error_message = str(e)
                    if entry.retries >= self.max_attempts:
                        entry.status = FraudCheckStatus.FAILED.value
                        logger.error(
                            f"Fraud check for payment {entry.payment_id} failed "
                            f"after {entry.retries} attempts"
                        )
                    else:
                        logger.warning(
                            f"Fraud check retry {entry.retries}/{self.max_attempts} "
                            f"for payment {entry.payment_id} failed: {str(e)}"
                        )

            await session.commit()
            return len(entries)
