"""Append-only audit log for payments and refunds."""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic_core import to_jsonable_python
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Refund, RefundAuditEntry, TransactionLog

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """Who is acting and from where."""

    ip: Optional[str] = None
    device_info: Optional[str] = None
    actor_id: Optional[UUID] = None
    actor_type: str = "system"
    email: Optional[str] = None
    webhook: bool = False

    def as_metadata(self) -> Dict[str, Any]:
        metadata = {"ip": self.ip, "device_info": self.device_info}
        if self.webhook:
            metadata["webhook"] = True
        return metadata


SYSTEM_CONTEXT = RequestContext()
WEBHOOK_CONTEXT = RequestContext(webhook=True)


class AuditLog:
    """
    Writes TransactionLog rows and refund audit entries.

    Entries are added to the caller's session, so they commit or roll back
    together with the state change they describe.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def record(
        self,
        action: str,
        context: RequestContext = SYSTEM_CONTEXT,
        *,
        payment_id: Optional[UUID] = None,
        refund_id: Optional[UUID] = None,
        student_id: Optional[UUID] = None,
        school_id: Optional[UUID] = None,
        **details,
    ) -> TransactionLog:
        entry = TransactionLog(
            payment_id=payment_id,
            refund_id=refund_id,
            student_id=student_id,
            school_id=school_id,
            action=action,
            details=to_jsonable_python({**context.as_metadata(), **details}),
        )
        self.session.add(entry)
        return entry

    def append_refund_entry(
        self,
        refund: Refund,
        action: str,
        context: RequestContext = SYSTEM_CONTEXT,
        **details,
    ) -> RefundAuditEntry:
        entry = RefundAuditEntry(
            refund_id=refund.id,
            action=action,
            actor_id=context.actor_id,
            actor_type=context.actor_type,
            details=to_jsonable_python({**context.as_metadata(), **details}),
        )
        refund.audit_trail.append(entry)
        return entry

    async def record_failure(self, action: str, context: RequestContext = SYSTEM_CONTEXT, **fields):
        """Commit a failure entry on its own, after the failed work was rolled back."""
        try:
            self.record(action, context, **fields)
            await self.session.commit()
        except Exception as e:
            logger.error(f"Failed to record {action}: {str(e)}", exc_info=True)
            await self.session.rollback()
