"""Guarded status transitions for payments and refunds.

The synchronous verify path and the webhook path both go through
``apply_transition``, so a record confirmed by one of them is seen as an
idempotent no-op by the other.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvalidTransition
from .models import PaymentStatus, RefundStatus

logger = logging.getLogger(__name__)

MAX_TRANSITION_ATTEMPTS = 3


class PaymentEvent(str, Enum):
    """Events that move a payment."""
    CONFIRM = "confirm"
    REJECT = "reject"


class RefundEvent(str, Enum):
    """Events that move a refund."""
    APPROVE = "approve"
    REJECT = "reject"
    PROCESS = "process"
    FAIL = "fail"


@dataclass(frozen=True)
class Transition:
    previous: str
    current: str

    @property
    def changed(self) -> bool:
        return self.previous != self.current


def _value(member) -> str:
    return getattr(member, "value", member)


class StateMachine:
    """Transition table plus the events that are no-ops in their own target state."""

    def __init__(self, name: str, transitions: Dict[Tuple[Enum, Enum], Enum], idempotent: Dict[Enum, Enum]):
        self.name = name
        self._transitions = {
            (_value(state), _value(event)): _value(target)
            for (state, event), target in transitions.items()
        }
        self._idempotent = {_value(event): _value(state) for event, state in idempotent.items()}

    def transition(self, current, event) -> Transition:
        current, event = _value(current), _value(event)

        target = self._transitions.get((current, event))
        if target is not None:
            return Transition(current, target)

        if self._idempotent.get(event) == current:
            return Transition(current, current)

        raise InvalidTransition(current, event)

    def can_apply(self, current, event) -> bool:
        try:
            self.transition(current, event)
        except InvalidTransition:
            return False
        return True


PAYMENT_STATE_MACHINE = StateMachine(
    "payment",
    transitions={
        (PaymentStatus.INITIATED, PaymentEvent.CONFIRM): PaymentStatus.CONFIRMED,
        (PaymentStatus.INITIATED, PaymentEvent.REJECT): PaymentStatus.REJECTED,
    },
    idempotent={
        PaymentEvent.CONFIRM: PaymentStatus.CONFIRMED,
        PaymentEvent.REJECT: PaymentStatus.REJECTED,
    },
)

REFUND_STATE_MACHINE = StateMachine(
    "refund",
    transitions={
        (RefundStatus.REQUESTED, RefundEvent.APPROVE): RefundStatus.APPROVED,
        (RefundStatus.REQUESTED, RefundEvent.REJECT): RefundStatus.REJECTED,
        (RefundStatus.REQUESTED, RefundEvent.PROCESS): RefundStatus.PROCESSED,
        (RefundStatus.APPROVED, RefundEvent.PROCESS): RefundStatus.PROCESSED,
        (RefundStatus.REQUESTED, RefundEvent.FAIL): RefundStatus.FAILED,
        (RefundStatus.APPROVED, RefundEvent.FAIL): RefundStatus.FAILED,
    },
    idempotent={
        RefundEvent.PROCESS: RefundStatus.PROCESSED,
        RefundEvent.FAIL: RefundStatus.FAILED,
    },
)


async def apply_transition(
    session: AsyncSession,
    record,
    machine: StateMachine,
    event,
    **values,
) -> Transition:
    """
    Move ``record`` through ``machine`` with a conditional UPDATE.

    The UPDATE only matches while the row still holds the status the
    transition was computed from. When another writer got there first the
    row is re-read and the event re-evaluated against the new status.

    Returns:
        The applied transition; ``changed`` is False for an idempotent no-op.

    Raises:
        InvalidTransition: if the event is not allowed from the current status.
    """
    model = type(record)

    for _ in range(MAX_TRANSITION_ATTEMPTS):
        transition = machine.transition(record.status, event)
        if not transition.changed:
            return transition

        result = await session.execute(
            update(model)
            .where(model.id == record.id, model.status == transition.previous)
            .values(status=transition.current, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await session.refresh(record)

        if result.rowcount == 1:
            logger.info(
                f"{machine.name} {record.id}: {transition.previous} -> {transition.current}"
            )
            return transition

        logger.warning(
            f"{machine.name} {record.id} changed concurrently "
            f"(expected {transition.previous}, found {record.status})"
        )

    raise InvalidTransition(record.status, _value(event))
