"""Notification Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Optional

from fastapi import FastAPI

from shared.config import Settings
from shared.events import (
    BaseEvent,
    EventType,
    FraudAlertEvent,
    PaymentConfirmedEvent,
    PaymentInitiatedEvent,
    PaymentRejectedEvent,
    RefundApprovedEvent,
    RefundFailedEvent,
    RefundProcessedEvent,
    RefundRejectedEvent,
    RefundRequestedEvent,
)
from shared.message_broker import MessageBroker

# Settings
settings = Settings(
    service_name="notification-service",
    service_port=8005,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Message broker
message_broker = MessageBroker(settings.rabbitmq_url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""

    # Startup
    logger.info("Starting Notification Service...")

    await message_broker.connect()
    await subscribe_to_events()

    logger.info("Notification Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Notification Service...")
    await message_broker.disconnect()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-service"}


# Notification Logic
async def send_email(recipient: Optional[str], subject: str, body: str) -> bool:
    """
    Send email notification.

    Delivery is handed to the mail provider; here it is written to the log.
    Returns False when there is nobody to send to.
    """
    if not recipient:
        logger.warning(f"[EMAIL] No recipient for '{subject}', skipped")
        return False

    logger.info(f"[EMAIL] To: {recipient}")
    logger.info(f"[EMAIL] Subject: {subject}")
    logger.info(f"[EMAIL] Body: {body}")
    logger.info("-" * 60)
    return True


def naira(amount: float) -> str:
    return f"NGN {amount:,.2f}"


# Event Handlers
async def handle_payment_initiated(event: PaymentInitiatedEvent):
    """Tell the student a payment was started."""
    await send_email(
        recipient=event.student_email,
        subject=f"Payment initiated: {event.provider_reference}",
        body=f"A payment of {naira(event.amount)} has been initiated. "
             f"Reference: {event.provider_reference}",
    )


async def handle_payment_confirmed(event: PaymentConfirmedEvent):
    """Tell student and school the payment went through."""
    body = (
        f"Payment of {naira(event.amount)} confirmed. "
        f"Reference: {event.provider_reference}"
    )
    await send_email(event.student_email, "Payment Confirmed", body)
    await send_email(event.school_email, "Payment Received", body)


async def handle_payment_rejected(event: PaymentRejectedEvent):
    await send_email(
        recipient=event.student_email,
        subject="Payment Failed",
        body=f"Your payment of {naira(event.amount)} could not be completed. "
             f"Reason: {event.reason}",
    )


async def handle_fraud_alert(event: FraudAlertEvent):
    """Warn the school about a high-risk payment."""
    await send_email(
        recipient=event.school_email,
        subject=f"Fraud Alert: Payment {event.payment_id}",
        body=f"Payment {event.payment_id} by student {event.student_id} was rated "
             f"{event.anomaly_scale} risk (score {event.fraud_score:.2f}). Please review it.",
    )


async def handle_refund_requested(event: RefundRequestedEvent):
    await send_email(
        recipient=event.school_email,
        subject="Refund Request Submitted",
        body=f"A refund of {naira(event.amount)} was requested for payment {event.payment_id}. "
             f"Reason: {event.reason}",
    )


async def handle_refund_approved(event: RefundApprovedEvent):
    await send_email(
        recipient=event.student_email,
        subject="Refund Approved",
        body=f"Your refund of {naira(event.amount)} was approved and sent to the payment provider.",
    )


async def handle_refund_rejected(event: RefundRejectedEvent):
    await send_email(
        recipient=event.student_email,
        subject="Refund Rejected",
        body=f"Your refund request of {naira(event.amount)} was rejected by the school.",
    )


async def handle_refund_processed(event: RefundProcessedEvent):
    await send_email(
        recipient=event.student_email,
        subject="Refund Processed",
        body=f"Your refund of {naira(event.amount)} has been paid out.",
    )


async def handle_refund_failed(event: RefundFailedEvent):
    await send_email(
        recipient=event.student_email,
        subject="Refund Failed",
        body=f"Your refund of {naira(event.amount)} could not be completed. Reason: {event.reason}",
    )


async def log_all_events(event: BaseEvent):
    """Log all events for audit purposes."""
    logger.info(
        f"Event received: {event.event_type.value} "
        f"(id={event.event_id}, correlation={event.correlation_id})"
    )


HANDLERS: Dict[EventType, Callable[[BaseEvent], Awaitable[None]]] = {
    EventType.PAYMENT_INITIATED: handle_payment_initiated,
    EventType.PAYMENT_CONFIRMED: handle_payment_confirmed,
    EventType.PAYMENT_REJECTED: handle_payment_rejected,
    EventType.FRAUD_ALERT: handle_fraud_alert,
    EventType.REFUND_REQUESTED: handle_refund_requested,
    EventType.REFUND_APPROVED: handle_refund_approved,
    EventType.REFUND_REJECTED: handle_refund_rejected,
    EventType.REFUND_PROCESSED: handle_refund_processed,
    EventType.REFUND_FAILED: handle_refund_failed,
}


async def subscribe_to_events():
    """Subscribe to payment, refund and fraud events for notifications."""

    # Subscribe to specific events for targeted notifications
    for event_type, handler in HANDLERS.items():
        await message_broker.subscribe_to_event(
            event_type,
            f"notification_service_{event_type.value.replace('.', '_')}",
            handler,
        )

    # Subscribe to all events for logging
    await message_broker.subscribe_to_pattern(
        "*.*",
        "notification_service_all_events",
        log_all_events,
    )

    logger.info("Subscribed to notification events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
