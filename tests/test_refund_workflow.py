import json
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from conftest import outbox_event_types, sign, webhook_body
from services.payment_service.audit import RequestContext
from services.payment_service.errors import (
    GatewayRefundFailed,
    InvalidDecision,
    InvalidRefundAmount,
    InvalidSignature,
    InvalidTransition,
    PaymentNotFound,
    ProviderNotConfigured,
    RefundNotFound,
    Unauthorized,
    UnsupportedProvider,
    ValidationFailure,
)
from services.payment_service.models import Refund, School, TransactionLog
from services.payment_service.payment_workflow import WebhookAck
from services.payment_service.refund_workflow import RefundWorkflow


@pytest.fixture
def refunds(session_factory, paystack):
    """Run one workflow call in its own session, like one request would."""

    class Runner:
        async def __call__(self, method, *args, **kwargs):
            async with session_factory() as session:
                return await getattr(RefundWorkflow(session, paystack), method)(*args, **kwargs)

    return Runner()


@pytest.fixture
def admin(seed):
    return RequestContext(ip="41.58.0.2", actor_id=uuid4(), actor_type="admin")


async def load_refund(session_factory, refund_id):
    async with session_factory() as session:
        return await session.get(Refund, refund_id)


def refund_webhook(event_name, payment, **data):
    return webhook_body(event_name, {"transaction": {"reference": payment.provider_reference}, **data})


# Requests
async def test_request_refund(session_factory, refunds, seed, make_payment):
    payment = await make_payment()
    context = RequestContext(actor_id=seed.student.id, actor_type="student")

    result = await refunds("request", seed.student.id, payment.id, "2000", "Overpaid tuition", context)

    assert result.refundable_before == Decimal("5000")
    refund = await load_refund(session_factory, result.refund.id)
    assert refund.status == "requested"
    assert refund.amount == Decimal("2000")
    assert refund.school_id == seed.school.id
    assert [entry.action for entry in refund.audit_trail] == ["refund_requested"]
    assert refund.audit_trail[0].actor_type == "student"

    async with session_factory() as session:
        assert await outbox_event_types(session) == ["refund.requested"]


async def test_request_uses_refund_scorer(session_factory, paystack, seed, make_payment):
    payment = await make_payment()

    async def scorer(payment, amount):
        return 61.5

    async with session_factory() as session:
        result = await RefundWorkflow(session, paystack, scorer).request(seed.student.id, payment.id, 100, "Duplicate")

    assert (await load_refund(session_factory, result.refund.id)).fraud_score == pytest.approx(61.5)


@pytest.mark.parametrize("amount", ["0", "-10", "5000.01"])
async def test_request_amount_out_of_range(refunds, seed, make_payment, amount):
    payment = await make_payment()

    with pytest.raises(InvalidRefundAmount) as exc_info:
        await refunds("request", seed.student.id, payment.id, amount, "Overpaid")

    assert "Maximum refundable" in exc_info.value.message


async def test_request_for_someone_elses_payment(refunds, seed, make_payment):
    payment = await make_payment()

    with pytest.raises(Unauthorized):
        await refunds("request", seed.other_student.id, payment.id, "100", "Overpaid")


async def test_request_for_unknown_payment(refunds, seed):
    with pytest.raises(PaymentNotFound):
        await refunds("request", seed.student.id, uuid4(), "100", "Overpaid")


async def test_requests_are_not_reserved_but_approvals_are_capped(session_factory, refunds, seed, make_payment, admin):
    payment = await make_payment()

    first = await refunds("request", seed.student.id, payment.id, "2000", "Overpaid")
    second = await refunds("request", seed.student.id, payment.id, "4000", "Withdrawn")
    assert second.refundable_before == Decimal("5000")

    await refunds("review", seed.school.id, first.refund.id, "approved", admin)

    with pytest.raises(InvalidRefundAmount):
        await refunds("review", seed.school.id, second.refund.id, "approved", admin)
    assert (await load_refund(session_factory, second.refund.id)).status == "requested"

    with pytest.raises(InvalidRefundAmount):
        await refunds("request", seed.student.id, payment.id, "3000.01", "Again")
    third = await refunds("request", seed.student.id, payment.id, "3000", "Remainder")
    assert third.refundable_before == Decimal("3000")


# Review
async def test_reject_refund(session_factory, refunds, seed, make_payment, admin, fake_paystack):
    payment = await make_payment()
    requested = await refunds("request", seed.student.id, payment.id, "2000", "Overpaid")

    refund = await refunds("review", seed.school.id, requested.refund.id, "rejected", admin)

    assert refund.status == "rejected"
    assert fake_paystack.requests == []
    stored = await load_refund(session_factory, refund.id)
    assert [entry.action for entry in stored.audit_trail] == ["refund_requested", "refund_rejected"]
    assert stored.audit_trail[1].actor_id == admin.actor_id
    async with session_factory() as session:
        assert await outbox_event_types(session) == ["refund.requested", "refund.rejected"]

    with pytest.raises(InvalidTransition):
        await refunds("review", seed.school.id, refund.id, "approved", admin)


async def test_review_checks(refunds, seed, make_payment, admin):
    payment = await make_payment()
    requested = await refunds("request", seed.student.id, payment.id, "2000", "Overpaid")

    with pytest.raises(RefundNotFound):
        await refunds("review", seed.school.id, uuid4(), "approved", admin)
    with pytest.raises(Unauthorized):
        await refunds("review", seed.other_school.id, requested.refund.id, "approved", admin)
    with pytest.raises(InvalidDecision):
        await refunds("review", seed.school.id, requested.refund.id, "processed", admin)


async def test_approve_sends_refund_to_gateway(session_factory, refunds, seed, make_payment, admin, fake_paystack):
    payment = await make_payment()
    requested = await refunds("request", seed.student.id, payment.id, "2000", "Overpaid")

    refund = await refunds("review", seed.school.id, requested.refund.id, "approved", admin)

    assert refund.status == "approved"
    assert refund.gateway_reference == "3018284"
    sent = json.loads(fake_paystack.calls_to("/refund")[0].content)
    assert sent == {"transaction": payment.provider_reference, "amount": 200000}

    stored = await load_refund(session_factory, refund.id)
    assert [entry.action for entry in stored.audit_trail] == [
        "refund_requested",
        "refund_approved",
        "refund_initiated",
    ]
    async with session_factory() as session:
        assert await outbox_event_types(session) == ["refund.requested", "refund.approved"]


async def test_gateway_declines_refund(session_factory, refunds, seed, make_payment, admin, fake_paystack):
    payment = await make_payment()
    requested = await refunds("request", seed.student.id, payment.id, "2000", "Overpaid")
    fake_paystack.refund_error = "Transaction has been fully reversed"

    with pytest.raises(GatewayRefundFailed) as exc_info:
        await refunds("review", seed.school.id, requested.refund.id, "approved", admin)

    assert exc_info.value.status_code == 400
    assert "fully reversed" in exc_info.value.message

    stored = await load_refund(session_factory, requested.refund.id)
    assert stored.status == "failed"
    assert [entry.action for entry in stored.audit_trail] == ["refund_requested", "refund_approved", "refund_failed"]
    async with session_factory() as session:
        assert await outbox_event_types(session) == ["refund.requested", "refund.failed"]

    # Failed refunds release the amount
    retry = await refunds("request", seed.student.id, payment.id, "5000", "Overpaid")
    assert retry.refundable_before == Decimal("5000")


async def test_gateway_unreachable_fails_refund(session_factory, refunds, seed, make_payment, admin, fake_paystack):
    payment = await make_payment()
    requested = await refunds("request", seed.student.id, payment.id, "2000", "Overpaid")
    fake_paystack.unreachable = True

    with pytest.raises(GatewayRefundFailed) as exc_info:
        await refunds("review", seed.school.id, requested.refund.id, "approved", admin)

    assert exc_info.value.status_code == 502
    assert (await load_refund(session_factory, requested.refund.id)).status == "failed"


async def test_approve_without_paystack_configured(session_factory, refunds, seed, make_payment, admin):
    payment = await make_payment()
    requested = await refunds("request", seed.student.id, payment.id, "2000", "Overpaid")
    async with session_factory() as session:
        school = await session.get(School, seed.school.id)
        school.payment_providers = []
        await session.commit()

    with pytest.raises(ProviderNotConfigured):
        await refunds("review", seed.school.id, requested.refund.id, "approved", admin)

    assert (await load_refund(session_factory, requested.refund.id)).status == "requested"


async def test_approve_unsupported_provider(refunds, seed, make_payment, admin):
    payment = await make_payment(provider="Flutterwave")
    requested = await refunds("request", seed.student.id, payment.id, "2000", "Overpaid")

    with pytest.raises(UnsupportedProvider):
        await refunds("review", seed.school.id, requested.refund.id, "approved", admin)


# Webhooks
async def approved_refund(refunds, seed, payment, admin, amount="2000"):
    requested = await refunds("request", seed.student.id, payment.id, amount, "Overpaid")
    return await refunds("review", seed.school.id, requested.refund.id, "approved", admin)


async def test_refund_processed_webhook(session_factory, refunds, seed, make_payment, admin):
    payment = await make_payment()
    refund = await approved_refund(refunds, seed, payment, admin)
    body = refund_webhook(
        "refund.processed",
        payment,
        id=3018284,
        customer={"email": "adaeze@students.oceancrest.edu.ng"},
    )

    result = await refunds("handle_webhook", body, sign(body))
    assert result.ack == WebhookAck.PROCESSED

    stored = await load_refund(session_factory, refund.id)
    assert stored.status == "processed"
    assert stored.audit_trail[-1].action == "refund_processed"
    assert stored.audit_trail[-1].details["student_email"] == "adaeze@students.oceancrest.edu.ng"
    async with session_factory() as session:
        log = (
            await session.execute(select(TransactionLog).where(TransactionLog.action == "refund_processed"))
        ).scalar_one()
        assert log.details["provider_reference"] == payment.provider_reference

    # Replays are acknowledged without another state change
    result = await refunds("handle_webhook", body, sign(body))
    assert result.ack == WebhookAck.DUPLICATE
    async with session_factory() as session:
        assert (await outbox_event_types(session)).count("refund.processed") == 1


async def test_refund_failed_webhook(session_factory, refunds, seed, make_payment, admin):
    payment = await make_payment()
    refund = await approved_refund(refunds, seed, payment, admin)
    body = refund_webhook("refund.failed", payment, id=3018284, reason="Account closed")

    result = await refunds("handle_webhook", body, sign(body))

    assert result.ack == WebhookAck.PROCESSED
    assert (await load_refund(session_factory, refund.id)).status == "failed"
    async with session_factory() as session:
        assert (await outbox_event_types(session))[-1] == "refund.failed"


async def test_refund_failed_after_processed_conflicts(session_factory, refunds, seed, make_payment, admin):
    payment = await make_payment()
    refund = await approved_refund(refunds, seed, payment, admin)
    processed = refund_webhook("refund.processed", payment, id=3018284)
    await refunds("handle_webhook", processed, sign(processed))

    failed = refund_webhook("refund.failed", payment, id=3018284)
    result = await refunds("handle_webhook", failed, sign(failed))

    assert result.ack == WebhookAck.CONFLICT
    assert (await load_refund(session_factory, refund.id)).status == "processed"


async def test_webhook_without_gateway_id_settles_oldest_open_refund(session_factory, refunds, seed, make_payment):
    payment = await make_payment()
    first = await refunds("request", seed.student.id, payment.id, "1000", "Overpaid")
    second = await refunds("request", seed.student.id, payment.id, "500", "Overpaid")
    body = webhook_body("refund.processed", {"transaction_reference": payment.provider_reference})

    result = await refunds("handle_webhook", body, sign(body))

    assert result.ack == WebhookAck.PROCESSED
    assert (await load_refund(session_factory, first.refund.id)).status == "processed"
    assert (await load_refund(session_factory, second.refund.id)).status == "requested"


async def test_refund_webhook_bad_signature(session_factory, refunds, seed, make_payment, admin):
    payment = await make_payment()
    refund = await approved_refund(refunds, seed, payment, admin)
    body = refund_webhook("refund.processed", payment, id=3018284)

    with pytest.raises(InvalidSignature):
        await refunds("handle_webhook", body, sign(body, "sk_test_attacker"))
    with pytest.raises(InvalidSignature):
        await refunds("handle_webhook", body, None)

    assert (await load_refund(session_factory, refund.id)).status == "approved"


async def test_refund_webhook_unknown_payment_and_event(refunds, seed):
    body = webhook_body("refund.processed", {"transaction": {"reference": "PAY-unknown"}})
    assert (await refunds("handle_webhook", body, sign(body))).ack == WebhookAck.NOT_FOUND

    body = webhook_body("refund.pending", {"transaction": {"reference": "PAY-unknown"}})
    assert (await refunds("handle_webhook", body, sign(body))).ack == WebhookAck.IGNORED


async def test_refund_webhook_with_no_open_refund(refunds, seed, make_payment):
    payment = await make_payment()
    body = refund_webhook("refund.processed", payment, id=99)

    assert (await refunds("handle_webhook", body, sign(body))).ack == WebhookAck.NOT_FOUND


# Listings
async def test_refund_listings(refunds, seed, make_payment, admin):
    payment = await make_payment()
    first = await refunds("request", seed.student.id, payment.id, "1000", "Overpaid")
    await refunds("request", seed.student.id, payment.id, "500", "Overpaid")
    await refunds("review", seed.school.id, first.refund.id, "rejected", admin)

    assert len(await refunds("list_for_school", seed.school.id)) == 2
    rejected = await refunds("list_for_school", seed.school.id, "rejected")
    assert [refund.id for refund in rejected] == [first.refund.id]
    assert await refunds("list_for_school", seed.other_school.id) == []
    assert len(await refunds("list_for_student", seed.student.id)) == 2

    found = await refunds("get_for_school", seed.school.id, first.refund.id)
    assert found.amount == Decimal("1000")
    with pytest.raises(Unauthorized):
        await refunds("get_for_school", seed.other_school.id, first.refund.id)


# Failure trail
@pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity"])
async def test_request_non_finite_amount(refunds, seed, make_payment, amount):
    payment = await make_payment()

    with pytest.raises(InvalidRefundAmount):
        await refunds("request", seed.student.id, payment.id, amount, "Overpaid")


async def test_rejected_request_is_logged(session_factory, refunds, seed, make_payment):
    payment = await make_payment()
    context = RequestContext(ip="102.89.1.10", device_info="okhttp/4.9", actor_type="student")

    with pytest.raises(InvalidRefundAmount):
        await refunds("request", seed.student.id, payment.id, "9999", "Overpaid", context)

    async with session_factory() as session:
        assert (await session.execute(select(Refund))).scalars().all() == []
        log = (await session.execute(select(TransactionLog))).scalar_one()
        assert log.action == "refund_request_error"
        assert (log.payment_id, log.student_id, log.school_id) == (payment.id, seed.student.id, seed.school.id)
        assert log.details["ip"] == "102.89.1.10"
        assert log.details["device_info"] == "okhttp/4.9"
        assert "Maximum refundable" in log.details["error"]


async def test_request_by_other_student_is_logged(session_factory, refunds, seed, make_payment):
    payment = await make_payment()

    with pytest.raises(Unauthorized):
        await refunds("request", seed.other_student.id, payment.id, "100", "Overpaid")

    async with session_factory() as session:
        log = (await session.execute(select(TransactionLog))).scalar_one()
        assert log.action == "refund_request_error"
        assert log.student_id == seed.other_student.id


async def test_rejected_review_is_logged(session_factory, refunds, seed, make_payment, admin):
    payment = await make_payment(provider="Flutterwave")
    requested = await refunds("request", seed.student.id, payment.id, "2000", "Overpaid")

    with pytest.raises(UnsupportedProvider):
        await refunds("review", seed.school.id, requested.refund.id, "approved", admin)

    assert (await load_refund(session_factory, requested.refund.id)).status == "requested"
    async with session_factory() as session:
        log = (
            await session.execute(select(TransactionLog).where(TransactionLog.action == "refund_review_error"))
        ).scalar_one()
        assert log.refund_id == requested.refund.id
        assert log.payment_id == payment.id
        assert log.school_id == seed.school.id
        assert log.details["decision"] == "approved"
        assert log.details["ip"] == admin.ip


async def test_review_of_unknown_refund_is_logged(session_factory, refunds, seed, admin):
    refund_id = uuid4()

    with pytest.raises(RefundNotFound):
        await refunds("review", seed.school.id, refund_id, "approved", admin)

    async with session_factory() as session:
        log = (await session.execute(select(TransactionLog))).scalar_one()
        assert (log.action, log.refund_id) == ("refund_review_error", refund_id)


async def test_refund_webhook_data_must_be_an_object(refunds, seed):
    body = webhook_body("refund.processed", ["PAY-1"])

    with pytest.raises(ValidationFailure):
        await refunds("handle_webhook", body, sign(body))
