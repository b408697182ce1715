import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import Database
from shared.outbox import OutboxMessage
from services.payment_service.documents import DocumentClient
from services.payment_service.fraud_oracle import FraudOracleClient
from services.payment_service.gateway import PaystackClient
from services.payment_service.models import (
    Fee,
    FeeAssignment,
    Payment,
    PaymentStatus,
    School,
    Student,
)

PAYSTACK_SECRET = "sk_test_3f9c1e"
ORACLE_URL = "https://oracle.test/predict"
DOCUMENTS_URL = "https://documents.test"


def sign(body: bytes, secret: str = PAYSTACK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def webhook_body(event_name: str, data: dict) -> bytes:
    return json.dumps({"event": event_name, "data": data}).encode()


async def outbox_event_types(session: AsyncSession):
    result = await session.execute(select(OutboxMessage.event_type).order_by(OutboxMessage.created_at))
    return list(result.scalars().all())


# Database
@pytest.fixture
async def database(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'fees.db'}")
    engine = database.engine

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    await database.create_tables()
    yield database
    await database.drop_tables()
    await database.close()


@pytest.fixture
def session_factory(database):
    return database.session_factory


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@dataclass
class Seed:
    school: School
    other_school: School
    student: Student
    other_student: Student
    fee: Fee
    partial_fee: Fee
    assignment: FeeAssignment
    partial_assignment: FeeAssignment


@pytest.fixture
async def seed(session_factory) -> Seed:
    today = date.today()
    school = School(
        id=uuid4(),
        name="Ocean Crest College",
        email="bursar@oceancrest.edu.ng",
        payment_providers=[{"provider": "Paystack", "public_key": "pk_test_1"}],
    )
    other_school = School(id=uuid4(), name="Hilltop Academy", email="admin@hilltop.edu.ng", payment_providers=[])
    student = Student(
        id=uuid4(),
        school_id=school.id,
        name="Adaeze Okafor",
        email="adaeze@students.oceancrest.edu.ng",
        student_number="OCC-0042",
        student_type="Full-time",
    )
    other_student = Student(
        id=uuid4(),
        school_id=school.id,
        name="Tunde Bello",
        email="tunde@students.oceancrest.edu.ng",
        student_number="OCC-0043",
        student_type="Day",
    )
    fee = Fee(
        id=uuid4(),
        school_id=school.id,
        fee_type="Tuition",
        academic_session="2025/2026",
        amount=Decimal("5000.00"),
        due_date=today + timedelta(days=30),
        allow_partial_payment=False,
    )
    partial_fee = Fee(
        id=uuid4(),
        school_id=school.id,
        fee_type="Hostel",
        academic_session="2025/2026",
        amount=Decimal("10000.00"),
        due_date=today + timedelta(days=30),
        allow_partial_payment=True,
    )
    assignment = FeeAssignment(
        id=uuid4(),
        student_id=student.id,
        fee_id=fee.id,
        school_id=school.id,
        amount_due=Decimal("5000.00"),
        amount_paid=Decimal("0"),
        due_date=fee.due_date,
    )
    partial_assignment = FeeAssignment(
        id=uuid4(),
        student_id=student.id,
        fee_id=partial_fee.id,
        school_id=school.id,
        amount_due=Decimal("10000.00"),
        amount_paid=Decimal("0"),
        due_date=partial_fee.due_date,
    )

    async with session_factory() as session:
        session.add_all([school, other_school, student, other_student, fee, partial_fee, assignment, partial_assignment])
        await session.commit()

    return Seed(school, other_school, student, other_student, fee, partial_fee, assignment, partial_assignment)


@pytest.fixture
def make_payment(session_factory, seed):
    """Insert a payment directly, bypassing the gateway."""

    async def _make(
        amount: str = "5000.00",
        status: str = PaymentStatus.CONFIRMED.value,
        reference: Optional[str] = None,
        student: Optional[Student] = None,
        fee: Optional[Fee] = None,
        provider: str = "Paystack",
    ) -> Payment:
        student = student or seed.student
        fee = fee or seed.fee
        reference = reference or f"PAY-{uuid4()}-1700000000000"
        payment = Payment(
            id=uuid4(),
            student_id=student.id,
            school_id=fee.school_id,
            fee_id=fee.id,
            amount=Decimal(amount),
            payment_provider=provider,
            provider_reference=reference,
            provider_metadata={"provider": provider, "reference": reference, "access_code": "ac_seed", "raw_payload": {}},
            status=status,
            fraud_score=0.0,
            anomaly_scale="Low",
            receipt_url=None,
            invoice_url=None,
        )
        async with session_factory() as session:
            session.add(payment)
            await session.commit()
        return payment

    return _make


# External services
class FakePaystack:
    """In-memory Paystack API for httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.initialize_error: Optional[str] = None
        self.verify_status = "success"
        self.refund_error: Optional[str] = None
        self.unreachable = False
        self.refund_id = 3018284

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path == "/transaction/initialize":
            body = json.loads(request.content)
            if self.initialize_error:
                return httpx.Response(400, json={"status": False, "message": self.initialize_error})
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Authorization URL created",
                    "data": {
                        "authorization_url": f"https://checkout.paystack.com/{body['reference']}",
                        "access_code": "ac_0peioxfhpn",
                        "reference": body["reference"],
                    },
                },
            )

        if path.startswith("/transaction/verify/"):
            reference = path.rsplit("/", 1)[-1]
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Verification successful",
                    "data": {
                        "status": self.verify_status,
                        "reference": reference,
                        "gateway_response": "Successful" if self.verify_status == "success" else "Declined",
                    },
                },
            )

        if path == "/refund":
            if self.refund_error:
                return httpx.Response(400, json={"status": False, "message": self.refund_error})
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Refund has been queued for processing",
                    "data": {"id": self.refund_id, "status": "pending", "amount": body["amount"]},
                },
            )

        return httpx.Response(404, json={"status": False, "message": "Not found"})

    def calls_to(self, path_prefix: str):
        return [r for r in self.requests if r.url.path.startswith(path_prefix)]


class FakeOracle:
    def __init__(self):
        self.requests = []
        self.verdict = {"reconstruction_error": 12.0, "threshold": 40.0, "anomaly_scale": "Low"}
        self.unreachable = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.unreachable:
            raise httpx.ConnectError("oracle down", request=request)
        return httpx.Response(200, json=self.verdict)


class FakeDocuments:
    def __init__(self):
        self.requests = []
        self.failing = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append((request.url.path, payload))
        if self.failing:
            return httpx.Response(500, json={"message": "renderer crashed"})
        return httpx.Response(200, json={"url": f"https://cdn.test{request.url.path}/{payload['number']}.pdf"})


@pytest.fixture
def fake_paystack():
    return FakePaystack()


@pytest.fixture
def fake_oracle():
    return FakeOracle()


@pytest.fixture
def fake_documents():
    return FakeDocuments()


@pytest.fixture
async def paystack(fake_paystack):
    client = PaystackClient(PAYSTACK_SECRET, client=httpx.AsyncClient(transport=httpx.MockTransport(fake_paystack)))
    yield client
    await client.close()


@pytest.fixture
async def oracle(fake_oracle):
    client = FraudOracleClient(ORACLE_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(fake_oracle)))
    yield client
    await client.close()


@pytest.fixture
async def documents(fake_documents):
    client = DocumentClient(DOCUMENTS_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(fake_documents)))
    yield client
    await client.close()
