"""
Test configuration and shared fixtures for the clinic billing test suite.

Uses a temporary SQLite file so that several sessions (separate "cashiers")
can race on the same rows. The schema is built by running the Alembic
migrations once per session; rows are wiped after every test because the
billing stores commit each write on their own.
"""

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional, Tuple

# Must be set before any core.* import reads it
_TEMP_DB = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
_TEMP_DB.close()
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", f"sqlite:///{_TEMP_DB.name}")
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from alembic import command
from alembic.config import Config

from core.database import Base
from models.visit import Visit
from services.billing_gateways import AuditEvent, SqlVisitGateway
from services.billing_policy import BillingPolicy
from services.invoice_completion_workflow import InvoiceCompletionWorkflow
from services.invoice_service import InvoiceService
from services.payment_workflow import PaymentWorkflow

ALEMBIC_DIR = Path(__file__).resolve().parent.parent / "alembic"


class RecordingAuditGateway:
    """AuditGateway that keeps events in memory."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [e.action for e in self.events]


class RecordingNotificationGateway:
    """NotificationGateway that keeps (audience, message) pairs in memory."""

    def __init__(self):
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    def notify(self, audience: str, message: Dict[str, Any]) -> None:
        self.sent.append((audience, message))

    def titles(self, audience: Optional[str] = None) -> List[str]:
        return [m.get("title") for a, m in self.sent if audience is None or a == audience]


def make_alembic_config(connection=None) -> Config:
    """Alembic config pointing at backend/alembic, optionally bound to a live connection."""
    cfg = Config()
    cfg.set_main_option("script_location", str(ALEMBIC_DIR))
    cfg.set_main_option("sqlalchemy.url", TEST_DATABASE_URL)
    if connection is not None:
        cfg.attributes["connection"] = connection
    return cfg


@pytest.fixture(scope="session")
def db_engine():
    """
    Create a database engine for the test session.

    Uses NullPool so every session gets its own SQLite connection.
    """
    engine = create_engine(TEST_DATABASE_URL, poolclass=NullPool, echo=False)

    yield engine

    engine.dispose()
    try:
        os.unlink(_TEMP_DB.name)
    except OSError:
        pass


@pytest.fixture(scope="session", autouse=True)
def setup_test_database(db_engine):
    """Build the schema from the Alembic migrations (base -> head)."""
    Base.metadata.drop_all(bind=db_engine)
    with db_engine.begin() as connection:
        connection.execute(text("DROP TABLE IF EXISTS alembic_version"))
        command.upgrade(make_alembic_config(connection), "head")

    yield

    Base.metadata.drop_all(bind=db_engine)
    with db_engine.begin() as connection:
        connection.execute(text("DROP TABLE IF EXISTS alembic_version"))


@pytest.fixture(autouse=True)
def clean_tables(db_engine):
    """Delete every row after each test."""
    yield
    with db_engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture
def session_factory(db_engine):
    """Factory for independent sessions, e.g. two cashiers racing on one invoice."""
    factory = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    sessions = []

    def make() -> Session:
        session = factory()
        sessions.append(session)
        return session

    yield make

    for session in sessions:
        session.close()


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    yield session_factory()


@pytest.fixture
def alembic_config():
    """Factory for Alembic configs; pass a connection to migrate a specific database."""
    return make_alembic_config


@pytest.fixture
def audit_gateway() -> RecordingAuditGateway:
    return RecordingAuditGateway()


@pytest.fixture
def notification_gateway() -> RecordingNotificationGateway:
    return RecordingNotificationGateway()


@pytest.fixture
def billing_policy() -> BillingPolicy:
    return BillingPolicy(max_partial_payments=2, max_outstanding_invoices=2, complete_visit_on_payment=True)


@pytest.fixture
def make_workflow(db_session, audit_gateway, notification_gateway, billing_policy):
    """
    Build a workflow class against db_session (or another session).

    Usage:
        payments = make_workflow(PaymentWorkflow)
        other_cashier = make_workflow(PaymentWorkflow, session=session_factory())
        failing = make_workflow(InvoiceCompletionWorkflow, visit_gateway=Mock())
    """
    def make(cls, session: Session = None, visit_gateway=None, policy: BillingPolicy = None):
        session = session or db_session
        return cls(
            session,
            visit_gateway=visit_gateway or SqlVisitGateway(session),
            notification_gateway=notification_gateway,
            audit_gateway=audit_gateway,
            policy=policy or billing_policy,
        )

    return make


@pytest.fixture
def invoice_service(make_workflow) -> InvoiceService:
    return make_workflow(InvoiceService)


@pytest.fixture
def payment_workflow(make_workflow) -> PaymentWorkflow:
    return make_workflow(PaymentWorkflow)


@pytest.fixture
def completion_workflow(make_workflow) -> InvoiceCompletionWorkflow:
    return make_workflow(InvoiceCompletionWorkflow)


@pytest.fixture
def make_visit(db_session):
    """Create a visit row. Returns the Visit."""
    def make(patient_id: int = 1, status: str = "in_progress") -> Visit:
        visit = Visit(patient_id=patient_id, status=status)
        db_session.add(visit)
        db_session.commit()
        db_session.refresh(visit)
        return visit

    return make


@pytest.fixture
def make_invoice(invoice_service, make_visit):
    """
    Create a visit and its invoice with the given line prices.

    Usage:
        invoice = make_invoice([Decimal("100.00")])
        invoice = make_invoice(["60", "40"], patient_id=7)
    """
    def make(prices: Iterable[Any] = ("100.00",), patient_id: int = 1, visit_status: str = "in_progress"):
        visit = make_visit(patient_id=patient_id, status=visit_status)
        invoice = invoice_service.create_invoice(visit.id, created_by=1)
        for index, price in enumerate(prices):
            _, invoice = invoice_service.add_item(
                invoice.id,
                {"item_type": "service", "item_name": f"Service {index + 1}", "unit_price": price},
                added_by=1,
            )
        return invoice

    return make
