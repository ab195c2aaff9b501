"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from tally.database.engine import init_db
from tally.database.models import ChannelConnection, ChannelProvider, Workspace
from tally.services.delivery import DeliveryMessage, DeliveryOutcome
from tally.services.report_service import RenderResult
from tally.services.snapshot_store import SnapshotStore


@compiles(PG_JSONB, "sqlite")
def _compile_jsonb_as_text(type_, compiler, **kw):
    return "TEXT"


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Tally tables.

    Uses StaticPool so every thread (render worker, dispatch pool) shares
    the same in-memory database.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def store(db_engine: Engine) -> SnapshotStore:
    return SnapshotStore(db_engine)


# ---------------------------------------------------------------------------
# Seed helpers, usable as fixtures or called directly
# ---------------------------------------------------------------------------
def make_workspace(engine: Engine, name: str = "Acme", timezone: str = "Asia/Seoul") -> int:
    """Insert a workspace and return its ID."""
    with Session(engine) as session:
        workspace = Workspace(name=name, timezone=timezone)
        session.add(workspace)
        session.commit()
        return workspace.id


def make_connection(
    engine: Engine,
    workspace_id: int,
    provider: str = ChannelProvider.META_INSTAGRAM,
    account_name: str | None = None,
) -> int:
    """Insert a channel connection and return its ID."""
    with Session(engine) as session:
        connection = ChannelConnection(
            workspace_id=workspace_id, provider=provider, account_name=account_name
        )
        session.add(connection)
        session.commit()
        return connection.id


@pytest.fixture
def workspace_id(db_engine: Engine) -> int:
    return make_workspace(db_engine)


@pytest.fixture
def connection_id(db_engine: Engine, workspace_id: int) -> int:
    return make_connection(db_engine, workspace_id)


# ---------------------------------------------------------------------------
# Fakes for the dispatcher's injected collaborators
# ---------------------------------------------------------------------------
class FakeRenderer:
    """Renderer that records payloads and returns a canned result."""

    extension = "pdf"

    def __init__(self, result: RenderResult | None = None, exc: Exception | None = None):
        self.result = result or RenderResult(success=True, artifact=b"%PDF-1.7 fake")
        self.exc = exc
        self.payloads = []

    def render(self, payload):
        self.payloads.append(payload)
        if self.exc is not None:
            raise self.exc
        return self.result


class FakeChannel:
    """Delivery channel that fails for the addresses in *failing*."""

    def __init__(self, name: str = "email", failing: set[str] | None = None):
        self.name = name
        self.failing = failing or set()
        self.sent: list[DeliveryMessage] = []

    def send(self, message: DeliveryMessage) -> DeliveryOutcome:
        self.sent.append(message)
        if message.recipient in self.failing:
            return DeliveryOutcome(success=False, error="mailbox unavailable")
        return DeliveryOutcome(success=True, provider_message_id=f"msg-{len(self.sent)}")
