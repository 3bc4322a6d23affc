# ==== SHARED TEST FIXTURES AND CONFIGURATION ==== #

"""
Shared test fixtures for the approval workflow service.

Provides a seeded approver directory, a controllable clock, a recording
notifier, in-memory and SQLite-backed request stores, engines built on
them and an HTTP client bound to the FastAPI application.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport


# ==== FORCE ENVIRONMENT SETUP BEFORE ANY IMPORTS ==== #

# Set environment variables BEFORE importing any approvals modules
os.environ.update({
    "APP_ENV": "test",
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "LOG_LEVEL": "WARNING",
    "ESCALATION_ENABLED": "false",
})
os.environ.pop("REDIS_URL", None)
os.environ.pop("NOTIFICATION_WEBHOOK_URL", None)
os.environ.pop("OTEL_EXPORTER_OTLP_ENDPOINT", None)

# Now import approvals modules after environment is set
from approvals.errors import NotificationError
from approvals.main import create_app
from approvals.schemas.workflow import NotificationEvent
from approvals.services.directory import StaticApproverDirectory
from approvals.services.notifications import Notifier
from approvals.services.workflow_engine import WorkflowEngine
from approvals.settings import Settings
from approvals.storage.db import build_engine, build_session_factory, create_schema
from approvals.storage.request_store import InMemoryRequestStore, SQLRequestStore


# ==== TEST DOUBLES ==== #


START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingNotifier(Notifier):
    """Keeps every event; raises for kinds listed in ``fail_kinds``."""

    def __init__(self, fail_kinds: Optional[Set[str]] = None):
        self.events: List[NotificationEvent] = []
        self.fail_kinds = set(fail_kinds or ())

    async def notify(self, event: NotificationEvent) -> None:
        if event.kind in self.fail_kinds:
            raise NotificationError(f"{event.kind} delivery refused")
        self.events.append(event)

    def kinds(self) -> List[str]:
        return [event.kind for event in self.events]

    def to(self, user_id: str) -> List[NotificationEvent]:
        return [event for event in self.events if event.to_user_id == user_id]


# ==== CONFIGURATION FIXTURES ==== #


ROLE_ASSIGNMENTS = {
    "alice": [],
    "ivan": [],
    "bob": ["manager"],
    "carol": ["manager"],
    "dave": ["hr"],
    "erin": ["finance"],
    "frank": ["admin"],
    "grace": ["general_manager"],
    "hana": ["hr", "manager"],
}

MANAGERS = {
    "alice": "bob",
    "ivan": "carol",
    "bob": "grace",
}

DISPLAY_NAMES = {
    "alice": "Alice Employee",
    "ivan": "Ivan Employee",
    "bob": "Bob Manager",
    "carol": "Carol Manager",
    "dave": "Dave HR",
    "erin": "Erin Finance",
    "frank": "Frank Admin",
    "grace": "Grace GM",
    "hana": "Hana HR Lead",
}


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the process environment defaults."""
    return Settings(
        APP_ENV="test",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ESCALATION_ENABLED=False,
        PERSISTENCE_TIMEOUT_SECONDS=2.0,
        NOTIFICATION_TIMEOUT_SECONDS=0.5,
    )


@pytest.fixture
def directory() -> StaticApproverDirectory:
    return StaticApproverDirectory(
        role_assignments=ROLE_ASSIGNMENTS,
        managers=MANAGERS,
        display_names=DISPLAY_NAMES,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ==== STORE AND ENGINE FIXTURES ==== #


@pytest.fixture
def store() -> InMemoryRequestStore:
    return InMemoryRequestStore()


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    """
    SQL request store on a throwaway SQLite file.

    Yields:
        SQLRequestStore: Store with a freshly created schema
    """
    db_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'approvals.db'}")
    await create_schema(db_engine)
    yield SQLRequestStore(build_session_factory(db_engine))
    await db_engine.dispose()


@pytest.fixture
def make_engine(directory, notifier, clock, settings):
    """Factory for engines sharing the test collaborators."""
    def factory(store=None, **overrides) -> WorkflowEngine:
        engine_settings = settings.model_copy(update=overrides) if overrides else settings
        return WorkflowEngine(
            store=store or InMemoryRequestStore(),
            directory=directory,
            notifier=notifier,
            settings=engine_settings,
            clock=clock,
        )
    return factory


@pytest.fixture
def engine(make_engine, store) -> WorkflowEngine:
    return make_engine(store)


@pytest_asyncio.fixture
async def sql_engine(make_engine, sql_store) -> WorkflowEngine:
    return make_engine(sql_store)


# ==== APPLICATION FIXTURES ==== #


@pytest_asyncio.fixture
async def client(engine):
    """
    HTTP client bound to an application that uses the in-memory engine.

    Yields:
        AsyncClient: Client for the ASGI application
    """
    app = create_app(engine=engine)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ==== REQUEST FIXTURES ==== #


@pytest.fixture
def three_step_chain() -> list:
    """Sequential bob -> dave -> erin chain."""
    return [
        {"order": 0, "approver_id": "bob", "approver_role": "manager"},
        {"order": 1, "approver_id": "dave", "approver_role": "hr"},
        {"order": 2, "approver_id": "erin", "approver_role": "finance"},
    ]


@pytest.fixture
def parallel_chain() -> list:
    """Manager group of two parallel approvers, then HR."""
    return [
        {"order": 1, "approver_id": "bob", "execution_mode": "parallel"},
        {"order": 1, "approver_id": "carol", "execution_mode": "parallel"},
        {"order": 2, "approver_id": "dave", "approver_role": "hr"},
    ]


@pytest.fixture
def step_for():
    """Look up a request's step by its approver."""
    def find(request, approver_id: str):
        return next(step for step in request.steps if step.approver_id == approver_id)
    return find
