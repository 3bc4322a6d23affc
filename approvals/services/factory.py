# ==== ENGINE FACTORY ==== #

"""
Wiring of the workflow engine from settings.

The FastAPI lifespan, the CLI and the Prefect flow all build their engine
here so they share the same store, directory and notifier choices.
"""

from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from approvals.schemas.workflow import utcnow
from approvals.services.directory import ApproverDirectory, StaticApproverDirectory
from approvals.services.escalation import EscalationPolicy
from approvals.services.notifications import Notifier, build_notifier
from approvals.services.step_resolver import StepResolver
from approvals.services.workflow_engine import WorkflowEngine
from approvals.settings import Settings, get_settings
from approvals.storage import db
from approvals.storage.request_store import InMemoryRequestStore, RequestStore, SQLRequestStore


def build_request_store(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> RequestStore:
    """SQL store when a session factory is given, in-memory otherwise."""
    if session_factory is None:
        return InMemoryRequestStore()
    return SQLRequestStore(session_factory)


def build_workflow_engine(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    directory: ApproverDirectory | None = None,
    notifier: Notifier | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> WorkflowEngine:
    """
    Build a fully wired workflow engine.

    Args:
        settings: Settings (defaults to the environment)
        session_factory: SQLAlchemy session factory for the SQL store
        directory: Approver directory (defaults to the settings seed)
        notifier: Notifier (defaults to webhook or logging per settings)
        clock: Current time source

    Returns:
        WorkflowEngine: Engine owning its collaborators
    """
    settings = settings or get_settings()
    directory = directory or StaticApproverDirectory.from_settings(settings)

    return WorkflowEngine(
        store=build_request_store(session_factory),
        directory=directory,
        notifier=notifier or build_notifier(settings),
        resolver=StepResolver(directory, settings),
        escalation_policy=EscalationPolicy.from_settings(directory, settings),
        settings=settings,
        clock=clock,
    )


async def open_workflow_engine(settings: Settings | None = None) -> WorkflowEngine:
    """
    Initialize the configured database and build an engine on it.

    Used by processes that run outside the FastAPI lifespan (CLI, Prefect).
    Callers close the database with ``approvals.storage.db.close_database``.
    """
    settings = settings or get_settings()
    session_factory = db.init_database()
    if settings.DATABASE_CREATE_SCHEMA:
        await db.create_schema(db.engine)
    return build_workflow_engine(settings, session_factory)
