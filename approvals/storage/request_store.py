# ==== REQUEST STORE ==== #

"""
Request store for workflow requests, their steps and timelines.

The store is the only shared mutable state in the system. Every write goes
through ``compare_and_swap``: the new request state, its timeline entries
and the action receipt commit as one unit, and only if the stored version
still equals the version the caller loaded. Two implementations share the
contract: ``SQLRequestStore`` (async SQLAlchemy) and
``InMemoryRequestStore`` (per-instance, lock guarded).
"""

import asyncio
import itertools
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import (
    Any, AsyncGenerator, Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple
)

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from approvals.errors import (
    InvalidStepState,
    PersistenceError,
    RequestNotFound,
    VersionConflict,
    WorkflowError,
)
from approvals.observability.logging import get_logger
from approvals.observability.metrics import db_connections_active, store_operation_duration_seconds
from approvals.schemas.workflow import (
    ACTIONABLE_STEP_STATUSES,
    ApprovalStep,
    DelegateSetting,
    RequestStatus,
    StepStatus,
    TimelineEntry,
    Transition,
    WorkflowRequest,
)
from approvals.storage.models import (
    ActionReceiptRecord,
    ApprovalStepRecord,
    DelegateSettingRecord,
    TimelineEntryRecord,
    WorkflowRequestRecord,
)


logger = get_logger(__name__)


class StalledStep(NamedTuple):
    """A pending step whose timeout elapsed."""
    request_id: str
    step_id: str


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _owns_step(
    step: ApprovalStep, user_id: str, roles: Set[str], delegators: Set[str] = frozenset()
) -> bool:
    if step.status not in ACTIONABLE_STEP_STATUSES:
        return False
    if step.approver_id:
        return step.approver_id == user_id or step.approver_id in delegators
    return step.approver_role in roles


# ==== STORE CONTRACT ==== #


class RequestStore(ABC):
    """Persistence contract used by the workflow engine."""

    @abstractmethod
    async def create_request(
        self, request: WorkflowRequest, entries: Sequence[TimelineEntry]
    ) -> WorkflowRequest:
        """Persist a new request with its step graph and initial timeline."""

    @abstractmethod
    async def get_request(self, request_id: str) -> WorkflowRequest:
        """Load a request with its steps. Raises ``RequestNotFound``."""

    @abstractmethod
    async def compare_and_swap(
        self, request_id: str, expected_version: int, transition: Transition
    ) -> WorkflowRequest:
        """
        Commit ``transition`` if the stored version equals ``expected_version``.

        Raises:
            VersionConflict: Stored version moved on
            InvalidStepState: Action receipt already recorded (duplicate=True)
            RequestNotFound: Request vanished
            PersistenceError: Backend failure; nothing committed
        """

    @abstractmethod
    async def list_by_approver(
        self,
        user_id: str,
        status: Optional[RequestStatus] = None,
        roles: Iterable[str] = (),
        delegators: Iterable[str] = (),
    ) -> List[WorkflowRequest]:
        """
        Requests with an actionable step owned by ``user_id``, one of
        ``roles`` or, for directly assigned steps, one of ``delegators``.
        """

    @abstractmethod
    async def list_delegated(self, user_id: str) -> List[WorkflowRequest]:
        """Requests with an actionable step handed to ``user_id`` by delegation."""

    @abstractmethod
    async def list_by_requester(
        self, user_id: str, status: Optional[RequestStatus] = None
    ) -> List[WorkflowRequest]:
        """Requests submitted by ``user_id``."""

    @abstractmethod
    async def append_timeline(self, entry: TimelineEntry) -> TimelineEntry:
        """Append one entry outside of a state transition."""

    @abstractmethod
    async def list_timeline(self, request_id: str, limit: Optional[int] = None) -> List[TimelineEntry]:
        """Timeline in chronological order; ``limit`` keeps the newest entries."""

    @abstractmethod
    async def find_stalled_steps(self, now: datetime) -> List[StalledStep]:
        """Pending steps with ``now - became_pending_at > timeout_hours``."""

    @abstractmethod
    async def save_delegate_setting(self, setting: DelegateSetting) -> DelegateSetting:
        """Store ``setting``, replacing any previous one of the same user."""

    @abstractmethod
    async def get_delegate_setting(self, user_id: str) -> Optional[DelegateSetting]:
        """The proxy setting of ``user_id``, active or not."""

    @abstractmethod
    async def remove_delegate_setting(self, user_id: str) -> bool:
        """Drop the proxy setting of ``user_id``; False when there was none."""

    @abstractmethod
    async def list_delegators(self, delegate_id: str) -> List[DelegateSetting]:
        """Every setting naming ``delegate_id`` as proxy."""


# ==== IN-MEMORY STORE ==== #


class InMemoryRequestStore(RequestStore):
    """
    Process-local store for tests and single-process runs.

    All state lives on the instance and is guarded by one asyncio lock.
    Callers always receive deep copies, so a loaded request can be
    mutated freely without touching stored state.
    """

    def __init__(self):
        self._requests: Dict[str, WorkflowRequest] = {}
        self._timeline: Dict[str, List[TimelineEntry]] = defaultdict(list)
        self._receipts: Set[Tuple[str, str, str, int]] = set()
        self._delegates: Dict[str, DelegateSetting] = {}
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()

    def _append_locked(self, entry: TimelineEntry) -> TimelineEntry:
        stored = entry.model_copy(deep=True, update={"sequence": next(self._sequence)})
        self._timeline[stored.request_id].append(stored)
        return stored

    async def create_request(
        self, request: WorkflowRequest, entries: Sequence[TimelineEntry]
    ) -> WorkflowRequest:
        async with self._lock:
            if request.id in self._requests:
                raise PersistenceError(f"Request {request.id} already exists")
            self._requests[request.id] = request.model_copy(deep=True)
            for entry in entries:
                self._append_locked(entry)
            return request.model_copy(deep=True)

    async def get_request(self, request_id: str) -> WorkflowRequest:
        async with self._lock:
            stored = self._requests.get(request_id)
            if stored is None:
                raise RequestNotFound(request_id)
            snapshot = stored.model_copy(deep=True)
        # Yield like a backend round-trip so concurrent callers interleave
        await asyncio.sleep(0)
        return snapshot

    async def compare_and_swap(
        self, request_id: str, expected_version: int, transition: Transition
    ) -> WorkflowRequest:
        async with self._lock:
            stored = self._requests.get(request_id)
            if stored is None:
                raise RequestNotFound(request_id)
            if stored.version != expected_version:
                raise VersionConflict(request_id, expected_version, stored.version)

            receipt = transition.receipt
            if receipt is not None:
                key = (receipt.request_id, receipt.step_id, receipt.action, receipt.submission_round)
                if key in self._receipts:
                    raise InvalidStepState(
                        f"Action {receipt.action} on step {receipt.step_id} was already applied",
                        request=stored.model_copy(deep=True),
                        duplicate=True,
                    )
                self._receipts.add(key)

            new_state = transition.request.model_copy(deep=True)
            new_state.version = expected_version + 1
            self._requests[request_id] = new_state
            for entry in transition.entries:
                self._append_locked(entry)
            return new_state.model_copy(deep=True)

    async def list_by_approver(
        self,
        user_id: str,
        status: Optional[RequestStatus] = None,
        roles: Iterable[str] = (),
        delegators: Iterable[str] = (),
    ) -> List[WorkflowRequest]:
        role_set, delegator_set = set(roles), set(delegators)
        async with self._lock:
            matches = [
                request.model_copy(deep=True)
                for request in self._requests.values()
                if (status is None or request.status == status)
                and any(_owns_step(step, user_id, role_set, delegator_set) for step in request.steps)
            ]
        return sorted(matches, key=lambda request: request.created_at)

    async def list_delegated(self, user_id: str) -> List[WorkflowRequest]:
        async with self._lock:
            matches = [
                request.model_copy(deep=True)
                for request in self._requests.values()
                if any(
                    step.is_actionable and step.approver_id == user_id and step.delegated_from
                    for step in request.steps
                )
            ]
        return sorted(matches, key=lambda request: request.created_at)

    async def list_by_requester(
        self, user_id: str, status: Optional[RequestStatus] = None
    ) -> List[WorkflowRequest]:
        async with self._lock:
            matches = [
                request.model_copy(deep=True)
                for request in self._requests.values()
                if request.requester_id == user_id and (status is None or request.status == status)
            ]
        return sorted(matches, key=lambda request: request.created_at)

    async def append_timeline(self, entry: TimelineEntry) -> TimelineEntry:
        async with self._lock:
            if entry.request_id not in self._requests:
                raise RequestNotFound(entry.request_id)
            return self._append_locked(entry).model_copy(deep=True)

    async def list_timeline(self, request_id: str, limit: Optional[int] = None) -> List[TimelineEntry]:
        async with self._lock:
            if request_id not in self._requests:
                raise RequestNotFound(request_id)
            entries = sorted(
                self._timeline[request_id],
                key=lambda entry: (entry.created_at, entry.sequence),
            )
            if limit is not None:
                entries = entries[-limit:] if limit > 0 else []
            return [entry.model_copy(deep=True) for entry in entries]

    async def find_stalled_steps(self, now: datetime) -> List[StalledStep]:
        async with self._lock:
            return [
                StalledStep(request.id, step.id)
                for request in self._requests.values()
                for step in request.steps
                if step.is_overdue(now)
            ]

    async def save_delegate_setting(self, setting: DelegateSetting) -> DelegateSetting:
        async with self._lock:
            self._delegates[setting.user_id] = setting.model_copy(deep=True)
            return setting.model_copy(deep=True)

    async def get_delegate_setting(self, user_id: str) -> Optional[DelegateSetting]:
        async with self._lock:
            stored = self._delegates.get(user_id)
            return stored.model_copy(deep=True) if stored is not None else None

    async def remove_delegate_setting(self, user_id: str) -> bool:
        async with self._lock:
            return self._delegates.pop(user_id, None) is not None

    async def list_delegators(self, delegate_id: str) -> List[DelegateSetting]:
        async with self._lock:
            return [
                setting.model_copy(deep=True)
                for setting in self._delegates.values()
                if setting.delegate_id == delegate_id
            ]


# ==== SQL STORE ==== #


class SQLRequestStore(RequestStore):
    """
    Request store on async SQLAlchemy.

    Compare-and-swap is a single ``UPDATE ... WHERE id = :id AND version =
    :expected`` checked on its row count, followed by the step updates,
    timeline inserts and action receipt in the same transaction.

    Args:
        session_factory: Session factory bound to the workflow database
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        start_time = time.perf_counter()
        async with self._session_factory() as session:
            db_connections_active.inc()
            try:
                async with session.begin():
                    yield session
            except WorkflowError:
                raise
            except SQLAlchemyError as exc:
                logger.error(
                    "Request store operation failed",
                    operation=operation,
                    error=str(exc),
                )
                raise PersistenceError(f"Request store {operation} failed: {exc}") from exc
            finally:
                db_connections_active.dec()
                store_operation_duration_seconds.labels(operation=operation).observe(
                    time.perf_counter() - start_time
                )

    # ==== ROW MAPPING ==== #

    @staticmethod
    def _request_values(request: WorkflowRequest) -> Dict[str, Any]:
        return {
            "tenant_id": request.tenant_id,
            "requester_id": request.requester_id,
            "requester_name": request.requester_name,
            "type": request.type.value,
            "title": request.title,
            "description": request.description,
            "payload": request.payload.model_dump(mode="json"),
            "status": request.status.value,
            "current_step": request.current_step,
            "priority": request.priority.value,
            "due_date": request.due_date,
            "submission_round": request.submission_round,
            "applied_rules": list(request.applied_rules),
            "return_reason": request.return_reason,
            "created_at": request.created_at,
            "updated_at": request.updated_at,
            "submitted_at": request.submitted_at,
            "decided_at": request.decided_at,
            "completed_at": request.completed_at,
        }

    @staticmethod
    def _step_values(step: ApprovalStep, position: int) -> Dict[str, Any]:
        return {
            "position": position,
            "order": step.order,
            "approver_role": step.approver_role,
            "approver_id": step.approver_id,
            "approver_name": step.approver_name,
            "status": step.status.value,
            "execution_mode": step.execution_mode.value,
            "optional": step.optional,
            "timeout_hours": step.timeout_hours,
            "comments": step.comments,
            "action_date": step.action_date,
            "acted_by": step.acted_by,
            "became_pending_at": step.became_pending_at,
            "added_by_rule": step.added_by_rule,
            "delegated_from": step.delegated_from,
            "escalated_from": step.escalated_from,
            "escalated_at": step.escalated_at,
        }

    @staticmethod
    def _timeline_record(entry: TimelineEntry) -> TimelineEntryRecord:
        return TimelineEntryRecord(
            id=entry.id,
            request_id=entry.request_id,
            action=entry.action.value,
            actor_id=entry.actor_id,
            actor_name=entry.actor_name,
            details=entry.details,
            created_at=entry.created_at,
        )

    @staticmethod
    def _to_step(record: ApprovalStepRecord) -> ApprovalStep:
        return ApprovalStep(
            id=record.id,
            request_id=record.request_id,
            order=record.order,
            approver_role=record.approver_role,
            approver_id=record.approver_id,
            approver_name=record.approver_name,
            status=record.status,
            execution_mode=record.execution_mode,
            optional=record.optional,
            timeout_hours=record.timeout_hours,
            comments=record.comments,
            action_date=_as_utc(record.action_date),
            acted_by=record.acted_by,
            became_pending_at=_as_utc(record.became_pending_at),
            added_by_rule=record.added_by_rule,
            delegated_from=record.delegated_from,
            escalated_from=record.escalated_from,
            escalated_at=_as_utc(record.escalated_at),
        )

    @classmethod
    def _to_request(
        cls, record: WorkflowRequestRecord, steps: Sequence[ApprovalStepRecord]
    ) -> WorkflowRequest:
        return WorkflowRequest(
            id=record.id,
            tenant_id=record.tenant_id,
            requester_id=record.requester_id,
            requester_name=record.requester_name,
            type=record.type,
            title=record.title,
            description=record.description,
            payload=record.payload,
            status=record.status,
            current_step=record.current_step,
            priority=record.priority,
            due_date=record.due_date,
            version=record.version,
            submission_round=record.submission_round,
            applied_rules=record.applied_rules or [],
            return_reason=record.return_reason,
            created_at=_as_utc(record.created_at),
            updated_at=_as_utc(record.updated_at),
            submitted_at=_as_utc(record.submitted_at),
            decided_at=_as_utc(record.decided_at),
            completed_at=_as_utc(record.completed_at),
            steps=[cls._to_step(step) for step in steps],
        )

    @staticmethod
    def _to_delegate(record: DelegateSettingRecord) -> DelegateSetting:
        return DelegateSetting(
            user_id=record.user_id,
            delegate_id=record.delegate_id,
            delegate_name=record.delegate_name,
            start_at=_as_utc(record.start_at),
            end_at=_as_utc(record.end_at),
            reason=record.reason,
            active=record.active,
            created_at=_as_utc(record.created_at),
        )

    @staticmethod
    def _to_entry(record: TimelineEntryRecord) -> TimelineEntry:
        return TimelineEntry(
            id=record.id,
            request_id=record.request_id,
            sequence=record.sequence,
            action=record.action,
            actor_id=record.actor_id,
            actor_name=record.actor_name,
            details=record.details or {},
            created_at=_as_utc(record.created_at),
        )

    async def _load_many(
        self, session: AsyncSession, records: Sequence[WorkflowRequestRecord]
    ) -> List[WorkflowRequest]:
        if not records:
            return []
        step_rows = await session.scalars(
            select(ApprovalStepRecord)
            .where(ApprovalStepRecord.request_id.in_([record.id for record in records]))
            .order_by(ApprovalStepRecord.request_id, ApprovalStepRecord.position)
        )
        steps_by_request: Dict[str, List[ApprovalStepRecord]] = defaultdict(list)
        for step in step_rows:
            steps_by_request[step.request_id].append(step)
        return [self._to_request(record, steps_by_request[record.id]) for record in records]

    # ==== CONTRACT ==== #

    async def create_request(
        self, request: WorkflowRequest, entries: Sequence[TimelineEntry]
    ) -> WorkflowRequest:
        async with self._transaction("create_request") as session:
            session.add(WorkflowRequestRecord(
                id=request.id, version=request.version, **self._request_values(request)
            ))
            # Parent row must exist before steps reference it
            await session.flush()
            for position, step in enumerate(request.steps):
                session.add(ApprovalStepRecord(
                    id=step.id, request_id=request.id, **self._step_values(step, position)
                ))
            for entry in entries:
                session.add(self._timeline_record(entry))
        return request.model_copy(deep=True)

    async def get_request(self, request_id: str) -> WorkflowRequest:
        async with self._transaction("get_request") as session:
            record = await session.get(WorkflowRequestRecord, request_id)
            if record is None:
                raise RequestNotFound(request_id)
            loaded = await self._load_many(session, [record])
        return loaded[0]

    async def compare_and_swap(
        self, request_id: str, expected_version: int, transition: Transition
    ) -> WorkflowRequest:
        new_state = transition.request
        async with self._transaction("compare_and_swap") as session:
            result = await session.execute(
                update(WorkflowRequestRecord)
                .where(
                    WorkflowRequestRecord.id == request_id,
                    WorkflowRequestRecord.version == expected_version,
                )
                .values(version=expected_version + 1, **self._request_values(new_state))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                actual = await session.scalar(
                    select(WorkflowRequestRecord.version).where(WorkflowRequestRecord.id == request_id)
                )
                if actual is None:
                    raise RequestNotFound(request_id)
                raise VersionConflict(request_id, expected_version, actual)

            receipt = transition.receipt
            if receipt is not None:
                session.add(ActionReceiptRecord(
                    request_id=receipt.request_id,
                    step_id=receipt.step_id,
                    action=receipt.action,
                    submission_round=receipt.submission_round,
                    actor_id=receipt.actor_id,
                    created_at=new_state.updated_at,
                ))
                try:
                    await session.flush()
                except IntegrityError as exc:
                    raise InvalidStepState(
                        f"Action {receipt.action} on step {receipt.step_id} was already applied",
                        duplicate=True,
                    ) from exc

            for position, step in enumerate(new_state.steps):
                await session.execute(
                    update(ApprovalStepRecord)
                    .where(ApprovalStepRecord.id == step.id)
                    .values(**self._step_values(step, position))
                    .execution_options(synchronize_session=False)
                )

            for entry in transition.entries:
                session.add(self._timeline_record(entry))

        return new_state.model_copy(deep=True, update={"version": expected_version + 1})

    async def list_by_approver(
        self,
        user_id: str,
        status: Optional[RequestStatus] = None,
        roles: Iterable[str] = (),
        delegators: Iterable[str] = (),
    ) -> List[WorkflowRequest]:
        owner_clauses = [ApprovalStepRecord.approver_id.in_([user_id, *delegators])]
        role_list = list(roles)
        if role_list:
            owner_clauses.append(and_(
                ApprovalStepRecord.approver_id.is_(None),
                ApprovalStepRecord.approver_role.in_(role_list),
            ))

        stmt = (
            select(WorkflowRequestRecord)
            .join(ApprovalStepRecord, ApprovalStepRecord.request_id == WorkflowRequestRecord.id)
            .where(
                ApprovalStepRecord.status.in_([s.value for s in ACTIONABLE_STEP_STATUSES]),
                or_(*owner_clauses),
            )
            .distinct()
            .order_by(WorkflowRequestRecord.created_at)
        )
        if status is not None:
            stmt = stmt.where(WorkflowRequestRecord.status == status.value)

        async with self._transaction("list_by_approver") as session:
            records = list(await session.scalars(stmt))
            return await self._load_many(session, records)

    async def list_delegated(self, user_id: str) -> List[WorkflowRequest]:
        stmt = (
            select(WorkflowRequestRecord)
            .join(ApprovalStepRecord, ApprovalStepRecord.request_id == WorkflowRequestRecord.id)
            .where(
                ApprovalStepRecord.status.in_([s.value for s in ACTIONABLE_STEP_STATUSES]),
                ApprovalStepRecord.approver_id == user_id,
                ApprovalStepRecord.delegated_from.is_not(None),
            )
            .distinct()
            .order_by(WorkflowRequestRecord.created_at)
        )
        async with self._transaction("list_delegated") as session:
            records = list(await session.scalars(stmt))
            return await self._load_many(session, records)

    async def list_by_requester(
        self, user_id: str, status: Optional[RequestStatus] = None
    ) -> List[WorkflowRequest]:
        stmt = (
            select(WorkflowRequestRecord)
            .where(WorkflowRequestRecord.requester_id == user_id)
            .order_by(WorkflowRequestRecord.created_at)
        )
        if status is not None:
            stmt = stmt.where(WorkflowRequestRecord.status == status.value)

        async with self._transaction("list_by_requester") as session:
            records = list(await session.scalars(stmt))
            return await self._load_many(session, records)

    async def append_timeline(self, entry: TimelineEntry) -> TimelineEntry:
        async with self._transaction("append_timeline") as session:
            if await session.get(WorkflowRequestRecord, entry.request_id) is None:
                raise RequestNotFound(entry.request_id)
            record = self._timeline_record(entry)
            session.add(record)
            await session.flush()
            sequence = record.sequence
        return entry.model_copy(update={"sequence": sequence})

    async def list_timeline(self, request_id: str, limit: Optional[int] = None) -> List[TimelineEntry]:
        async with self._transaction("list_timeline") as session:
            if await session.get(WorkflowRequestRecord, request_id) is None:
                raise RequestNotFound(request_id)

            stmt = (
                select(TimelineEntryRecord)
                .where(TimelineEntryRecord.request_id == request_id)
                .order_by(TimelineEntryRecord.created_at.desc(), TimelineEntryRecord.sequence.desc())
            )
            if limit is not None:
                stmt = stmt.limit(max(limit, 0))
            records = list(await session.scalars(stmt))

        return [self._to_entry(record) for record in reversed(records)]

    async def find_stalled_steps(self, now: datetime) -> List[StalledStep]:
        stmt = select(ApprovalStepRecord).where(
            ApprovalStepRecord.status == StepStatus.PENDING.value,
            ApprovalStepRecord.timeout_hours.is_not(None),
            ApprovalStepRecord.became_pending_at.is_not(None),
        )
        async with self._transaction("find_stalled_steps") as session:
            records = list(await session.scalars(stmt))

        # Interval arithmetic differs per backend; the comparison runs here
        return [
            StalledStep(record.request_id, record.id)
            for record in records
            if self._to_step(record).is_overdue(now)
        ]

    async def save_delegate_setting(self, setting: DelegateSetting) -> DelegateSetting:
        async with self._transaction("save_delegate_setting") as session:
            record = await session.get(DelegateSettingRecord, setting.user_id)
            if record is None:
                record = DelegateSettingRecord(user_id=setting.user_id)
                session.add(record)
            record.delegate_id = setting.delegate_id
            record.delegate_name = setting.delegate_name
            record.start_at = setting.start_at
            record.end_at = setting.end_at
            record.reason = setting.reason
            record.active = setting.active
            record.created_at = setting.created_at
        return setting.model_copy(deep=True)

    async def get_delegate_setting(self, user_id: str) -> Optional[DelegateSetting]:
        async with self._transaction("get_delegate_setting") as session:
            record = await session.get(DelegateSettingRecord, user_id)
            return self._to_delegate(record) if record is not None else None

    async def remove_delegate_setting(self, user_id: str) -> bool:
        async with self._transaction("remove_delegate_setting") as session:
            record = await session.get(DelegateSettingRecord, user_id)
            if record is None:
                return False
            await session.delete(record)
        return True

    async def list_delegators(self, delegate_id: str) -> List[DelegateSetting]:
        stmt = select(DelegateSettingRecord).where(DelegateSettingRecord.delegate_id == delegate_id)
        async with self._transaction("list_delegators") as session:
            records = list(await session.scalars(stmt))
        return [self._to_delegate(record) for record in records]
