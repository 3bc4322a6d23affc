# ==== ESCALATION SCHEDULER ==== #

"""
Timeout-driven escalation of stalled approval steps.

A sweep asks the request store for pending steps whose timeout elapsed and
feeds each one through ``WorkflowEngine.escalate_step``, which re-checks the
timeout against fresh state before reassigning the step. Escalated steps
are no longer pending, so repeated or late sweeps are harmless.

Overlapping sweeps are prevented by a run-lock: always an in-process
``asyncio.Lock`` and, when Redis is configured, a distributed lock taken
with ``SET NX EX`` so that only one replica sweeps at a time.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

import redis.asyncio as redis

from approvals.errors import WorkflowError
from approvals.observability.logging import get_logger, log_business_event
from approvals.observability.metrics import (
    escalation_sweep_duration_seconds,
    escalation_sweeps_total,
    escalations_total,
)
from approvals.observability.tracing import get_tracer
from approvals.schemas.workflow import ApprovalStep, utcnow
from approvals.services.directory import ApproverDirectory
from approvals.settings import Settings, get_settings

if TYPE_CHECKING:
    from approvals.services.workflow_engine import WorkflowEngine


logger = get_logger(__name__)
tracer = get_tracer(__name__)


# ==== ESCALATION TARGETS ==== #


@dataclass(frozen=True)
class EscalationTarget:
    user_id: str
    role: str
    display_name: Optional[str] = None


class EscalationPolicy:
    """
    Picks who receives an overdue step.

    The step moves one level up the role hierarchy (manager -> hr -> admin
    by default). Steps at the top of the chain, or whose role is not part
    of it, go to the fallback role. The current approver and the requester
    are never chosen.

    Args:
        directory: Approver directory
        hierarchy: Roles from lowest to highest
        fallback_role: Role used past the top of the hierarchy
    """

    def __init__(
        self,
        directory: ApproverDirectory,
        hierarchy: Sequence[str] = ("manager", "hr", "admin"),
        fallback_role: str = "admin",
    ):
        self.directory = directory
        self.hierarchy = list(hierarchy)
        self.fallback_role = fallback_role

    @classmethod
    def from_settings(cls, directory: ApproverDirectory, settings: Settings | None = None) -> "EscalationPolicy":
        settings = settings or get_settings()
        return cls(
            directory,
            hierarchy=settings.ESCALATION_ROLE_HIERARCHY,
            fallback_role=settings.ESCALATION_FALLBACK_ROLE,
        )

    def _current_level(self, step: ApprovalStep) -> Optional[int]:
        if step.approver_role in self.hierarchy:
            return self.hierarchy.index(step.approver_role)
        if step.approver_id:
            held = self.directory.roles_for(step.approver_id)
            levels = [index for index, role in enumerate(self.hierarchy) if role in held]
            if levels:
                return max(levels)
        return None

    def next_role(self, step: ApprovalStep) -> str:
        level = self._current_level(step)
        if level is None or level + 1 >= len(self.hierarchy):
            return self.fallback_role
        return self.hierarchy[level + 1]

    def target_for(self, step: ApprovalStep, requester_id: str) -> Optional[EscalationTarget]:
        """First eligible holder of the next role, then of the fallback role."""
        excluded = {step.approver_id, requester_id}

        for role in dict.fromkeys([self.next_role(step), self.fallback_role]):
            for user in self.directory.users_with_role(role):
                if user.user_id not in excluded:
                    return EscalationTarget(user.user_id, role, user.display_name)
        return None


# ==== RUN LOCKS ==== #

# Delete the key only while it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RunLock(ABC):
    """Non-blocking mutual exclusion for sweeps."""

    @abstractmethod
    async def acquire(self) -> bool:
        """Take the lock; False when another sweep holds it."""

    @abstractmethod
    async def release(self) -> None:
        """Give the lock back."""


class LocalRunLock(RunLock):
    """In-process lock."""

    def __init__(self):
        self._lock = asyncio.Lock()

    async def acquire(self) -> bool:
        if self._lock.locked():
            return False
        await self._lock.acquire()
        return True

    async def release(self) -> None:
        if self._lock.locked():
            self._lock.release()


class RedisRunLock(RunLock):
    """
    Distributed lock shared by every replica.

    The lock expires after ``ttl_seconds`` so a crashed sweeper never
    blocks the others for longer than that. Release only deletes the key
    while it still holds this instance's token.

    Args:
        redis_url: Redis connection URL (ignored when ``client`` is given)
        key: Lock key
        ttl_seconds: Lock expiry
        client: Optional preconfigured client
    """

    def __init__(
        self,
        redis_url: str | None = None,
        key: str = "lock:approvals:escalation-sweep",
        ttl_seconds: int = 240,
        client: redis.Redis | None = None,
    ):
        self.redis_url = redis_url
        self.key = key
        self.ttl_seconds = ttl_seconds
        self._redis: Optional[redis.Redis] = client
        self._token: Optional[str] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            # --► SSL CONFIGURATION FOR REDIS CLOUD
            ssl_config = {}
            if self.redis_url.startswith('rediss://'):
                ssl_config = {
                    'ssl_cert_reqs': None,
                    'ssl_check_hostname': False,
                    'ssl_ca_certs': None
                }

            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                **ssl_config
            )
        return self._redis

    async def acquire(self) -> bool:
        with tracer.start_as_current_span("escalation_lock_acquire") as span:
            redis_client = await self._get_redis()
            token = str(uuid.uuid4())
            result = await redis_client.set(self.key, token, nx=True, ex=self.ttl_seconds)

            acquired = result is True
            span.set_attribute("lock_acquired", acquired)
            if acquired:
                self._token = token
            return acquired

    async def release(self) -> None:
        if self._token is None:
            return
        redis_client = await self._get_redis()
        released = await redis_client.eval(_RELEASE_SCRIPT, 1, self.key, self._token)
        if not released:
            logger.warning("Sweep lock expired before release", key=self.key)
        self._token = None

    async def aclose(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# ==== SCHEDULER ==== #


@dataclass
class SweepResult:
    ran: bool
    scanned: int = 0
    escalated: List[str] = field(default_factory=list)


class EscalationScheduler:
    """
    Periodic escalation sweeper.

    Args:
        engine: Workflow engine that performs the escalations
        distributed_lock: Optional cross-replica lock
        interval_seconds: Pause between sweeps
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        engine: "WorkflowEngine",
        distributed_lock: RunLock | None = None,
        interval_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.distributed_lock = distributed_lock
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._local_lock = LocalRunLock()
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @classmethod
    def from_settings(cls, engine: "WorkflowEngine", settings: Settings | None = None) -> "EscalationScheduler":
        settings = settings or get_settings()
        distributed_lock = None
        if settings.REDIS_URL:
            distributed_lock = RedisRunLock(
                settings.REDIS_URL,
                key=settings.ESCALATION_LOCK_KEY,
                ttl_seconds=settings.ESCALATION_LOCK_TTL_SECONDS,
            )
        return cls(
            engine,
            distributed_lock=distributed_lock,
            interval_seconds=settings.ESCALATION_SWEEP_INTERVAL_SECONDS,
            clock=engine.clock,
        )

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Escalate every overdue pending step once.

        Returns:
            SweepResult: ``ran`` is False when another sweep held the lock
        """
        if not await self._local_lock.acquire():
            escalation_sweeps_total.labels(outcome="skipped_locked").inc()
            logger.info("Escalation sweep skipped, previous sweep still running")
            return SweepResult(ran=False)

        try:
            if self.distributed_lock is not None and not await self.distributed_lock.acquire():
                escalation_sweeps_total.labels(outcome="skipped_locked").inc()
                logger.info("Escalation sweep skipped, another replica holds the lock")
                return SweepResult(ran=False)

            try:
                return await self._sweep(now or self._clock())
            finally:
                if self.distributed_lock is not None:
                    await self.distributed_lock.release()
        finally:
            await self._local_lock.release()

    async def _sweep(self, now: datetime) -> SweepResult:
        start_time = time.perf_counter()
        result = SweepResult(ran=True)

        with tracer.start_as_current_span("escalation_sweep") as span:
            try:
                stalled = await self.engine.store.find_stalled_steps(now)
                result.scanned = len(stalled)

                for request_id, step_id in stalled:
                    try:
                        updated = await self.engine.escalate_step(request_id, step_id, now=now)
                    except WorkflowError as exc:
                        logger.warning(
                            "Escalation failed for step",
                            request_id=request_id,
                            step_id=step_id,
                            error=exc.message,
                        )
                        continue
                    if updated is None:
                        continue
                    step = updated.get_step(step_id)
                    escalations_total.labels(target_role=step.approver_role or "unknown").inc()
                    result.escalated.append(step_id)
                    log_business_event(
                        "step_escalated",
                        updated.tenant_id,
                        request_id=request_id,
                        step_id=step_id,
                        to_approver_id=step.approver_id,
                        to_approver_role=step.approver_role,
                    )
            except Exception:
                escalation_sweeps_total.labels(outcome="failed").inc()
                raise
            finally:
                escalation_sweep_duration_seconds.observe(time.perf_counter() - start_time)

            span.set_attribute("scanned", result.scanned)
            span.set_attribute("escalated", len(result.escalated))

        escalation_sweeps_total.labels(outcome="completed").inc()
        logger.info(
            "Escalation sweep completed",
            scanned=result.scanned,
            escalated=len(result.escalated),
        )
        return result

    # --► BACKGROUND LOOP

    async def _run_forever(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.sweep()
            except Exception as exc:
                logger.exception("Escalation sweep failed", error=str(exc))

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run_forever(), name="escalation-sweeper")
        logger.info("Escalation sweeper started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=5)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
        if isinstance(self.distributed_lock, RedisRunLock):
            await self.distributed_lock.aclose()
        logger.info("Escalation sweeper stopped")
