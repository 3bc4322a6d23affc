# ==== WORKFLOW ENGINE SERVICE ==== #

"""
Workflow engine orchestrating approval requests end to end.

The engine is the single entry point for every state change: submissions,
approver actions, requester actions and scheduler-driven escalations. Each
operation loads the request, computes a ``Transition`` with the pure state
machine and commits it through the store's compare-and-swap. A lost race
reloads the request and recomputes the transition from fresh state, with a
bounded number of attempts. Notifications go out only after a commit and
can never undo it.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar, Union

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from approvals.errors import (
    InvalidStepState,
    PermissionDenied,
    PersistenceError,
    ValidationError,
    VersionConflict,
    WorkflowError,
)
from approvals.observability.logging import audit_log, get_logger, log_business_event
from approvals.observability.metrics import (
    notification_failures_total,
    workflow_rejected_actions_total,
    workflow_transitions_total,
    workflow_version_conflicts_total,
)
from approvals.observability.tracing import get_tracer
from approvals.resilience.retry_policies import create_cas_retry_policy
from approvals.schemas.workflow import (
    BulkActionResult,
    DelegateSetting,
    NotificationEvent,
    Priority,
    RequestPayload,
    RequestStatistics,
    RequestStatus,
    RequestType,
    StepAction,
    StepSpec,
    TimelineEntry,
    Transition,
    WorkflowRequest,
    utcnow,
)
from approvals.services import state_machine
from approvals.services.directory import ApproverDirectory
from approvals.services.escalation import EscalationPolicy
from approvals.services.notifications import LoggingNotifier, Notifier
from approvals.services.step_resolver import StepResolver
from approvals.services.timeline import TimelineRecorder
from approvals.settings import Settings, get_settings
from approvals.storage.request_store import RequestStore


# ==== MODULE INITIALIZATION ==== #


logger = get_logger(__name__)
tracer = get_tracer(__name__)

T = TypeVar("T")
_PAYLOAD_ADAPTER = TypeAdapter(RequestPayload)


def _coerce(enum_cls, value: Any, label: str):
    """Convert a raw value into a closed enum or fail with ValidationError."""
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Unknown {label} '{value}' (allowed: {allowed})") from exc


# ==== WORKFLOW ENGINE CLASS ==== #


class WorkflowEngine:
    """
    Approval workflow state machine with optimistic concurrency.

    The engine owns its collaborators; nothing is read from module-level
    state, so several engines (e.g. one per test) can coexist.

    Args:
        store: Request store
        directory: Approver directory
        notifier: Notification emitter (defaults to logging only)
        resolver: Step resolver (defaults to one built on ``directory``)
        escalation_policy: Escalation target policy
        settings: Settings for timeouts, policies and thresholds
        clock: Returns the current timezone-aware UTC time
    """

    def __init__(
        self,
        store: RequestStore,
        directory: ApproverDirectory,
        notifier: Notifier | None = None,
        resolver: StepResolver | None = None,
        escalation_policy: EscalationPolicy | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.directory = directory
        self.settings = settings or get_settings()
        self.notifier = notifier or LoggingNotifier()
        self.resolver = resolver or StepResolver(directory, self.settings)
        self.escalation_policy = escalation_policy or EscalationPolicy.from_settings(
            directory, self.settings
        )
        self.timeline = TimelineRecorder(store)
        self.clock = clock
        self._cas_policy = create_cas_retry_policy(self.settings.CAS_MAX_ATTEMPTS)


    # ==== SUBMISSION ==== #

    async def submit_request(
        self,
        type: Union[RequestType, str],
        requester_id: str,
        payload: Union[Mapping[str, Any], BaseModel],
        steps: Optional[Sequence[Union[StepSpec, Mapping[str, Any]]]] = None,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        tenant_id: str = "default",
        priority: Union[Priority, str] = Priority.NORMAL,
        due_date=None,
        requester_name: Optional[str] = None,
        draft: bool = False,
    ) -> WorkflowRequest:
        """
        Create a request with its fully resolved step graph.

        The request is submitted right away unless ``draft`` is set, in
        which case it stays in ``draft`` until ``submit_draft``.

        Args:
            type: Request type
            requester_id: Submitting user
            payload: Type-specific payload (validated against ``type``)
            steps: Ordered approval steps; empty or None uses the default chain
            title: Display title (defaults to the request type)
            description: Free text
            tenant_id: Tenant identifier
            priority: Priority, drives default step timeouts
            due_date: Optional due date
            requester_name: Display name (defaults to the directory's)
            draft: Keep the request as a draft

        Returns:
            WorkflowRequest: Persisted request

        Raises:
            ValidationError: Bad enum value, payload or step graph
            PersistenceError: Store failed or timed out
        """
        with tracer.start_as_current_span("workflow_submit") as span:
            request_type = _coerce(RequestType, type, "request type")
            request_priority = _coerce(Priority, priority, "priority")
            parsed_payload = self._parse_payload(request_type, payload)
            step_specs = self._parse_steps(steps or [])

            request_id = str(uuid.uuid4())
            span.set_attribute("request_id", request_id)
            span.set_attribute("request_type", request_type.value)

            chain = self.resolver.resolve(
                request_id, request_type, requester_id, parsed_payload, step_specs, request_priority
            )

            now = self.clock()
            requester_name = requester_name or self.directory.display_name(requester_id)
            request = WorkflowRequest(
                id=request_id,
                tenant_id=tenant_id,
                requester_id=requester_id,
                requester_name=requester_name,
                type=request_type,
                title=title or f"{request_type.value.replace('_', ' ').capitalize()} request",
                description=description,
                payload=parsed_payload,
                priority=request_priority,
                due_date=due_date,
                applied_rules=chain.applied_rules,
                steps=chain.steps,
                created_at=now,
                updated_at=now,
            )

            transition = state_machine.open_request(
                request, requester_id, requester_name, now, submit=not draft
            )
            created = await self._persist(
                self.store.create_request(transition.request, transition.entries)
            )
            span.set_attribute("status", created.status.value)

        self._record_commit("submit", created, applied_rules=created.applied_rules)
        await self._dispatch(transition.notifications)
        return created

    async def submit_draft(self, request_id: str, actor_id: str) -> WorkflowRequest:
        """Submit a draft (draft -> pending); requester or admin only."""
        roles = self.directory.roles_for(actor_id)
        name = self.directory.display_name(actor_id)

        def build(request: WorkflowRequest) -> Transition:
            state_machine.authorize_owner_or_admin(
                request, actor_id, roles, self.settings.ADMIN_ROLES, "submit"
            )
            return state_machine.apply_submit(request, actor_id, name, self.clock())

        return await self._commit(request_id, "submit_draft", build)


    # ==== APPROVER ACTIONS ==== #

    async def act_on_step(
        self,
        request_id: str,
        step_id: str,
        actor_id: str,
        action: Union[StepAction, str],
        comment: Optional[str] = None,
    ) -> WorkflowRequest:
        """
        Approve, reject or return one step.

        The actor may be the step's approver, a holder of its role (role
        pools) or the approver's active standing proxy.

        Raises:
            ValidationError: Unknown action or step, or a reject without a
                comment while comments are required
            PermissionDenied: Actor does not own the step
            InvalidStepState: Step or request no longer accepts the action;
                ``duplicate`` is set when the same action was already applied
            VersionConflict: Lost the race on every attempt
        """
        step_action = _coerce(StepAction, action, "action")
        roles = self.directory.roles_for(actor_id)
        name = self.directory.display_name(actor_id)
        delegators = await self._active_delegators(actor_id)

        def build(request: WorkflowRequest) -> Transition:
            state_machine.authorize_step_actor(request, step_id, actor_id, roles, delegators)
            return state_machine.apply_step_action(
                request, step_id, step_action, actor_id, name, comment,
                self.clock(), self.settings.RETURN_POLICY,
                self.settings.REQUIRE_COMMENT_ON_REJECT,
            )

        return await self._commit(request_id, step_action.value, build)

    async def delegate_step(
        self,
        request_id: str,
        step_id: str,
        actor_id: str,
        delegate_to_id: str,
        delegate_to_name: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> WorkflowRequest:
        """Hand an actionable step to another approver; approver or admin only."""
        roles = self.directory.roles_for(actor_id)
        name = self.directory.display_name(actor_id)
        delegate_name = delegate_to_name or self.directory.display_name(delegate_to_id)
        is_admin = bool(set(roles) & set(self.settings.ADMIN_ROLES))
        delegators = await self._active_delegators(actor_id)

        def build(request: WorkflowRequest) -> Transition:
            if not is_admin:
                state_machine.authorize_step_actor(request, step_id, actor_id, roles, delegators)
            return state_machine.apply_delegate(
                request, step_id, actor_id, name, delegate_to_id, delegate_name, reason, self.clock()
            )

        return await self._commit(request_id, "delegate", build)

    async def bulk_act(
        self,
        request_ids: Iterable[str],
        actor_id: str,
        action: Union[StepAction, str],
        comment: Optional[str] = None,
    ) -> BulkActionResult:
        """
        Approve or reject the actor's actionable step on many requests.

        Per-request failures are collected in the result, never raised.
        """
        step_action = _coerce(StepAction, action, "action")
        if step_action == StepAction.RETURN:
            raise ValidationError("Bulk actions support approve and reject only")
        if (
            step_action == StepAction.REJECT
            and self.settings.REQUIRE_COMMENT_ON_REJECT
            and not (comment or "").strip()
        ):
            raise ValidationError("A comment is required to reject")

        roles = self.directory.roles_for(actor_id)
        delegators = await self._active_delegators(actor_id)
        result = BulkActionResult()

        for request_id in dict.fromkeys(request_ids):
            try:
                request = await self._persist(self.store.get_request(request_id))
                step = next(
                    (
                        step for step in request.steps
                        if step.is_actionable
                        and state_machine.can_act_on(step, actor_id, roles, delegators)
                    ),
                    None,
                )
                if step is None:
                    result.failed[request_id] = f"No actionable step for {actor_id}"
                    continue
                await self.act_on_step(request_id, step.id, actor_id, step_action, comment)
                result.succeeded.append(request_id)
            except WorkflowError as exc:
                result.failed[request_id] = exc.message

        logger.info(
            "Bulk action finished",
            action=step_action.value,
            actor_id=actor_id,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        return result


    # ==== REQUESTER ACTIONS ==== #

    async def cancel_request(
        self, request_id: str, actor_id: str, reason: Optional[str] = None
    ) -> WorkflowRequest:
        """Cancel an open request; requester or admin only."""
        roles = self.directory.roles_for(actor_id)
        name = self.directory.display_name(actor_id)

        def build(request: WorkflowRequest) -> Transition:
            state_machine.authorize_owner_or_admin(
                request, actor_id, roles, self.settings.ADMIN_ROLES, "cancel"
            )
            return state_machine.apply_cancel(request, actor_id, name, reason, self.clock())

        return await self._commit(request_id, "cancel", build)

    async def resubmit_request(
        self, request_id: str, actor_id: str, comment: Optional[str] = None
    ) -> WorkflowRequest:
        """Resubmit a returned request (returned -> pending); requester only."""
        name = self.directory.display_name(actor_id)

        def build(request: WorkflowRequest) -> Transition:
            state_machine.authorize_owner_or_admin(request, actor_id, (), (), "resubmit")
            return state_machine.apply_resubmit(request, actor_id, name, comment, self.clock())

        return await self._commit(request_id, "resubmit", build)

    async def complete_request(self, request_id: str, actor_id: str) -> WorkflowRequest:
        """Close an approved request (approved -> completed); requester or admin only."""
        roles = self.directory.roles_for(actor_id)
        name = self.directory.display_name(actor_id)

        def build(request: WorkflowRequest) -> Transition:
            state_machine.authorize_owner_or_admin(
                request, actor_id, roles, self.settings.ADMIN_ROLES, "complete"
            )
            return state_machine.apply_complete(request, actor_id, name, self.clock())

        return await self._commit(request_id, "complete", build)


    # ==== SYSTEM ACTIONS ==== #

    async def escalate_step(
        self, request_id: str, step_id: str, now: Optional[datetime] = None
    ) -> Optional[WorkflowRequest]:
        """
        Escalate a pending step whose timeout elapsed.

        Re-checks the timeout against freshly loaded state, so a step that
        was acted on, already escalated or is not yet due is left alone.

        Returns:
            Optional[WorkflowRequest]: Updated request, or None for a no-op
        """
        def build(request: WorkflowRequest) -> Transition:
            at = now or self.clock()
            step = state_machine.find_step(request, step_id)
            if not step.is_overdue(at):
                raise InvalidStepState(f"Step {step_id} is not overdue", request=request)

            target = self.escalation_policy.target_for(step, request.requester_id)
            if target is None:
                raise InvalidStepState(f"No escalation target for step {step_id}", request=request)

            return state_machine.apply_escalate(
                request, step_id, target.user_id, target.role, target.display_name, at
            )

        try:
            return await self._commit(request_id, "escalate", build)
        except InvalidStepState as exc:
            logger.info(
                "Escalation skipped",
                request_id=request_id,
                step_id=step_id,
                reason=exc.message,
            )
            return None


    # ==== STANDING PROXY APPROVERS ==== #

    async def set_delegate_approver(
        self,
        user_id: str,
        delegate_to_id: str,
        start_at: datetime,
        end_at: datetime,
        actor_id: Optional[str] = None,
        delegate_name: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> DelegateSetting:
        """
        Let ``delegate_to_id`` act on ``user_id``'s steps between two instants.

        Replaces any earlier setting of ``user_id``. Only the user or an
        administrator may change it.

        Raises:
            PermissionDenied: Actor is neither ``user_id`` nor an admin
            ValidationError: Self-delegation or an empty window
        """
        self._authorize_delegate_change(user_id, actor_id or user_id)
        if delegate_to_id == user_id:
            raise ValidationError("A user cannot be their own proxy approver")

        setting = DelegateSetting(
            user_id=user_id,
            delegate_id=delegate_to_id,
            delegate_name=delegate_name or self.directory.display_name(delegate_to_id),
            start_at=start_at,
            end_at=end_at,
            reason=reason,
            created_at=self.clock(),
        )
        if setting.end_at <= setting.start_at:
            raise ValidationError("Proxy window must end after it starts")

        saved = await self._persist(self.store.save_delegate_setting(setting))
        logger.info(
            "Proxy approver configured",
            user_id=user_id,
            delegate_id=delegate_to_id,
            start_at=saved.start_at.isoformat(),
            end_at=saved.end_at.isoformat(),
            actor_id=actor_id or user_id,
        )
        return saved

    async def remove_delegate_approver(self, user_id: str, actor_id: Optional[str] = None) -> bool:
        """Drop ``user_id``'s proxy setting; False when none was configured."""
        self._authorize_delegate_change(user_id, actor_id or user_id)
        removed = await self._persist(self.store.remove_delegate_setting(user_id))
        if removed:
            logger.info("Proxy approver removed", user_id=user_id, actor_id=actor_id or user_id)
        return removed

    async def active_delegate_for(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[DelegateSetting]:
        """The proxy setting of ``user_id`` when it is in force at ``now``."""
        setting = await self._persist(self.store.get_delegate_setting(user_id))
        if setting is not None and setting.is_active_at(now or self.clock()):
            return setting
        return None

    async def _active_delegators(self, delegate_id: str) -> List[str]:
        now = self.clock()
        settings = await self._persist(self.store.list_delegators(delegate_id))
        return [setting.user_id for setting in settings if setting.is_active_at(now)]

    def _authorize_delegate_change(self, user_id: str, actor_id: str) -> None:
        if actor_id == user_id:
            return
        if set(self.directory.roles_for(actor_id)) & set(self.settings.ADMIN_ROLES):
            return
        raise PermissionDenied(
            f"Only {user_id} or an administrator may change their proxy approver",
            user_id=user_id,
        )

    # ==== QUERIES ==== #

    async def get_request(self, request_id: str) -> WorkflowRequest:
        return await self._persist(self.store.get_request(request_id))

    async def list_by_approver(
        self, user_id: str, status: Union[RequestStatus, str, None] = None
    ) -> List[WorkflowRequest]:
        """Requests where ``user_id`` owns an actionable step, directly, via a role or as proxy."""
        request_status = _coerce(RequestStatus, status, "status") if status is not None else None
        roles = self.directory.roles_for(user_id)
        delegators = await self._active_delegators(user_id)
        return await self._persist(
            self.store.list_by_approver(user_id, request_status, roles, delegators)
        )

    async def list_delegated(self, user_id: str) -> List[WorkflowRequest]:
        """Requests with an actionable step that was delegated to ``user_id``."""
        return await self._persist(self.store.list_delegated(user_id))

    async def list_by_requester(
        self, user_id: str, status: Union[RequestStatus, str, None] = None
    ) -> List[WorkflowRequest]:
        request_status = _coerce(RequestStatus, status, "status") if status is not None else None
        return await self._persist(self.store.list_by_requester(user_id, request_status))

    async def get_timeline(self, request_id: str, limit: Optional[int] = None) -> List[TimelineEntry]:
        if limit is not None:
            return await self._persist(self.timeline.latest(request_id, limit))
        return await self._persist(self.timeline.history(request_id))

    async def statistics(self, requester_id: str) -> RequestStatistics:
        """Counts per outcome and the average days from submission to approval."""
        requests = await self.list_by_requester(requester_id)

        approval_days = [
            (request.decided_at - request.submitted_at).total_seconds() / 86400
            for request in requests
            if request.status in (RequestStatus.APPROVED, RequestStatus.COMPLETED)
            and request.decided_at is not None
            and request.submitted_at is not None
        ]

        return RequestStatistics(
            total_requests=len(requests),
            pending_requests=sum(1 for r in requests if r.status in state_machine.ACTIVE_STATUSES),
            approved_requests=sum(
                1 for r in requests if r.status in (RequestStatus.APPROVED, RequestStatus.COMPLETED)
            ),
            rejected_requests=sum(1 for r in requests if r.status == RequestStatus.REJECTED),
            returned_requests=sum(1 for r in requests if r.status == RequestStatus.RETURNED),
            average_approval_days=(
                round(sum(approval_days) / len(approval_days), 1) if approval_days else 0.0
            ),
        )

    @staticmethod
    def progress(request: WorkflowRequest) -> float:
        return state_machine.calculate_progress(request)


    # ==== COMMIT PIPELINE ==== #

    async def _commit(
        self,
        request_id: str,
        operation: str,
        build: Callable[[WorkflowRequest], Transition],
    ) -> WorkflowRequest:
        """
        Load, transform and compare-and-swap until the write wins.

        ``build`` receives a private copy of freshly loaded state on every
        attempt, so decisions such as "all siblings approved" are always
        recomputed against the latest committed version.
        """
        with tracer.start_as_current_span(f"workflow_{operation}") as span:
            span.set_attribute("request_id", request_id)
            try:
                async for attempt in self._cas_policy.async_retrying(operation):
                    with attempt:
                        current = await self._persist(self.store.get_request(request_id))
                        try:
                            transition = build(current.model_copy(deep=True))
                            committed = await self._persist(
                                self.store.compare_and_swap(request_id, current.version, transition)
                            )
                        except InvalidStepState as exc:
                            exc.request = current
                            raise
                        except VersionConflict as exc:
                            workflow_version_conflicts_total.labels(operation=operation).inc()
                            logger.info(
                                "Version conflict, reloading request",
                                request_id=request_id,
                                operation=operation,
                                expected_version=exc.expected_version,
                                actual_version=exc.actual_version,
                            )
                            raise
            except WorkflowError as exc:
                workflow_rejected_actions_total.labels(operation=operation, code=exc.code).inc()
                span.set_attribute("error.code", exc.code)
                raise

            span.set_attribute("status", committed.status.value)
            span.set_attribute("version", committed.version)

        self._record_commit(operation, committed)
        await self._dispatch(transition.notifications)
        return committed

    async def _persist(self, operation: Awaitable[T]) -> T:
        """Bound a store call by the persistence timeout."""
        try:
            return await asyncio.wait_for(operation, timeout=self.settings.PERSISTENCE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as exc:
            raise PersistenceError(
                f"Request store did not answer within {self.settings.PERSISTENCE_TIMEOUT_SECONDS}s"
            ) from exc

    def _record_commit(self, operation: str, request: WorkflowRequest, **context: Any) -> None:
        workflow_transitions_total.labels(operation=operation, status=request.status.value).inc()
        log_business_event(
            f"workflow_{operation}",
            request.tenant_id,
            request_id=request.id,
            request_type=request.type.value,
            status=request.status.value,
            current_step=request.current_step,
            version=request.version,
            **context,
        )

    async def _dispatch(self, events: Sequence[NotificationEvent]) -> None:
        for event in events:
            try:
                await asyncio.wait_for(
                    self.notifier.notify(event),
                    timeout=self.settings.NOTIFICATION_TIMEOUT_SECONDS,
                )
            # Delivery failures never fail a committed transition
            except Exception as exc:
                await self._record_notification_failure(event, exc)

    async def _record_notification_failure(self, event: NotificationEvent, exc: Exception) -> None:
        error = str(exc) or type(exc).__name__
        notification_failures_total.labels(kind=event.kind, error_type=type(exc).__name__).inc()
        audit_log(
            "notification_failed",
            request_id=event.request_id,
            kind=event.kind,
            to_user_id=event.to_user_id,
            to_role=event.to_role,
            error=error,
        )
        try:
            await self._persist(
                self.timeline.record_notification_failure(event, error, self.clock())
            )
        except WorkflowError as audit_exc:
            logger.error(
                "Could not record notification failure on the timeline",
                request_id=event.request_id,
                error=audit_exc.message,
            )

    # ==== INPUT PARSING ==== #

    @staticmethod
    def _parse_payload(request_type: RequestType, payload: Union[Mapping[str, Any], BaseModel]):
        data: Dict[str, Any] = (
            payload.model_dump() if isinstance(payload, BaseModel) else dict(payload or {})
        )
        declared = data.get("type")
        if declared is not None and declared != request_type.value:
            raise ValidationError(
                f"Payload type '{declared}' does not match request type '{request_type.value}'"
            )
        data["type"] = request_type.value
        try:
            return _PAYLOAD_ADAPTER.validate_python(data)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid {request_type.value} payload: {exc.errors(include_url=False)}"
            ) from exc

    @staticmethod
    def _parse_steps(steps: Sequence[Union[StepSpec, Mapping[str, Any]]]) -> List[StepSpec]:
        parsed = []
        for index, step in enumerate(steps):
            if isinstance(step, StepSpec):
                parsed.append(step)
                continue
            try:
                parsed.append(StepSpec.model_validate(step))
            except PydanticValidationError as exc:
                raise ValidationError(
                    f"Invalid step at position {index}: {exc.errors(include_url=False)}"
                ) from exc
        return parsed
