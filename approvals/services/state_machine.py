# ==== WORKFLOW STATE MACHINE ==== #

"""
Pure transition functions for workflow requests.

Every ``apply_*`` function takes a private copy of a request, mutates it
and returns a ``Transition`` bundling the new state with the timeline
entries, notifications and action receipt to commit alongside it. Nothing
here performs I/O, so the engine can recompute a transition from freshly
loaded state after every compare-and-swap conflict and timeline replay can
run the same code offline.

Request status is never set by callers. ``derive_status`` computes it from
the live step states after each step mutation.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from approvals.errors import InvalidStepState, PermissionDenied, ValidationError
from approvals.schemas.workflow import (
    ActionReceipt,
    ApprovalStep,
    NotificationEvent,
    RequestStatus,
    StepAction,
    StepStatus,
    TimelineAction,
    TimelineEntry,
    Transition,
    WorkflowRequest,
)


SYSTEM_ACTOR = "system"

ACTIVE_STATUSES = frozenset({
    RequestStatus.PENDING,
    RequestStatus.IN_REVIEW,
    RequestStatus.PARTIALLY_APPROVED,
    RequestStatus.ESCALATED,
})

CANCELLABLE_STATUSES = frozenset({
    RequestStatus.DRAFT,
    RequestStatus.PENDING,
    RequestStatus.IN_REVIEW,
    RequestStatus.PARTIALLY_APPROVED,
})

TERMINAL_STATUSES = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.COMPLETED,
    RequestStatus.REJECTED,
    RequestStatus.CANCELLED,
})

_FROM_ACTIVE = ACTIVE_STATUSES | {
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
    RequestStatus.RETURNED,
}

ALLOWED_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.DRAFT: frozenset({RequestStatus.PENDING, RequestStatus.CANCELLED}),
    RequestStatus.PENDING: _FROM_ACTIVE | {RequestStatus.CANCELLED},
    RequestStatus.IN_REVIEW: _FROM_ACTIVE | {RequestStatus.CANCELLED},
    RequestStatus.PARTIALLY_APPROVED: _FROM_ACTIVE | {RequestStatus.CANCELLED},
    RequestStatus.ESCALATED: _FROM_ACTIVE,
    RequestStatus.RETURNED: frozenset({RequestStatus.PENDING}),
    RequestStatus.APPROVED: frozenset({RequestStatus.COMPLETED}),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
    RequestStatus.COMPLETED: frozenset(),
}

_ACTION_RESULT = {
    StepAction.APPROVE: StepStatus.APPROVED,
    StepAction.REJECT: StepStatus.REJECTED,
}


# ==== STATUS DERIVATION ==== #


def can_transition(current: RequestStatus, new: RequestStatus) -> bool:
    return new == current or new in ALLOWED_TRANSITIONS[current]


def active_group_order(request: WorkflowRequest) -> Optional[int]:
    """Order value of the lowest group that still has open required steps."""
    open_orders = [step.order for step in request.steps if step.blocks_progress]
    return min(open_orders) if open_orders else None


def derive_status(request: WorkflowRequest) -> RequestStatus:
    """
    Compute the status of an in-flight request from its steps.

    No open required step left means approved. Otherwise the active group decides:
    any escalated member gives ``escalated``, some approved siblings give
    ``partially_approved``, approvals in earlier groups give ``in_review``
    and a fresh group gives ``pending``.
    """
    order = active_group_order(request)
    if order is None:
        return RequestStatus.APPROVED

    group = request.group(order)
    if any(step.status == StepStatus.ESCALATED for step in group):
        return RequestStatus.ESCALATED
    if any(step.status == StepStatus.APPROVED for step in group):
        return RequestStatus.PARTIALLY_APPROVED
    if any(step.status == StepStatus.APPROVED for step in request.steps):
        return RequestStatus.IN_REVIEW
    return RequestStatus.PENDING


def calculate_progress(request: WorkflowRequest) -> float:
    """Percentage of steps that received a decision."""
    if not request.steps:
        return 0.0
    decided = sum(
        1 for step in request.steps
        if step.status in (StepStatus.APPROVED, StepStatus.REJECTED)
    )
    return round(decided / len(request.steps) * 100, 1)


# ==== AUTHORIZATION ==== #


def can_act_on(
    step: ApprovalStep,
    actor_id: str,
    actor_roles: Iterable[str],
    delegators: Iterable[str] = (),
) -> bool:
    """
    Direct assignment wins; role-only steps accept any holder of the role.

    ``delegators`` are users whose standing proxy the actor currently is;
    their directly assigned steps are open to the actor as well.
    """
    if step.approver_id:
        return step.approver_id == actor_id or step.approver_id in set(delegators)
    return step.approver_role is not None and step.approver_role in set(actor_roles)


def authorize_step_actor(
    request: WorkflowRequest,
    step_id: str,
    actor_id: str,
    actor_roles: Iterable[str],
    delegators: Iterable[str] = (),
) -> None:
    step = find_step(request, step_id)
    if not step.is_actionable:
        # State errors take precedence so retries see InvalidStepState
        return
    if actor_id == request.requester_id:
        raise PermissionDenied(
            f"User {actor_id} cannot act on their own request",
            request_id=request.id,
            step_id=step_id,
        )
    if not can_act_on(step, actor_id, actor_roles, delegators):
        raise PermissionDenied(
            f"User {actor_id} is not the approver of step {step_id}",
            request_id=request.id,
            step_id=step_id,
        )


def authorize_owner_or_admin(
    request: WorkflowRequest,
    actor_id: str,
    actor_roles: Iterable[str],
    admin_roles: Iterable[str],
    operation: str,
) -> None:
    if actor_id == request.requester_id:
        return
    if set(actor_roles) & set(admin_roles):
        return
    raise PermissionDenied(
        f"Only the requester or an administrator may {operation} request {request.id}",
        request_id=request.id,
    )


# ==== HELPERS ==== #


def find_step(request: WorkflowRequest, step_id: str) -> ApprovalStep:
    step = request.get_step(step_id)
    if step is None:
        raise ValidationError(
            f"Step {step_id} does not belong to request {request.id}",
            request_id=request.id,
            step_id=step_id,
        )
    return step


def _move(request: WorkflowRequest, new_status: RequestStatus, now: datetime) -> None:
    if not can_transition(request.status, new_status):
        raise InvalidStepState(
            f"Request {request.id} cannot move from {request.status.value} to {new_status.value}",
            request=request,
        )
    request.status = new_status
    request.updated_at = now


def _entry(
    subject: WorkflowRequest,
    action: TimelineAction,
    actor_id: str,
    actor_name: Optional[str],
    now: datetime,
    **details: Any,
) -> TimelineEntry:
    details["status"] = subject.status.value
    details["current_step"] = subject.current_step
    return TimelineEntry(
        id=str(uuid.uuid4()),
        request_id=subject.id,
        action=action,
        actor_id=actor_id,
        actor_name=actor_name,
        details=details,
        created_at=now,
    )


def _notify(request: WorkflowRequest, kind: str, to_user_id: Optional[str] = None,
            to_role: Optional[str] = None, **payload: Any) -> NotificationEvent:
    payload.setdefault("title", request.title)
    payload.setdefault("status", request.status.value)
    return NotificationEvent(
        request_id=request.id,
        to_user_id=to_user_id,
        to_role=to_role,
        kind=kind,
        payload=payload,
    )


def _approval_requests(request: WorkflowRequest, steps: List[ApprovalStep]) -> List[NotificationEvent]:
    return [
        _notify(request, "approval_requested", step.approver_id, step.approver_role, step_id=step.id)
        for step in steps
    ]


def _activate_next_group(request: WorkflowRequest, now: datetime) -> List[ApprovalStep]:
    """
    Move the lowest open group from waiting to pending.

    Optional steps left open in groups the chain moves past are skipped.
    """
    order = active_group_order(request)
    for step in request.steps:
        if step.optional and step.is_open and (order is None or step.order < order):
            step.status = StepStatus.SKIPPED
    if order is None:
        return []

    request.current_step = order
    activated = []
    for step in request.group(order):
        if step.status == StepStatus.WAITING:
            step.status = StepStatus.PENDING
            step.became_pending_at = now
            activated.append(step)
    return activated


def _ensure_actionable(
    request: WorkflowRequest,
    step: ApprovalStep,
    action: Optional[StepAction],
    actor_id: str,
) -> None:
    if request.status in ACTIVE_STATUSES and step.is_actionable:
        return

    duplicate = (
        action in _ACTION_RESULT
        and step.status == _ACTION_RESULT[action]
        and step.acted_by == actor_id
    )
    if duplicate:
        raise InvalidStepState(
            f"Step {step.id} was already {step.status.value} by {actor_id}",
            request=request,
            duplicate=True,
        )
    if request.status not in ACTIVE_STATUSES:
        raise InvalidStepState(
            f"Request {request.id} is {request.status.value}; step actions are closed",
            request=request,
        )
    raise InvalidStepState(
        f"Step {step.id} is {step.status.value}, expected pending or escalated",
        request=request,
    )


def _proxy_details(step: ApprovalStep, actor_id: str) -> Dict[str, Any]:
    if step.approver_id and step.approver_id != actor_id:
        return {"on_behalf_of": step.approver_id}
    return {}


def _receipt(request: WorkflowRequest, step: ApprovalStep, action: str, actor_id: str) -> ActionReceipt:
    return ActionReceipt(
        request_id=request.id,
        step_id=step.id,
        action=action,
        submission_round=request.submission_round,
        actor_id=actor_id,
    )


# ==== CREATION AND SUBMISSION ==== #


def open_request(
    request: WorkflowRequest,
    actor_id: str,
    actor_name: Optional[str],
    now: datetime,
    submit: bool = True,
) -> Transition:
    """
    Materialize a freshly resolved request, optionally submitting it.

    The ``created`` entry snapshots the draft so the timeline can be
    replayed from scratch.
    """
    request.status = RequestStatus.DRAFT
    request.created_at = now
    request.updated_at = now
    for step in request.steps:
        step.status = StepStatus.WAITING

    created = _entry(
        request, TimelineAction.CREATED, actor_id, actor_name, now,
        request=request.model_dump(mode="json"),
    )
    if not submit:
        return Transition(request=request, entries=[created])

    submitted = apply_submit(request, actor_id, actor_name, now)
    return Transition(
        request=submitted.request,
        entries=[created, *submitted.entries],
        notifications=submitted.notifications,
    )


def apply_submit(
    request: WorkflowRequest,
    actor_id: str,
    actor_name: Optional[str],
    now: datetime,
) -> Transition:
    if request.status != RequestStatus.DRAFT:
        raise InvalidStepState(
            f"Request {request.id} is {request.status.value}; only drafts can be submitted",
            request=request,
        )

    _move(request, RequestStatus.PENDING, now)
    request.submitted_at = now
    activated = _activate_next_group(request, now)
    _move(request, derive_status(request), now)

    entry = _entry(
        request, TimelineAction.SUBMITTED, actor_id, actor_name, now,
        approvers=[step.approver_id or step.approver_role for step in activated],
    )
    return Transition(
        request=request,
        entries=[entry],
        notifications=_approval_requests(request, activated),
    )


# ==== APPROVER ACTIONS ==== #


def apply_approve(
    request: WorkflowRequest,
    step_id: str,
    actor_id: str,
    actor_name: Optional[str],
    comment: Optional[str],
    now: datetime,
) -> Transition:
    step = find_step(request, step_id)
    _ensure_actionable(request, step, StepAction.APPROVE, actor_id)

    step.status = StepStatus.APPROVED
    step.action_date = now
    step.acted_by = actor_id
    step.comments = comment
    proxy = _proxy_details(step, actor_id)

    activated: List[ApprovalStep] = []
    if not any(sibling.blocks_progress for sibling in request.group(step.order)):
        activated = _activate_next_group(request, now)

    new_status = derive_status(request)
    _move(request, new_status, now)

    notifications = [_notify(request, "step_approved", request.requester_id, step_id=step.id)]
    if new_status == RequestStatus.APPROVED:
        request.decided_at = now
        notifications.append(_notify(request, "request_approved", request.requester_id))
    notifications.extend(_approval_requests(request, activated))

    entry = _entry(
        request, TimelineAction.APPROVED, actor_id, actor_name, now,
        step_id=step.id, order=step.order, comment=comment, **proxy,
    )
    return Transition(
        request=request,
        entries=[entry],
        notifications=notifications,
        receipt=_receipt(request, step, StepAction.APPROVE.value, actor_id),
    )


def apply_reject(
    request: WorkflowRequest,
    step_id: str,
    actor_id: str,
    actor_name: Optional[str],
    comment: Optional[str],
    now: datetime,
    require_comment: bool = False,
) -> Transition:
    step = find_step(request, step_id)
    _ensure_actionable(request, step, StepAction.REJECT, actor_id)
    if require_comment and not (comment or "").strip():
        raise ValidationError(
            f"A comment is required to reject step {step_id}",
            request_id=request.id,
            step_id=step_id,
        )

    step.status = StepStatus.REJECTED
    step.action_date = now
    step.acted_by = actor_id
    step.comments = comment
    proxy = _proxy_details(step, actor_id)

    skipped = []
    for other in request.steps:
        if other is not step and other.is_open:
            other.status = StepStatus.SKIPPED
            skipped.append(other.id)

    _move(request, RequestStatus.REJECTED, now)
    request.decided_at = now

    entry = _entry(
        request, TimelineAction.REJECTED, actor_id, actor_name, now,
        step_id=step.id, order=step.order, comment=comment, skipped_steps=skipped, **proxy,
    )
    return Transition(
        request=request,
        entries=[entry],
        notifications=[_notify(request, "request_rejected", request.requester_id,
                               step_id=step.id, comment=comment)],
        receipt=_receipt(request, step, StepAction.REJECT.value, actor_id),
    )


def apply_return(
    request: WorkflowRequest,
    step_id: str,
    actor_id: str,
    actor_name: Optional[str],
    comment: Optional[str],
    now: datetime,
    policy: str = "reset",
) -> Transition:
    """
    Send a request back to its requester for correction.

    ``reset`` puts every step back to waiting so the whole chain approves
    again after resubmission. ``resume`` keeps earlier approvals and only
    re-opens the returned group.
    """
    if policy not in ("reset", "resume"):
        raise ValidationError(f"Unknown return policy '{policy}'")

    step = find_step(request, step_id)
    _ensure_actionable(request, step, StepAction.RETURN, actor_id)
    proxy = _proxy_details(step, actor_id)

    if policy == "reset":
        reset_steps = request.steps
        request.current_step = min(s.order for s in request.steps)
    else:
        reset_steps = [s for s in request.group(step.order) if s.is_open]

    for target in reset_steps:
        target.status = StepStatus.WAITING
        target.became_pending_at = None
        target.action_date = None
        target.acted_by = None
        target.comments = None

    _move(request, RequestStatus.RETURNED, now)
    request.return_reason = comment

    entry = _entry(
        request, TimelineAction.RETURNED, actor_id, actor_name, now,
        step_id=step.id, order=step.order, comment=comment, policy=policy, **proxy,
    )
    return Transition(
        request=request,
        entries=[entry],
        notifications=[_notify(request, "request_returned", request.requester_id,
                               step_id=step.id, comment=comment)],
        receipt=_receipt(request, step, StepAction.RETURN.value, actor_id),
    )


def apply_step_action(
    request: WorkflowRequest,
    step_id: str,
    action: StepAction,
    actor_id: str,
    actor_name: Optional[str],
    comment: Optional[str],
    now: datetime,
    return_policy: str = "reset",
    require_reject_comment: bool = False,
) -> Transition:
    if action == StepAction.APPROVE:
        return apply_approve(request, step_id, actor_id, actor_name, comment, now)
    if action == StepAction.REJECT:
        return apply_reject(
            request, step_id, actor_id, actor_name, comment, now, require_reject_comment
        )
    return apply_return(request, step_id, actor_id, actor_name, comment, now, return_policy)


def apply_delegate(
    request: WorkflowRequest,
    step_id: str,
    actor_id: str,
    actor_name: Optional[str],
    delegate_to_id: str,
    delegate_to_name: Optional[str],
    reason: Optional[str],
    now: datetime,
) -> Transition:
    step = find_step(request, step_id)
    _ensure_actionable(request, step, None, actor_id)
    if delegate_to_id == request.requester_id:
        raise ValidationError("A step cannot be delegated to the requester")
    if delegate_to_id == step.approver_id:
        raise ValidationError(f"Step {step_id} is already assigned to {delegate_to_id}")

    previous = step.approver_id or actor_id
    step.delegated_from = previous
    step.approver_id = delegate_to_id
    step.approver_name = delegate_to_name
    request.updated_at = now

    entry = _entry(
        request, TimelineAction.DELEGATED, actor_id, actor_name, now,
        step_id=step.id, from_approver_id=previous, to_approver_id=delegate_to_id,
        to_approver_name=delegate_to_name, reason=reason,
    )
    return Transition(
        request=request,
        entries=[entry],
        notifications=[_notify(request, "step_delegated", delegate_to_id,
                               step_id=step.id, delegated_by=actor_id)],
    )


# ==== REQUESTER ACTIONS ==== #


def apply_resubmit(
    request: WorkflowRequest,
    actor_id: str,
    actor_name: Optional[str],
    comment: Optional[str],
    now: datetime,
) -> Transition:
    if request.status != RequestStatus.RETURNED:
        raise InvalidStepState(
            f"Request {request.id} is {request.status.value}; only returned requests can be resubmitted",
            request=request,
        )

    _move(request, RequestStatus.PENDING, now)
    request.submission_round += 1
    request.return_reason = None
    activated = _activate_next_group(request, now)
    _move(request, derive_status(request), now)

    entry = _entry(
        request, TimelineAction.RESUBMITTED, actor_id, actor_name, now,
        comment=comment, submission_round=request.submission_round,
    )
    return Transition(
        request=request,
        entries=[entry],
        notifications=_approval_requests(request, activated),
    )


def apply_cancel(
    request: WorkflowRequest,
    actor_id: str,
    actor_name: Optional[str],
    reason: Optional[str],
    now: datetime,
) -> Transition:
    if request.status not in CANCELLABLE_STATUSES:
        raise InvalidStepState(
            f"Request {request.id} is {request.status.value} and can no longer be cancelled",
            request=request,
        )

    for step in request.steps:
        if step.is_open:
            step.status = StepStatus.SKIPPED

    _move(request, RequestStatus.CANCELLED, now)
    request.completed_at = now

    entry = _entry(request, TimelineAction.CANCELLED, actor_id, actor_name, now, reason=reason)
    notifications = []
    if actor_id != request.requester_id:
        notifications.append(_notify(request, "request_cancelled", request.requester_id, reason=reason))
    return Transition(request=request, entries=[entry], notifications=notifications)


def apply_complete(
    request: WorkflowRequest,
    actor_id: str,
    actor_name: Optional[str],
    now: datetime,
) -> Transition:
    if request.status != RequestStatus.APPROVED:
        raise InvalidStepState(
            f"Request {request.id} is {request.status.value}; only approved requests can be completed",
            request=request,
        )

    _move(request, RequestStatus.COMPLETED, now)
    request.completed_at = now

    entry = _entry(request, TimelineAction.COMPLETED, actor_id, actor_name, now)
    return Transition(
        request=request,
        entries=[entry],
        notifications=[_notify(request, "request_completed", request.requester_id)],
    )


# ==== SYSTEM ACTIONS ==== #


def apply_escalate(
    request: WorkflowRequest,
    step_id: str,
    to_user_id: str,
    to_role: Optional[str],
    to_name: Optional[str],
    now: datetime,
) -> Transition:
    """Reassign a pending step whose timeout elapsed."""
    step = find_step(request, step_id)
    if request.status not in ACTIVE_STATUSES or step.status != StepStatus.PENDING:
        raise InvalidStepState(
            f"Step {step_id} is {step.status.value}; only pending steps escalate",
            request=request,
        )

    from_id, from_role = step.approver_id, step.approver_role
    step.escalated_from = from_id or from_role
    step.approver_id = to_user_id
    step.approver_role = to_role
    step.approver_name = to_name
    step.status = StepStatus.ESCALATED
    step.escalated_at = now

    _move(request, derive_status(request), now)

    entry = _entry(
        request, TimelineAction.ESCALATED, SYSTEM_ACTOR, None, now,
        step_id=step.id, order=step.order,
        from_approver_id=from_id, from_approver_role=from_role,
        to_approver_id=to_user_id, to_approver_role=to_role, to_approver_name=to_name,
        timeout_hours=step.timeout_hours,
    )
    return Transition(
        request=request,
        entries=[entry],
        notifications=[
            _notify(request, "step_escalated", to_user_id, to_role,
                    step_id=step.id, escalated_from=from_id or from_role),
        ],
    )
