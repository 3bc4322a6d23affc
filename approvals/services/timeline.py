# ==== TIMELINE RECORDER ==== #

"""
Timeline queries and deterministic replay for workflow requests.

Timeline entries are written by the request store together with the state
change they describe. This module reads them back for list views and
audits, records notification failures, and replays a timeline through the
pure state machine to reconstruct a request's final state.
"""

import uuid
from datetime import datetime
from typing import List, Optional, Sequence

from approvals.errors import ValidationError
from approvals.schemas.workflow import (
    NotificationEvent,
    RequestStatus,
    TimelineAction,
    TimelineEntry,
    WorkflowRequest,
    utcnow,
)
from approvals.services import state_machine
from approvals.storage.request_store import RequestStore


class TimelineRecorder:
    """Read side of the timeline plus out-of-band audit entries."""

    def __init__(self, store: RequestStore):
        self.store = store

    async def latest(self, request_id: str, n: int = 5) -> List[TimelineEntry]:
        """Newest ``n`` entries in chronological order, for list views."""
        return await self.store.list_timeline(request_id, limit=n)

    async def history(self, request_id: str) -> List[TimelineEntry]:
        """Full timeline for audit views."""
        return await self.store.list_timeline(request_id)

    async def record_notification_failure(
        self, event: NotificationEvent, error: str, now: Optional[datetime] = None
    ) -> TimelineEntry:
        entry = TimelineEntry(
            id=str(uuid.uuid4()),
            request_id=event.request_id,
            action=TimelineAction.NOTIFICATION_FAILED,
            actor_id=state_machine.SYSTEM_ACTOR,
            details={
                "kind": event.kind,
                "to_user_id": event.to_user_id,
                "to_role": event.to_role,
                "error": error,
            },
            created_at=now or utcnow(),
        )
        return await self.store.append_timeline(entry)


# ==== REPLAY ==== #


def _reapply(request: WorkflowRequest, entry: TimelineEntry) -> Optional[WorkflowRequest]:
    details = entry.details
    actor, name, now = entry.actor_id, entry.actor_name, entry.created_at
    action = entry.action

    if action == TimelineAction.SUBMITTED:
        transition = state_machine.apply_submit(request, actor, name, now)
    elif action == TimelineAction.APPROVED:
        transition = state_machine.apply_approve(
            request, details["step_id"], actor, name, details.get("comment"), now
        )
    elif action == TimelineAction.REJECTED:
        transition = state_machine.apply_reject(
            request, details["step_id"], actor, name, details.get("comment"), now
        )
    elif action == TimelineAction.RETURNED:
        transition = state_machine.apply_return(
            request, details["step_id"], actor, name, details.get("comment"), now,
            policy=details.get("policy", "reset"),
        )
    elif action == TimelineAction.RESUBMITTED:
        transition = state_machine.apply_resubmit(request, actor, name, details.get("comment"), now)
    elif action == TimelineAction.CANCELLED:
        transition = state_machine.apply_cancel(request, actor, name, details.get("reason"), now)
    elif action == TimelineAction.COMPLETED:
        transition = state_machine.apply_complete(request, actor, name, now)
    elif action == TimelineAction.ESCALATED:
        transition = state_machine.apply_escalate(
            request, details["step_id"], details["to_approver_id"],
            details.get("to_approver_role"), details.get("to_approver_name"), now,
        )
    elif action == TimelineAction.DELEGATED:
        transition = state_machine.apply_delegate(
            request, details["step_id"], actor, name, details["to_approver_id"],
            details.get("to_approver_name"), details.get("reason"), now,
        )
    else:
        # Audit-only entries do not change state
        return None

    return transition.request


def replay(entries: Sequence[TimelineEntry]) -> WorkflowRequest:
    """
    Rebuild a request from its timeline.

    Args:
        entries: Every entry of one request, in any order

    Returns:
        WorkflowRequest: State after re-applying each entry in order

    Raises:
        ValidationError: Timeline does not start with a ``created`` snapshot
    """
    ordered = sorted(entries, key=lambda entry: (entry.created_at, entry.sequence))
    if not ordered or ordered[0].action != TimelineAction.CREATED:
        raise ValidationError("Timeline must start with a created entry")

    request = WorkflowRequest.model_validate(ordered[0].details["request"])
    for entry in ordered[1:]:
        replayed = _reapply(request, entry)
        if replayed is not None:
            request = replayed
    return request


def replay_status(entries: Sequence[TimelineEntry]) -> RequestStatus:
    """Final status reconstructed from the timeline alone."""
    return replay(entries).status
