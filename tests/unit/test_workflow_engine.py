"""Unit tests for the workflow engine on the in-memory request store."""

import asyncio
from datetime import timedelta

import pytest
from prometheus_client import REGISTRY

from approvals.errors import (
    InvalidStepState,
    PermissionDenied,
    PersistenceError,
    RequestNotFound,
    ValidationError,
    VersionConflict,
)
from approvals.schemas.workflow import (
    RequestStatus,
    StepStatus,
    TimelineAction,
)
from approvals.services.workflow_engine import WorkflowEngine
from approvals.storage.request_store import InMemoryRequestStore


def _pending(request):
    return [step for step in request.steps if step.status == StepStatus.PENDING]


async def _submit(engine, steps=None, requester="alice", payload=None, **kwargs):
    return await engine.submit_request("leave", requester, payload or {"days": 2}, steps, **kwargs)


# ==== SUBMISSION ==== #


@pytest.mark.unit
class TestSubmission:
    """Request creation, validation and drafts."""

    @pytest.mark.asyncio
    async def test_submit_activates_first_group(self, engine, notifier, three_step_chain, clock):
        request = await _submit(engine, three_step_chain)

        assert request.status == RequestStatus.PENDING
        assert request.current_step == 0
        assert request.version == 1
        assert request.submitted_at == clock()
        assert request.title == "Leave request"
        assert request.requester_name == "Alice Employee"
        assert [s.status for s in request.steps] == [
            StepStatus.PENDING, StepStatus.WAITING, StepStatus.WAITING
        ]
        assert request.steps[0].became_pending_at == clock()
        assert notifier.kinds() == ["approval_requested"]
        assert notifier.events[0].to_user_id == "bob"

    @pytest.mark.asyncio
    async def test_submit_writes_created_and_submitted_entries(self, engine, three_step_chain):
        request = await _submit(engine, three_step_chain)

        entries = await engine.get_timeline(request.id)

        assert [e.action for e in entries] == [TimelineAction.CREATED, TimelineAction.SUBMITTED]
        assert entries[0].details["request"]["status"] == "draft"
        assert entries[1].details["approvers"] == ["bob"]

    @pytest.mark.asyncio
    async def test_submit_sequential_named_approvers(self, engine):
        request = await _submit(engine, [{"approver_id": "bob"}, {"approver_id": "dave"}])

        assert [s.approver_id for s in request.steps] == ["bob", "dave"]
        assert [s.status for s in request.steps] == [StepStatus.PENDING, StepStatus.WAITING]
        assert (await engine.get_request(request.id)).version == 1

        entries = await engine.get_timeline(request.id)
        assert entries[0].details["request"]["id"] == request.id
        assert entries[0].details["status"] == "draft"
        assert entries[1].details["status"] == "pending"

    @pytest.mark.asyncio
    async def test_default_chain_and_policy_rules(self, engine):
        request = await engine.submit_request("expense", "alice", {"amount": 250_000, "category": "travel"})

        assert [s.approver_role for s in request.steps] == ["manager", "finance"]
        assert request.applied_rules == ["expense_finance_review"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,value", [
        ("type", "vacation"),
        ("priority", "whenever"),
    ])
    async def test_unknown_enum_values_rejected(self, engine, store, field, value):
        kwargs = {"type": "leave", "priority": "normal"}
        kwargs[field] = value

        with pytest.raises(ValidationError, match=value):
            await engine.submit_request(
                kwargs["type"], "alice", {"days": 1}, priority=kwargs["priority"]
            )
        assert await store.list_by_requester("alice") == []

    @pytest.mark.asyncio
    async def test_unknown_execution_mode_rejected(self, engine):
        with pytest.raises(ValidationError, match="position 0"):
            await _submit(engine, [{"approver_id": "bob", "execution_mode": "whenever"}])

    @pytest.mark.asyncio
    async def test_invalid_payload_rejected(self, engine):
        with pytest.raises(ValidationError, match="leave payload"):
            await _submit(engine, payload={"days": -3})

    @pytest.mark.asyncio
    async def test_payload_type_must_match_request_type(self, engine):
        with pytest.raises(ValidationError, match="does not match"):
            await engine.submit_request("leave", "alice", {"type": "expense", "amount": 10})

    @pytest.mark.asyncio
    async def test_draft_waits_for_explicit_submit(self, engine, notifier, three_step_chain):
        draft = await _submit(engine, three_step_chain, draft=True)

        assert draft.status == RequestStatus.DRAFT
        assert all(s.status == StepStatus.WAITING for s in draft.steps)
        assert notifier.events == []

        with pytest.raises(InvalidStepState):
            await engine.act_on_step(draft.id, draft.steps[0].id, "bob", "approve")

        with pytest.raises(PermissionDenied):
            await engine.submit_draft(draft.id, "bob")

        submitted = await engine.submit_draft(draft.id, "alice")

        assert submitted.status == RequestStatus.PENDING
        assert submitted.version == 2
        assert notifier.kinds() == ["approval_requested"]

        with pytest.raises(InvalidStepState):
            await engine.submit_draft(draft.id, "alice")


# ==== SCENARIOS ==== #


@pytest.mark.unit
class TestApprovalScenarios:
    """Sequential, parallel and reject flows."""

    @pytest.mark.asyncio
    async def test_sequential_chain(self, engine, notifier, three_step_chain, step_for, clock):
        request = await _submit(engine, three_step_chain)

        request = await engine.act_on_step(request.id, step_for(request, "bob").id, "bob", "approve")
        assert request.current_step == 1
        assert request.status == RequestStatus.IN_REVIEW
        assert [s.approver_id for s in _pending(request)] == ["dave"]

        request = await engine.act_on_step(request.id, step_for(request, "dave").id, "dave", "approve")
        assert request.current_step == 2
        assert [s.approver_id for s in _pending(request)] == ["erin"]

        clock.advance(hours=3)
        request = await engine.act_on_step(
            request.id, step_for(request, "erin").id, "erin", "approve", comment="ok"
        )
        assert request.status == RequestStatus.APPROVED
        assert request.decided_at == clock()
        assert request.version == 4
        assert step_for(request, "erin").comments == "ok"
        assert step_for(request, "erin").acted_by == "erin"
        assert "request_approved" in notifier.kinds()
        assert engine.progress(request) == 100.0

    @pytest.mark.asyncio
    async def test_parallel_group_partially_approved_then_approved(self, engine, step_for):
        steps = [
            {"order": 1, "approver_id": "bob", "execution_mode": "parallel"},
            {"order": 1, "approver_id": "carol", "execution_mode": "parallel"},
        ]
        request = await _submit(engine, steps)
        assert len(_pending(request)) == 2

        request = await engine.act_on_step(request.id, step_for(request, "bob").id, "bob", "approve")
        assert request.status == RequestStatus.PARTIALLY_APPROVED
        assert request.current_step == 0

        request = await engine.act_on_step(request.id, step_for(request, "carol").id, "carol", "approve")
        assert request.status == RequestStatus.APPROVED

    @pytest.mark.asyncio
    async def test_parallel_group_advances_only_when_all_siblings_approve(
        self, engine, notifier, parallel_chain, step_for
    ):
        request = await _submit(engine, parallel_chain)

        request = await engine.act_on_step(request.id, step_for(request, "carol").id, "carol", "approve")
        assert step_for(request, "dave").status == StepStatus.WAITING

        request = await engine.act_on_step(request.id, step_for(request, "bob").id, "bob", "approve")
        assert request.status == RequestStatus.IN_REVIEW
        assert request.current_step == 1
        assert step_for(request, "dave").status == StepStatus.PENDING
        assert notifier.to("dave")[-1].kind == "approval_requested"

    @pytest.mark.asyncio
    async def test_reject_mid_chain_skips_remaining_steps(self, engine, notifier, three_step_chain, step_for):
        request = await _submit(engine, three_step_chain)
        request = await engine.act_on_step(request.id, step_for(request, "bob").id, "bob", "approve")

        request = await engine.act_on_step(
            request.id, step_for(request, "dave").id, "dave", "reject", comment="no budget"
        )

        assert request.status == RequestStatus.REJECTED
        assert step_for(request, "bob").status == StepStatus.APPROVED
        assert step_for(request, "dave").status == StepStatus.REJECTED
        assert step_for(request, "erin").status == StepStatus.SKIPPED
        assert notifier.to("alice")[-1].kind == "request_rejected"
        assert notifier.to("alice")[-1].payload["comment"] == "no budget"

    @pytest.mark.asyncio
    async def test_reject_in_parallel_group_skips_siblings(self, engine, parallel_chain, step_for):
        request = await _submit(engine, parallel_chain)

        request = await engine.act_on_step(request.id, step_for(request, "bob").id, "bob", "reject")

        assert request.status == RequestStatus.REJECTED
        assert step_for(request, "carol").status == StepStatus.SKIPPED
        assert step_for(request, "dave").status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_concurrent_parallel_approvals_both_succeed(self, engine, notifier, step_for):
        steps = [
            {"order": 0, "approver_id": "bob", "execution_mode": "parallel"},
            {"order": 0, "approver_id": "carol", "execution_mode": "parallel"},
        ]
        request = await _submit(engine, steps)
        conflicts_before = REGISTRY.get_sample_value(
            "approvals_workflow_version_conflicts_total", {"operation": "approve"}
        ) or 0

        results = await asyncio.gather(
            engine.act_on_step(request.id, step_for(request, "bob").id, "bob", "approve"),
            engine.act_on_step(request.id, step_for(request, "carol").id, "carol", "approve"),
        )

        final = await engine.get_request(request.id)
        assert final.status == RequestStatus.APPROVED
        assert final.version == 3
        assert all(s.status == StepStatus.APPROVED for s in final.steps)
        assert {r.status for r in results} == {RequestStatus.PARTIALLY_APPROVED, RequestStatus.APPROVED}
        assert notifier.kinds().count("request_approved") == 1

        entries = await engine.get_timeline(request.id)
        assert [e.details["status"] for e in entries if e.action == TimelineAction.APPROVED].count("approved") == 1

        conflicts_after = REGISTRY.get_sample_value(
            "approvals_workflow_version_conflicts_total", {"operation": "approve"}
        )
        assert conflicts_after >= conflicts_before + 1


# ==== IDEMPOTENCY AND AUTHORIZATION ==== #


@pytest.mark.unit
class TestActionGuards:
    """Duplicate actions, permissions and unknown input."""

    @pytest.mark.asyncio
    async def test_double_approve_is_flagged_duplicate(self, engine, store, three_step_chain, step_for):
        request = await _submit(engine, three_step_chain)
        step_id = step_for(request, "bob").id
        approved = await engine.act_on_step(request.id, step_id, "bob", "approve")

        with pytest.raises(InvalidStepState) as exc_info:
            await engine.act_on_step(request.id, step_id, "bob", "approve")

        assert exc_info.value.duplicate is True
        assert exc_info.value.request.version == approved.version
        current = await engine.get_request(request.id)
        assert current.current_step == 1
        assert current.version == approved.version
        assert len(await store.list_timeline(request.id)) == 3

    @pytest.mark.asyncio
    async def test_concurrent_double_click_applies_once(self, engine, step_for, three_step_chain):
        request = await _submit(engine, three_step_chain)
        step_id = step_for(request, "bob").id

        results = await asyncio.gather(
            engine.act_on_step(request.id, step_id, "bob", "approve"),
            engine.act_on_step(request.id, step_id, "bob", "approve"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStepState) and failures[0].duplicate
        assert (await engine.get_request(request.id)).version == 2

    @pytest.mark.asyncio
    async def test_acting_on_resolved_step_is_invalid_state(self, engine, three_step_chain, step_for):
        request = await _submit(engine, three_step_chain)
        step_id = step_for(request, "bob").id
        await engine.act_on_step(request.id, step_id, "bob", "approve")

        with pytest.raises(InvalidStepState) as exc_info:
            await engine.act_on_step(request.id, step_id, "bob", "reject")

        assert exc_info.value.duplicate is False

    @pytest.mark.asyncio
    async def test_wrong_approver_denied(self, engine, three_step_chain, step_for):
        request = await _submit(engine, three_step_chain)

        with pytest.raises(PermissionDenied):
            await engine.act_on_step(request.id, step_for(request, "bob").id, "carol", "approve")

        assert (await engine.get_request(request.id)).version == 1

    @pytest.mark.asyncio
    async def test_waiting_step_cannot_be_acted_on(self, engine, three_step_chain, step_for):
        request = await _submit(engine, three_step_chain)

        with pytest.raises(InvalidStepState):
            await engine.act_on_step(request.id, step_for(request, "dave").id, "dave", "approve")

    @pytest.mark.asyncio
    async def test_role_pool_step_accepts_any_holder(self, engine):
        request = await _submit(engine, [{"approver_role": "hr"}], requester="ivan")

        approved = await engine.act_on_step(request.id, request.steps[0].id, "hana", "approve")

        assert approved.status == RequestStatus.APPROVED
        assert approved.steps[0].acted_by == "hana"

    @pytest.mark.asyncio
    async def test_requester_cannot_approve_through_role(self, engine):
        request = await _submit(engine, [{"approver_role": "hr"}], requester="dave")

        with pytest.raises(PermissionDenied, match="own request"):
            await engine.act_on_step(request.id, request.steps[0].id, "dave", "approve")

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, engine, three_step_chain):
        request = await _submit(engine, three_step_chain)

        with pytest.raises(ValidationError, match="maybe"):
            await engine.act_on_step(request.id, request.steps[0].id, "bob", "maybe")

    @pytest.mark.asyncio
    async def test_unknown_step_rejected(self, engine, three_step_chain):
        request = await _submit(engine, three_step_chain)

        with pytest.raises(ValidationError, match="does not belong"):
            await engine.act_on_step(request.id, "nope", "bob", "approve")

    @pytest.mark.asyncio
    async def test_unknown_request_not_found(self, engine):
        with pytest.raises(RequestNotFound):
            await engine.act_on_step("missing", "nope", "bob", "approve")


# ==== RETURN FOR CORRECTION ==== #


@pytest.mark.unit
class TestReturnPolicies:
    """Return and resubmit under both re-initialization policies."""

    @pytest.mark.asyncio
    async def test_reset_policy_restarts_whole_chain(self, engine, notifier, three_step_chain, step_for):
        request = await _submit(engine, three_step_chain)
        request = await engine.act_on_step(request.id, step_for(request, "bob").id, "bob", "approve")

        returned = await engine.act_on_step(
            request.id, step_for(request, "dave").id, "dave", "return", comment="attach receipt"
        )

        assert returned.status == RequestStatus.RETURNED
        assert returned.return_reason == "attach receipt"
        assert returned.current_step == 0
        assert all(s.status == StepStatus.WAITING for s in returned.steps)
        assert notifier.to("alice")[-1].kind == "request_returned"

        with pytest.raises(PermissionDenied):
            await engine.resubmit_request(request.id, "bob")

        resubmitted = await engine.resubmit_request(request.id, "alice", comment="attached")

        assert resubmitted.status == RequestStatus.PENDING
        assert resubmitted.submission_round == 2
        assert resubmitted.return_reason is None
        assert [s.approver_id for s in _pending(resubmitted)] == ["bob"]

        again = await engine.act_on_step(request.id, step_for(resubmitted, "bob").id, "bob", "approve")
        assert again.status == RequestStatus.IN_REVIEW
        assert again.current_step == 1

    @pytest.mark.asyncio
    async def test_resume_policy_keeps_earlier_approvals(self, make_engine, three_step_chain, step_for):
        engine = make_engine(RETURN_POLICY="resume")
        request = await _submit(engine, three_step_chain)
        request = await engine.act_on_step(request.id, step_for(request, "bob").id, "bob", "approve")

        returned = await engine.act_on_step(request.id, step_for(request, "dave").id, "dave", "return")

        assert returned.status == RequestStatus.RETURNED
        assert returned.current_step == 1
        assert step_for(returned, "bob").status == StepStatus.APPROVED
        assert step_for(returned, "dave").status == StepStatus.WAITING

        resubmitted = await engine.resubmit_request(request.id, "alice")

        assert resubmitted.status == RequestStatus.IN_REVIEW
        assert [s.approver_id for s in _pending(resubmitted)] == ["dave"]

        approved = await engine.act_on_step(request.id, step_for(resubmitted, "dave").id, "dave", "approve")
        assert approved.status == RequestStatus.IN_REVIEW
        assert approved.current_step == 2

    @pytest.mark.asyncio
    async def test_resubmit_requires_returned_status(self, engine, three_step_chain):
        request = await _submit(engine, three_step_chain)

        with pytest.raises(InvalidStepState):
            await engine.resubmit_request(request.id, "alice")


# ==== REQUESTER AND ADMIN ACTIONS ==== #


@pytest.mark.unit
class TestCancelCompleteDelegate:
    """Cancellation, completion and delegation."""

    @pytest.mark.asyncio
    async def test_requester_cancels_open_request(self, engine, notifier, three_step_chain, clock):
        request = await _submit(engine, three_step_chain)
        notifier.events.clear()

        cancelled = await engine.cancel_request(request.id, "alice", reason="plans changed")

        assert cancelled.status == RequestStatus.CANCELLED
        assert cancelled.completed_at == clock()
        assert all(s.status == StepStatus.SKIPPED for s in cancelled.steps)
        assert notifier.events == []

    @pytest.mark.asyncio
    async def test_admin_cancel_notifies_requester(self, engine, notifier, three_step_chain):
        request = await _submit(engine, three_step_chain)

        await engine.cancel_request(request.id, "frank")

        assert notifier.to("alice")[-1].kind == "request_cancelled"

    @pytest.mark.asyncio
    async def test_other_users_cannot_cancel(self, engine, three_step_chain):
        request = await _submit(engine, three_step_chain)

        with pytest.raises(PermissionDenied):
            await engine.cancel_request(request.id, "bob")

    @pytest.mark.asyncio
    async def test_terminal_request_cannot_be_cancelled(self, engine):
        request = await _submit(engine)
        await engine.act_on_step(request.id, request.steps[0].id, "bob", "approve")

        with pytest.raises(InvalidStepState) as exc_info:
            await engine.cancel_request(request.id, "alice")

        assert exc_info.value.request.status == RequestStatus.APPROVED

    @pytest.mark.asyncio
    async def test_cancel_racing_approve_has_one_winner(self, engine):
        request = await _submit(engine)

        results = await asyncio.gather(
            engine.cancel_request(request.id, "alice"),
            engine.act_on_step(request.id, request.steps[0].id, "bob", "approve"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(failures) == 1 and isinstance(failures[0], InvalidStepState)
        final = await engine.get_request(request.id)
        assert final.status == winners[0].status
        assert final.status in (RequestStatus.CANCELLED, RequestStatus.APPROVED)

    @pytest.mark.asyncio
    async def test_complete_approved_request(self, engine, notifier):
        request = await _submit(engine)

        with pytest.raises(InvalidStepState):
            await engine.complete_request(request.id, "alice")

        await engine.act_on_step(request.id, request.steps[0].id, "bob", "approve")
        completed = await engine.complete_request(request.id, "alice")

        assert completed.status == RequestStatus.COMPLETED
        assert completed.completed_at is not None
        assert notifier.kinds()[-1] == "request_completed"

    @pytest.mark.asyncio
    async def test_delegate_reassigns_step(self, engine, notifier, three_step_chain, step_for):
        request = await _submit(engine, three_step_chain)
        step_id = step_for(request, "bob").id

        delegated = await engine.delegate_step(request.id, step_id, "bob", "carol", reason="on leave")

        step = delegated.get_step(step_id)
        assert step.approver_id == "carol"
        assert step.approver_name == "Carol Manager"
        assert step.delegated_from == "bob"
        assert step.status == StepStatus.PENDING
        assert delegated.status == RequestStatus.PENDING
        assert notifier.to("carol")[-1].kind == "step_delegated"

        with pytest.raises(PermissionDenied):
            await engine.act_on_step(request.id, step_id, "bob", "approve")

        approved = await engine.act_on_step(request.id, step_id, "carol", "approve")
        assert approved.current_step == 1

    @pytest.mark.asyncio
    async def test_delegate_guards(self, engine, three_step_chain, step_for):
        request = await _submit(engine, three_step_chain)
        step_id = step_for(request, "bob").id

        with pytest.raises(ValidationError):
            await engine.delegate_step(request.id, step_id, "bob", "alice")

        with pytest.raises(PermissionDenied):
            await engine.delegate_step(request.id, step_id, "dave", "carol")

        delegated = await engine.delegate_step(request.id, step_id, "frank", "carol")
        assert delegated.get_step(step_id).approver_id == "carol"


# ==== BULK ACTIONS ==== #


@pytest.mark.unit
class TestBulkActions:
    """Bulk approve and reject."""

    @pytest.mark.asyncio
    async def test_bulk_approve_reports_per_request(self, engine):
        first = await _submit(engine)
        second = await _submit(engine)
        other = await _submit(engine, requester="ivan")

        result = await engine.bulk_act([first.id, second.id, other.id, "missing"], "bob", "approve")

        assert result.succeeded == [first.id, second.id]
        assert set(result.failed) == {other.id, "missing"}
        assert "No actionable step" in result.failed[other.id]
        assert (await engine.get_request(first.id)).status == RequestStatus.APPROVED
        assert (await engine.get_request(other.id)).status == RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_bulk_return_not_supported(self, engine):
        with pytest.raises(ValidationError):
            await engine.bulk_act(["x"], "bob", "return")


# ==== NOTIFICATION AND PERSISTENCE FAILURES ==== #


@pytest.mark.unit
class TestFailureIsolation:
    """Notification failures never undo transitions; store failures surface."""

    @pytest.mark.asyncio
    async def test_notification_failure_is_recorded_not_raised(self, engine, notifier, three_step_chain):
        notifier.fail_kinds.add("approval_requested")

        request = await _submit(engine, three_step_chain)

        assert request.status == RequestStatus.PENDING
        entries = await engine.get_timeline(request.id)
        failed = [e for e in entries if e.action == TimelineAction.NOTIFICATION_FAILED]
        assert len(failed) == 1
        assert failed[0].details["kind"] == "approval_requested"
        assert failed[0].details["to_user_id"] == "bob"
        assert "refused" in failed[0].details["error"]

    @pytest.mark.asyncio
    async def test_notification_timeout_is_swallowed(self, directory, clock, settings, three_step_chain):
        class HangingNotifier:
            async def notify(self, event):
                await asyncio.sleep(10)

            async def aclose(self):
                pass

        engine = WorkflowEngine(
            InMemoryRequestStore(), directory, notifier=HangingNotifier(),
            settings=settings.model_copy(update={"NOTIFICATION_TIMEOUT_SECONDS": 0.05}),
            clock=clock,
        )

        request = await _submit(engine, three_step_chain)

        entries = await engine.get_timeline(request.id)
        assert entries[-1].action == TimelineAction.NOTIFICATION_FAILED
        assert entries[-1].details["error"] == "TimeoutError"

    @pytest.mark.asyncio
    async def test_persistence_timeout_surfaces_and_commits_nothing(self, make_engine, three_step_chain):
        class SlowStore(InMemoryRequestStore):
            slow = False

            async def compare_and_swap(self, request_id, expected_version, transition):
                if self.slow:
                    await asyncio.sleep(10)
                return await super().compare_and_swap(request_id, expected_version, transition)

        store = SlowStore()
        engine = make_engine(store, PERSISTENCE_TIMEOUT_SECONDS=0.05)
        request = await _submit(engine, three_step_chain)
        store.slow = True

        with pytest.raises(PersistenceError) as exc_info:
            await engine.act_on_step(request.id, request.steps[0].id, "bob", "approve")

        assert exc_info.value.retryable is True
        unchanged = await engine.get_request(request.id)
        assert unchanged.version == 1
        assert unchanged.steps[0].status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_version_conflict_surfaces_after_bounded_retries(self, make_engine, three_step_chain):
        class ContendedStore(InMemoryRequestStore):
            attempts = 0
            contended = False

            async def compare_and_swap(self, request_id, expected_version, transition):
                if self.contended:
                    self.attempts += 1
                    raise VersionConflict(request_id, expected_version, expected_version + 1)
                return await super().compare_and_swap(request_id, expected_version, transition)

        store = ContendedStore()
        engine = make_engine(store, CAS_MAX_ATTEMPTS=3)
        request = await _submit(engine, three_step_chain)
        store.contended = True

        with pytest.raises(VersionConflict):
            await engine.act_on_step(request.id, request.steps[0].id, "bob", "approve")

        assert store.attempts == 3


# ==== QUERIES ==== #


@pytest.mark.unit
class TestQueries:
    """Listings, statistics, progress and timeline windows."""

    @pytest.mark.asyncio
    async def test_list_by_approver_follows_active_step(self, engine, three_step_chain, step_for):
        request = await _submit(engine, three_step_chain)

        assert [r.id for r in await engine.list_by_approver("bob")] == [request.id]
        assert await engine.list_by_approver("dave") == []

        await engine.act_on_step(request.id, step_for(request, "bob").id, "bob", "approve")

        assert await engine.list_by_approver("bob") == []
        assert [r.id for r in await engine.list_by_approver("dave", "in_review")] == [request.id]
        assert await engine.list_by_approver("dave", "pending") == []

    @pytest.mark.asyncio
    async def test_list_by_approver_includes_role_pools(self, engine):
        request = await _submit(engine, [{"approver_role": "finance"}])

        assert [r.id for r in await engine.list_by_approver("erin")] == [request.id]

    @pytest.mark.asyncio
    async def test_list_by_approver_rejects_unknown_status(self, engine):
        with pytest.raises(ValidationError):
            await engine.list_by_approver("bob", "limbo")

    @pytest.mark.asyncio
    async def test_statistics_per_requester(self, engine, clock):
        approved = await _submit(engine)
        rejected = await _submit(engine)
        await _submit(engine)
        await _submit(engine, requester="ivan")

        clock.advance(days=2)
        await engine.act_on_step(approved.id, approved.steps[0].id, "bob", "approve")
        await engine.act_on_step(rejected.id, rejected.steps[0].id, "bob", "reject")

        stats = await engine.statistics("alice")

        assert stats.total_requests == 3
        assert stats.pending_requests == 1
        assert stats.approved_requests == 1
        assert stats.rejected_requests == 1
        assert stats.returned_requests == 0
        assert stats.average_approval_days == 2.0

    @pytest.mark.asyncio
    async def test_progress_counts_decided_steps(self, engine, three_step_chain, step_for):
        request = await _submit(engine, three_step_chain)
        request = await engine.act_on_step(request.id, step_for(request, "bob").id, "bob", "approve")

        assert engine.progress(request) == 33.3

    @pytest.mark.asyncio
    async def test_timeline_limit_keeps_newest_entries(self, engine, three_step_chain, step_for, clock):
        request = await _submit(engine, three_step_chain)
        clock.advance(minutes=5)
        await engine.act_on_step(request.id, step_for(request, "bob").id, "bob", "approve")

        latest = await engine.get_timeline(request.id, limit=2)

        assert [e.action for e in latest] == [TimelineAction.SUBMITTED, TimelineAction.APPROVED]

    @pytest.mark.asyncio
    async def test_list_delegated_follows_reassigned_steps(self, engine, three_step_chain, step_for):
        request = await _submit(engine, three_step_chain)
        step_id = step_for(request, "bob").id

        assert await engine.list_delegated("carol") == []

        await engine.delegate_step(request.id, step_id, "bob", "carol")

        assert [r.id for r in await engine.list_delegated("carol")] == [request.id]
        assert await engine.list_delegated("bob") == []

        await engine.act_on_step(request.id, step_id, "carol", "approve")

        assert await engine.list_delegated("carol") == []


# ==== STANDING PROXY APPROVERS ==== #


@pytest.mark.unit
class TestStandingProxies:
    """Time-boxed proxies act on the delegator's directly assigned steps."""

    @pytest.mark.asyncio
    async def test_proxy_acts_within_window(self, engine, three_step_chain, step_for, clock):
        setting = await engine.set_delegate_approver(
            "bob", "ivan", clock(), clock() + timedelta(days=2), reason="conference"
        )
        assert setting.delegate_name == "Ivan Employee"

        request = await _submit(engine, three_step_chain)

        assert [r.id for r in await engine.list_by_approver("ivan")] == [request.id]

        approved = await engine.act_on_step(request.id, step_for(request, "bob").id, "ivan", "approve")

        assert approved.current_step == 1
        assert approved.steps[0].acted_by == "ivan"
        entries = await engine.get_timeline(request.id)
        assert entries[-1].details["on_behalf_of"] == "bob"

    @pytest.mark.asyncio
    async def test_proxy_expires_with_window(self, engine, three_step_chain, step_for, clock):
        await engine.set_delegate_approver("bob", "ivan", clock(), clock() + timedelta(days=1))
        clock.advance(days=2)
        request = await _submit(engine, three_step_chain)

        assert await engine.active_delegate_for("bob") is None
        assert await engine.list_by_approver("ivan") == []
        with pytest.raises(PermissionDenied):
            await engine.act_on_step(request.id, step_for(request, "bob").id, "ivan", "approve")

    @pytest.mark.asyncio
    async def test_proxy_not_yet_started(self, engine, three_step_chain, step_for, clock):
        await engine.set_delegate_approver(
            "bob", "ivan", clock() + timedelta(days=1), clock() + timedelta(days=3)
        )
        request = await _submit(engine, three_step_chain)

        with pytest.raises(PermissionDenied):
            await engine.act_on_step(request.id, step_for(request, "bob").id, "ivan", "approve")

        clock.advance(days=1, hours=1)
        approved = await engine.act_on_step(request.id, step_for(request, "bob").id, "ivan", "approve")
        assert approved.status == RequestStatus.IN_REVIEW

    @pytest.mark.asyncio
    async def test_requester_cannot_be_proxy_on_own_request(self, engine, three_step_chain, step_for, clock):
        await engine.set_delegate_approver("bob", "alice", clock(), clock() + timedelta(days=1))
        request = await _submit(engine, three_step_chain)

        with pytest.raises(PermissionDenied):
            await engine.act_on_step(request.id, step_for(request, "bob").id, "alice", "approve")

    @pytest.mark.asyncio
    async def test_removed_setting_stops_proxy(self, engine, three_step_chain, step_for, clock):
        await engine.set_delegate_approver("bob", "ivan", clock(), clock() + timedelta(days=2))
        request = await _submit(engine, three_step_chain)

        assert await engine.remove_delegate_approver("bob") is True
        assert await engine.remove_delegate_approver("bob") is False

        with pytest.raises(PermissionDenied):
            await engine.act_on_step(request.id, step_for(request, "bob").id, "ivan", "approve")

    @pytest.mark.asyncio
    async def test_bulk_approve_as_proxy(self, engine, clock):
        await engine.set_delegate_approver("bob", "ivan", clock(), clock() + timedelta(days=2))
        first = await _submit(engine)
        second = await _submit(engine)

        result = await engine.bulk_act([first.id, second.id], "ivan", "approve")

        assert result.succeeded == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_setting_guards(self, engine, clock):
        start, end = clock(), clock() + timedelta(days=1)

        with pytest.raises(PermissionDenied):
            await engine.set_delegate_approver("bob", "ivan", start, end, actor_id="dave")
        with pytest.raises(ValidationError, match="own proxy"):
            await engine.set_delegate_approver("bob", "bob", start, end)
        with pytest.raises(ValidationError, match="end after"):
            await engine.set_delegate_approver("bob", "ivan", end, start)
        with pytest.raises(PermissionDenied):
            await engine.remove_delegate_approver("bob", actor_id="dave")

        setting = await engine.set_delegate_approver("bob", "ivan", start, end, actor_id="frank")
        assert setting.user_id == "bob"

    @pytest.mark.asyncio
    async def test_new_setting_replaces_previous(self, engine, clock):
        await engine.set_delegate_approver("bob", "ivan", clock(), clock() + timedelta(days=1))
        await engine.set_delegate_approver("bob", "carol", clock(), clock() + timedelta(days=1))
        request = await _submit(engine)

        active = await engine.active_delegate_for("bob")

        assert active.delegate_id == "carol"
        assert await engine.list_by_approver("ivan") == []
        assert [r.id for r in await engine.list_by_approver("carol")] == [request.id]


# ==== WORKFLOW BEHAVIOUR SETTINGS ==== #


@pytest.mark.unit
class TestRejectCommentSetting:
    """Rejections may be required to carry a comment."""

    @pytest.mark.asyncio
    async def test_reject_without_comment_refused(self, make_engine):
        engine = make_engine(REQUIRE_COMMENT_ON_REJECT=True)
        request = await _submit(engine)

        with pytest.raises(ValidationError, match="comment is required"):
            await engine.act_on_step(request.id, request.steps[0].id, "bob", "reject")

        unchanged = await engine.get_request(request.id)
        assert unchanged.status == RequestStatus.PENDING
        assert unchanged.version == 1

        rejected = await engine.act_on_step(
            request.id, request.steps[0].id, "bob", "reject", comment="missing receipts"
        )
        assert rejected.status == RequestStatus.REJECTED

    @pytest.mark.asyncio
    async def test_bulk_reject_without_comment_refused(self, make_engine):
        engine = make_engine(REQUIRE_COMMENT_ON_REJECT=True)
        request = await _submit(engine)

        with pytest.raises(ValidationError):
            await engine.bulk_act([request.id], "bob", "reject")

        assert (await engine.get_request(request.id)).status == RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_comment_optional_by_default(self, engine):
        request = await _submit(engine)

        rejected = await engine.act_on_step(request.id, request.steps[0].id, "bob", "reject")

        assert rejected.status == RequestStatus.REJECTED


@pytest.mark.unit
class TestOptionalStepsInChains:
    """Optional reviewers are skipped once the chain moves on."""

    @pytest.mark.asyncio
    async def test_optional_step_skipped_when_chain_advances(self, engine, notifier):
        steps = [
            {"approver_id": "bob"},
            {"approver_id": "carol", "optional": True},
            {"approver_id": "dave"},
        ]
        request = await _submit(engine, steps)
        notifier.events.clear()

        advanced = await engine.act_on_step(request.id, request.steps[0].id, "bob", "approve")

        assert [s.status for s in advanced.steps] == [
            StepStatus.APPROVED, StepStatus.SKIPPED, StepStatus.PENDING
        ]
        assert advanced.status == RequestStatus.IN_REVIEW
        assert [n.to_user_id for n in notifier.events if n.kind == "approval_requested"] == ["dave"]

    @pytest.mark.asyncio
    async def test_chain_of_only_optional_steps_rejected(self, engine):
        with pytest.raises(ValidationError, match="must be required"):
            await _submit(engine, [{"approver_id": "bob", "optional": True}])
