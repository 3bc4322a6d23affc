# ==== WORKFLOW ROUTES MODULE ==== #

"""
HTTP surface of the approval workflow engine.

Routes are thin: they parse the body, call one engine operation and return
the resulting request. Engine errors are mapped to HTTP answers by the
handlers registered in ``approvals.main``.
"""

from typing import Optional

from fastapi import APIRouter, Query, Request, Response

from approvals.errors import DelegateSettingNotFound
from approvals.schemas.workflow import (
    ActorBody,
    BulkActionBody,
    BulkActionResult,
    DelegateBody,
    DelegateSetting,
    DelegateSettingBody,
    RequestListResponse,
    RequestStatistics,
    RequestStatus,
    StepActionBody,
    SubmitRequestBody,
    TimelineResponse,
    WorkflowRequest,
)
from approvals.services.workflow_engine import WorkflowEngine
from approvals.observability.tracing import get_tracer


router = APIRouter()
tracer = get_tracer(__name__)


def get_engine(request: Request) -> WorkflowEngine:
    """Workflow engine built by the application lifespan."""
    return request.app.state.engine


# ==== SUBMISSION ==== #


@router.post("", response_model=WorkflowRequest, status_code=201)
async def submit_request(body: SubmitRequestBody, request: Request) -> WorkflowRequest:
    """
    Create a workflow request and submit it (or keep it as a draft).

    Args:
        body (SubmitRequestBody): Request type, requester, payload and steps
        request (Request): HTTP request object

    Returns:
        WorkflowRequest: Created request with its resolved steps
    """
    engine = get_engine(request)
    return await engine.submit_request(
        body.type,
        body.requester_id,
        body.payload,
        body.steps,
        title=body.title,
        description=body.description,
        tenant_id=body.tenant_id,
        priority=body.priority,
        due_date=body.due_date,
        requester_name=body.requester_name,
        draft=body.draft,
    )


@router.post("/bulk", response_model=BulkActionResult)
async def bulk_action(body: BulkActionBody, request: Request) -> BulkActionResult:
    """Approve or reject many requests at once; failures are listed per request."""
    engine = get_engine(request)
    with tracer.start_as_current_span("bulk_action") as span:
        span.set_attribute("actor_id", body.actor_id)
        span.set_attribute("request_count", len(body.request_ids))
        return await engine.bulk_act(body.request_ids, body.actor_id, body.action, body.comment)


# ==== QUERIES ==== #


@router.get("/approvers/{user_id}", response_model=RequestListResponse)
async def list_for_approver(
    user_id: str,
    request: Request,
    status: Optional[RequestStatus] = Query(None, description="Filter by request status"),
) -> RequestListResponse:
    """Requests waiting on ``user_id``, directly or through a held role."""
    items = await get_engine(request).list_by_approver(user_id, status)
    return RequestListResponse(items=items, total=len(items))


@router.get("/approvers/{user_id}/delegated", response_model=RequestListResponse)
async def list_delegated_to(user_id: str, request: Request) -> RequestListResponse:
    """Requests whose actionable step was handed to ``user_id`` by delegation."""
    items = await get_engine(request).list_delegated(user_id)
    return RequestListResponse(items=items, total=len(items))


@router.get("/requesters/{user_id}", response_model=RequestListResponse)
async def list_for_requester(
    user_id: str,
    request: Request,
    status: Optional[RequestStatus] = Query(None, description="Filter by request status"),
) -> RequestListResponse:
    items = await get_engine(request).list_by_requester(user_id, status)
    return RequestListResponse(items=items, total=len(items))


@router.get("/requesters/{user_id}/statistics", response_model=RequestStatistics)
async def requester_statistics(user_id: str, request: Request) -> RequestStatistics:
    return await get_engine(request).statistics(user_id)


# ==== STANDING PROXY APPROVERS ==== #


@router.put("/delegates/{user_id}", response_model=DelegateSetting)
async def set_delegate(user_id: str, body: DelegateSettingBody, request: Request) -> DelegateSetting:
    """
    Let another user act on ``user_id``'s steps during a time window.

    Args:
        user_id (str): User whose steps are covered
        body (DelegateSettingBody): Acting user, proxy and window
        request (Request): HTTP request object

    Returns:
        DelegateSetting: Stored setting, replacing any earlier one
    """
    return await get_engine(request).set_delegate_approver(
        user_id,
        body.delegate_to_id,
        body.start_at,
        body.end_at,
        actor_id=body.actor_id,
        delegate_name=body.delegate_name,
        reason=body.reason,
    )


@router.get("/delegates/{user_id}", response_model=DelegateSetting)
async def get_delegate(user_id: str, request: Request) -> DelegateSetting:
    setting = await get_engine(request).active_delegate_for(user_id)
    if setting is None:
        raise DelegateSettingNotFound(user_id)
    return setting


@router.delete("/delegates/{user_id}", status_code=204)
async def remove_delegate(
    user_id: str,
    request: Request,
    actor_id: str = Query(..., min_length=1, description="User removing the setting"),
) -> Response:
    if not await get_engine(request).remove_delegate_approver(user_id, actor_id=actor_id):
        raise DelegateSettingNotFound(user_id)
    return Response(status_code=204)


# ==== REQUEST RESOURCES ==== #


@router.get("/{request_id}", response_model=WorkflowRequest)
async def get_request(request_id: str, request: Request) -> WorkflowRequest:
    return await get_engine(request).get_request(request_id)


@router.get("/{request_id}/timeline", response_model=TimelineResponse)
async def get_timeline(
    request_id: str,
    request: Request,
    limit: Optional[int] = Query(None, ge=1, le=500, description="Newest N entries"),
) -> TimelineResponse:
    """
    Timeline of a request in chronological order.

    Without ``limit`` the full audit history is returned.
    """
    engine = get_engine(request)
    # 404 for unknown requests instead of an empty list
    await engine.get_request(request_id)
    entries = await engine.get_timeline(request_id, limit)
    return TimelineResponse(request_id=request_id, entries=entries)


# ==== STEP ACTIONS ==== #


@router.post("/{request_id}/steps/{step_id}/actions", response_model=WorkflowRequest)
async def act_on_step(
    request_id: str,
    step_id: str,
    body: StepActionBody,
    request: Request,
) -> WorkflowRequest:
    """
    Approve, reject or return a step.

    Repeating an action that was already applied answers 200 with the
    unchanged request.
    """
    return await get_engine(request).act_on_step(
        request_id, step_id, body.actor_id, body.action, body.comment
    )


@router.post("/{request_id}/steps/{step_id}/delegate", response_model=WorkflowRequest)
async def delegate_step(
    request_id: str,
    step_id: str,
    body: DelegateBody,
    request: Request,
) -> WorkflowRequest:
    return await get_engine(request).delegate_step(
        request_id,
        step_id,
        body.actor_id,
        body.delegate_to_id,
        body.delegate_to_name,
        body.reason,
    )


# ==== REQUESTER ACTIONS ==== #


@router.post("/{request_id}/submit", response_model=WorkflowRequest)
async def submit_draft(request_id: str, body: ActorBody, request: Request) -> WorkflowRequest:
    return await get_engine(request).submit_draft(request_id, body.actor_id)


@router.post("/{request_id}/cancel", response_model=WorkflowRequest)
async def cancel_request(request_id: str, body: ActorBody, request: Request) -> WorkflowRequest:
    return await get_engine(request).cancel_request(request_id, body.actor_id, body.comment)


@router.post("/{request_id}/resubmit", response_model=WorkflowRequest)
async def resubmit_request(request_id: str, body: ActorBody, request: Request) -> WorkflowRequest:
    return await get_engine(request).resubmit_request(request_id, body.actor_id, body.comment)


@router.post("/{request_id}/complete", response_model=WorkflowRequest)
async def complete_request(request_id: str, body: ActorBody, request: Request) -> WorkflowRequest:
    return await get_engine(request).complete_request(request_id, body.actor_id)
