"""Pydantic schemas for workflow requests, approval steps and timeline entries."""

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ==== ENUMERATIONS ==== #


class RequestStatus(str, Enum):
    """Workflow request status."""
    DRAFT = "draft"
    PENDING = "pending"
    IN_REVIEW = "in_review"
    PARTIALLY_APPROVED = "partially_approved"
    ESCALATED = "escalated"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class StepStatus(str, Enum):
    """Approval step status.

    WAITING marks a step whose group is not active yet; ESCALATED marks a
    step reassigned after its timeout elapsed.
    """
    WAITING = "waiting"
    PENDING = "pending"
    ESCALATED = "escalated"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class ExecutionMode(str, Enum):
    """How steps sharing an order value are resolved."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class StepAction(str, Enum):
    """Actions an approver can take on a step."""
    APPROVE = "approve"
    REJECT = "reject"
    RETURN = "return"


class TimelineAction(str, Enum):
    """Kinds of timeline entries."""
    CREATED = "created"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"
    RESUBMITTED = "resubmitted"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"
    DELEGATED = "delegated"
    COMPLETED = "completed"
    NOTIFICATION_FAILED = "notification_failed"


class RequestType(str, Enum):
    """Business request types."""
    LEAVE = "leave"
    EXPENSE = "expense"
    PURCHASE = "purchase"
    OVERTIME = "overtime"
    CERTIFICATION_RENEWAL = "certification_renewal"


class Priority(str, Enum):
    """Request priority; drives default step timeouts."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


OPEN_STEP_STATUSES = frozenset({StepStatus.WAITING, StepStatus.PENDING, StepStatus.ESCALATED})
ACTIONABLE_STEP_STATUSES = frozenset({StepStatus.PENDING, StepStatus.ESCALATED})


# ==== REQUEST PAYLOADS ==== #


class LeavePayload(BaseModel):
    """Leave request details."""

    type: Literal["leave"] = "leave"
    days: float = Field(..., gt=0, le=366)
    leave_type: Literal["annual", "sick", "special", "unpaid"] = "annual"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_dates(self) -> "LeavePayload":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ExpensePayload(BaseModel):
    """Expense reimbursement details."""

    type: Literal["expense"] = "expense"
    amount: float = Field(..., gt=0)
    currency: str = Field("JPY", min_length=3, max_length=3)
    category: Optional[str] = None
    incurred_on: Optional[date] = None


class PurchasePayload(BaseModel):
    """Purchase request details."""

    type: Literal["purchase"] = "purchase"
    amount: float = Field(..., gt=0)
    currency: str = Field("JPY", min_length=3, max_length=3)
    vendor: Optional[str] = None
    item: Optional[str] = None
    quantity: int = Field(1, ge=1)


class OvertimePayload(BaseModel):
    """Monthly overtime application details."""

    type: Literal["overtime"] = "overtime"
    hours: float = Field(..., gt=0, le=744)
    month: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}$")
    reason: Optional[str] = None


class CertificationRenewalPayload(BaseModel):
    """Professional certification renewal details."""

    type: Literal["certification_renewal"] = "certification_renewal"
    certification: str = Field(..., min_length=1)
    expires_on: Optional[date] = None
    cost: float = Field(0, ge=0)


RequestPayload = Annotated[
    Union[
        LeavePayload,
        ExpensePayload,
        PurchasePayload,
        OvertimePayload,
        CertificationRenewalPayload,
    ],
    Field(discriminator="type"),
]


# ==== DOMAIN MODELS ==== #


class ApprovalStep(BaseModel):
    """One approver slot in a request's step graph."""

    id: str
    request_id: str
    order: int = Field(..., ge=0)
    approver_role: Optional[str] = None
    approver_id: Optional[str] = None
    approver_name: Optional[str] = None
    status: StepStatus = StepStatus.WAITING
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    optional: bool = False
    timeout_hours: Optional[float] = Field(None, gt=0)
    comments: Optional[str] = None
    action_date: Optional[datetime] = None
    acted_by: Optional[str] = None
    became_pending_at: Optional[datetime] = None
    added_by_rule: Optional[str] = None
    delegated_from: Optional[str] = None
    escalated_from: Optional[str] = None
    escalated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STEP_STATUSES

    @property
    def blocks_progress(self) -> bool:
        """Open and required; optional steps never hold up their group."""
        return self.is_open and not self.optional

    @property
    def is_actionable(self) -> bool:
        return self.status in ACTIONABLE_STEP_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        """True once strictly more than ``timeout_hours`` passed since activation."""
        if self.status != StepStatus.PENDING or self.timeout_hours is None:
            return False
        if self.became_pending_at is None:
            return False
        return now - self.became_pending_at > timedelta(hours=self.timeout_hours)


class WorkflowRequest(BaseModel):
    """A business request moving through its approval chain."""

    id: str
    tenant_id: str = "default"
    requester_id: str
    requester_name: Optional[str] = None
    type: RequestType
    title: str
    description: Optional[str] = None
    payload: RequestPayload
    status: RequestStatus = RequestStatus.DRAFT
    current_step: int = 0
    priority: Priority = Priority.NORMAL
    due_date: Optional[date] = None
    version: int = 1
    submission_round: int = 1
    applied_rules: List[str] = Field(default_factory=list)
    return_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: List[ApprovalStep] = Field(default_factory=list)

    def get_step(self, step_id: str) -> Optional[ApprovalStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def group(self, order: int) -> List[ApprovalStep]:
        """Steps sharing ``order``, in graph order."""
        return [step for step in self.steps if step.order == order]


class TimelineEntry(BaseModel):
    """Append-only audit record of one committed transition."""

    id: str
    request_id: str
    sequence: int = 0
    action: TimelineAction
    actor_id: str
    actor_name: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class NotificationEvent(BaseModel):
    """Outbound notification produced by a committed transition."""

    request_id: str
    to_user_id: Optional[str] = None
    to_role: Optional[str] = None
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ActionReceipt(BaseModel):
    """Key that makes an actor action apply at most once per submission round."""

    request_id: str
    step_id: str
    action: str
    submission_round: int
    actor_id: str


class DelegateSetting(BaseModel):
    """Standing proxy approver for ``user_id`` during a time window."""

    user_id: str
    delegate_id: str
    delegate_name: Optional[str] = None
    start_at: datetime
    end_at: datetime
    reason: Optional[str] = None
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("start_at", "end_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)

    def is_active_at(self, now: datetime) -> bool:
        return self.active and self.start_at <= now <= self.end_at


class Transition(BaseModel):
    """Everything one state change commits atomically."""

    request: WorkflowRequest
    entries: List[TimelineEntry] = Field(default_factory=list)
    notifications: List[NotificationEvent] = Field(default_factory=list)
    receipt: Optional[ActionReceipt] = None


# ==== INPUT SCHEMAS ==== #


class StepSpec(BaseModel):
    """Caller-supplied approval step before resolution."""

    order: Optional[int] = Field(None, ge=0)
    approver_role: Optional[str] = None
    approver_id: Optional[str] = None
    approver_name: Optional[str] = None
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    optional: bool = False
    timeout_hours: Optional[float] = Field(None, gt=0)


class SubmitRequestBody(BaseModel):
    """Request schema for creating a workflow request."""

    type: RequestType
    requester_id: str = Field(..., min_length=1)
    requester_name: Optional[str] = None
    tenant_id: str = "default"
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Priority = Priority.NORMAL
    due_date: Optional[date] = None
    payload: Dict[str, Any]
    steps: List[StepSpec] = Field(default_factory=list)
    draft: bool = False


class StepActionBody(BaseModel):
    """Request schema for approve / reject / return."""

    actor_id: str = Field(..., min_length=1)
    action: StepAction
    comment: Optional[str] = None


class ActorBody(BaseModel):
    """Request schema for actions that only need the acting user."""

    actor_id: str = Field(..., min_length=1)
    comment: Optional[str] = None


class DelegateBody(BaseModel):
    """Request schema for handing a step to another approver."""

    actor_id: str = Field(..., min_length=1)
    delegate_to_id: str = Field(..., min_length=1)
    delegate_to_name: Optional[str] = None
    reason: Optional[str] = None


class DelegateSettingBody(BaseModel):
    """Request schema for configuring a standing proxy approver."""

    actor_id: str = Field(..., min_length=1)
    delegate_to_id: str = Field(..., min_length=1)
    delegate_name: Optional[str] = None
    start_at: datetime
    end_at: datetime
    reason: Optional[str] = None

    @field_validator("start_at", "end_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)

    @model_validator(mode="after")
    def _check_window(self) -> "DelegateSettingBody":
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self


class BulkActionBody(BaseModel):
    """Request schema for bulk approve / reject."""

    actor_id: str = Field(..., min_length=1)
    request_ids: List[str] = Field(..., min_length=1)
    action: StepAction
    comment: Optional[str] = None

    @field_validator("action")
    @classmethod
    def _approve_or_reject(cls, value: StepAction) -> StepAction:
        if value == StepAction.RETURN:
            raise ValueError("bulk actions support approve and reject only")
        return value


# ==== RESPONSE SCHEMAS ==== #


class BulkActionResult(BaseModel):
    """Per-request outcome of a bulk action."""

    succeeded: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)


class RequestListResponse(BaseModel):
    """Response schema for request listings."""

    items: List[WorkflowRequest]
    total: int


class TimelineResponse(BaseModel):
    """Response schema for a request's timeline."""

    request_id: str
    entries: List[TimelineEntry]


class RequestStatistics(BaseModel):
    """Per-requester request counts and average approval time."""

    total_requests: int = 0
    pending_requests: int = 0
    approved_requests: int = 0
    rejected_requests: int = 0
    returned_requests: int = 0
    average_approval_days: float = 0.0
