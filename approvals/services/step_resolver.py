# ==== STEP RESOLVER ==== #

"""
Step resolver for turning a submission into an approval step graph.

Validates and normalizes caller-supplied steps, fills in the requester's
manager when no chain is supplied and appends review tiers required by the
default approval policy (amount / duration thresholds per request type).
Runs before anything is persisted: every problem is a ``ValidationError``.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from approvals.errors import ValidationError
from approvals.schemas.workflow import (
    ApprovalStep,
    ExecutionMode,
    Priority,
    RequestType,
    StepSpec,
)
from approvals.services.directory import ApproverDirectory
from approvals.settings import Settings, get_settings


# ==== DEFAULT POLICY RULES ==== #


@dataclass(frozen=True)
class PolicyRule:
    """Adds a ``role`` review step when ``payload.<field> >= threshold``."""
    name: str
    request_type: RequestType
    field: str
    threshold: float
    role: str


def default_policy_rules(settings: Settings) -> List[PolicyRule]:
    """Build the default conditional approval rules from settings.

    Rules are evaluated in list order, which is also the order the added
    steps take in the chain.
    """
    return [
        PolicyRule("leave_hr_review", RequestType.LEAVE, "days",
                   settings.LEAVE_HR_REVIEW_DAYS, "hr"),
        PolicyRule("expense_finance_review", RequestType.EXPENSE, "amount",
                   settings.EXPENSE_FINANCE_REVIEW_AMOUNT, "finance"),
        PolicyRule("expense_hr_review", RequestType.EXPENSE, "amount",
                   settings.EXPENSE_HR_REVIEW_AMOUNT, "hr"),
        PolicyRule("overtime_hr_review", RequestType.OVERTIME, "hours",
                   settings.OVERTIME_HR_REVIEW_HOURS, "hr"),
        PolicyRule("overtime_finance_review", RequestType.OVERTIME, "hours",
                   settings.OVERTIME_FINANCE_REVIEW_HOURS, "finance"),
        PolicyRule("purchase_executive_review", RequestType.PURCHASE, "amount",
                   settings.PURCHASE_EXECUTIVE_REVIEW_AMOUNT, "general_manager"),
    ]


@dataclass
class ResolvedChain:
    """Normalized step graph plus the names of the rules that extended it."""
    steps: List[ApprovalStep]
    applied_rules: List[str] = field(default_factory=list)


# ==== STEP RESOLVER CLASS ==== #


class StepResolver:
    """
    Validates and materializes approval chains.

    Args:
        directory: Approver directory used to resolve roles and managers
        settings: Settings providing thresholds and default timeouts
        rules: Override for the default policy rules
    """

    def __init__(
        self,
        directory: ApproverDirectory,
        settings: Settings | None = None,
        rules: Sequence[PolicyRule] | None = None,
    ):
        self.directory = directory
        self.settings = settings or get_settings()
        self.rules = list(rules) if rules is not None else default_policy_rules(self.settings)

    def default_timeout_hours(self, priority: Priority) -> float:
        return {
            Priority.URGENT: self.settings.TIMEOUT_HOURS_URGENT,
            Priority.HIGH: self.settings.TIMEOUT_HOURS_HIGH,
            Priority.NORMAL: self.settings.TIMEOUT_HOURS_NORMAL,
            Priority.LOW: self.settings.TIMEOUT_HOURS_LOW,
        }[priority]

    def resolve(
        self,
        request_id: str,
        request_type: RequestType,
        requester_id: str,
        payload: object,
        steps: Sequence[StepSpec] = (),
        priority: Priority = Priority.NORMAL,
    ) -> ResolvedChain:
        """
        Resolve the approval chain for a new request.

        Args:
            request_id: Id the steps will belong to
            request_type: Business request type
            requester_id: Submitting user
            payload: Validated request payload
            steps: Caller-supplied steps; empty means "requester's manager"
            priority: Request priority, drives default timeouts

        Returns:
            ResolvedChain: Steps ordered by group with 0-based orders

        Raises:
            ValidationError: Empty or all-optional chain, bad orders, mixed
                group modes, unresolvable approver or self-approval
        """
        specs = list(steps) or self._default_chain(requester_id)
        orders = self._normalize_orders(specs)
        self._check_groups(specs, orders)

        default_timeout = self.default_timeout_hours(priority)
        resolved: List[ApprovalStep] = []
        for spec, order in sorted(zip(specs, orders), key=lambda pair: pair[1]):
            resolved.append(self._build_step(request_id, spec, order, requester_id, default_timeout))

        applied_rules = self._apply_policy(
            request_id, request_type, requester_id, payload, resolved, default_timeout
        )

        if not resolved:
            raise ValidationError("Approval chain is empty")
        if all(step.optional for step in resolved):
            raise ValidationError("At least one approval step must be required")

        return ResolvedChain(steps=resolved, applied_rules=applied_rules)

    # ==== CHAIN CONSTRUCTION ==== #

    def _default_chain(self, requester_id: str) -> List[StepSpec]:
        manager = self.directory.manager_of(requester_id)
        if manager is None:
            raise ValidationError(
                f"No approval steps supplied and no manager on file for {requester_id}"
            )
        return [StepSpec(
            approver_id=manager.user_id,
            approver_name=manager.display_name,
            approver_role="manager",
        )]

    def _normalize_orders(self, specs: List[StepSpec]) -> List[int]:
        declared = [spec.order for spec in specs]
        if all(order is None for order in declared):
            return list(range(len(specs)))
        if any(order is None for order in declared):
            raise ValidationError("Either every step or no step must declare an order")

        distinct = sorted(set(declared))
        base = distinct[0]
        if base not in (0, 1):
            raise ValidationError(f"Step orders must start at 0 or 1, got {base}")
        if distinct != list(range(base, base + len(distinct))):
            raise ValidationError(f"Step orders must be contiguous, got {distinct}")

        return [order - base for order in declared]

    def _check_groups(self, specs: List[StepSpec], orders: List[int]) -> None:
        groups: Dict[int, List[StepSpec]] = defaultdict(list)
        for spec, order in zip(specs, orders):
            groups[order].append(spec)

        for order, members in groups.items():
            if len(members) > 1 and any(
                member.execution_mode != ExecutionMode.PARALLEL for member in members
            ):
                raise ValidationError(
                    f"Steps sharing order {order} must all use parallel execution mode"
                )

    def _build_step(
        self,
        request_id: str,
        spec: StepSpec,
        order: int,
        requester_id: str,
        default_timeout: float,
    ) -> ApprovalStep:
        approver_name = spec.approver_name
        if spec.approver_id:
            if spec.approver_id == requester_id:
                raise ValidationError("Requester cannot approve their own request")
            approver_name = approver_name or self.directory.display_name(spec.approver_id)
        elif spec.approver_role:
            holders = [
                user for user in self.directory.users_with_role(spec.approver_role)
                if user.user_id != requester_id
            ]
            if not holders:
                raise ValidationError(
                    f"No approver other than the requester holds role '{spec.approver_role}'"
                )
        else:
            raise ValidationError("Each step needs an approver_id or an approver_role")

        return ApprovalStep(
            id=str(uuid.uuid4()),
            request_id=request_id,
            order=order,
            approver_role=spec.approver_role,
            approver_id=spec.approver_id,
            approver_name=approver_name,
            execution_mode=spec.execution_mode,
            timeout_hours=spec.timeout_hours or default_timeout,
            optional=spec.optional,
        )

    def _apply_policy(
        self,
        request_id: str,
        request_type: RequestType,
        requester_id: str,
        payload: object,
        resolved: List[ApprovalStep],
        default_timeout: float,
    ) -> List[str]:
        present_roles = {step.approver_role for step in resolved if step.approver_role}
        requester_roles = self.directory.roles_for(requester_id)
        next_order = max((step.order for step in resolved), default=-1) + 1
        applied: List[str] = []

        for rule in self.rules:
            if rule.request_type != request_type:
                continue
            value: Optional[float] = getattr(payload, rule.field, None)
            if value is None or value < rule.threshold:
                continue
            # Requesters are not routed to reviewers of their own department
            if rule.role in present_roles or rule.role in requester_roles:
                continue
            if self.directory.resolve_role(rule.role) is None:
                raise ValidationError(
                    f"Rule {rule.name} requires a '{rule.role}' approver but nobody holds that role"
                )

            resolved.append(ApprovalStep(
                id=str(uuid.uuid4()),
                request_id=request_id,
                order=next_order,
                approver_role=rule.role,
                execution_mode=ExecutionMode.SEQUENTIAL,
                timeout_hours=default_timeout,
                added_by_rule=rule.name,
            ))
            present_roles.add(rule.role)
            applied.append(rule.name)
            next_order += 1

        return applied
