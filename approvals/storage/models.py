"""SQLAlchemy models for workflow requests, steps, timeline, action receipts and proxy approvers."""

import datetime as dt
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    String, Integer, JSON, ForeignKey, UniqueConstraint,
    Text, DateTime, Date, Float, Index, Boolean
)
from sqlalchemy.orm import Mapped, mapped_column

from approvals.storage.db import Base


class WorkflowRequestRecord(Base):
    """Workflow request header. ``version`` guards every update."""

    __tablename__ = "workflow_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default", index=True)
    requester_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    requester_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    due_date: Mapped[Optional[dt.date]] = mapped_column(Date, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    submission_round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    applied_rules: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    return_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    submitted_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ApprovalStepRecord(Base):
    """One approver slot. ``position`` keeps the submitted graph order."""

    __tablename__ = "approval_steps"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    request_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("workflow_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    order: Mapped[int] = mapped_column("step_order", Integer, nullable=False)
    approver_role: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    approver_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    approver_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    execution_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="sequential")
    optional: Mapped[bool] = mapped_column("is_optional", Boolean, nullable=False, default=False)
    timeout_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    action_date: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acted_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    became_pending_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    added_by_rule: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    delegated_from: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    escalated_from: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    escalated_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_approval_steps_status_pending_since", "status", "became_pending_at"),
    )


class TimelineEntryRecord(Base):
    """Append-only timeline. ``sequence`` is the insertion order."""

    __tablename__ = "request_timeline"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    request_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("workflow_requests.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_request_timeline_request_sequence", "request_id", "sequence"),
    )


class ActionReceiptRecord(Base):
    """At-most-once key for actor actions within one submission round."""

    __tablename__ = "action_receipts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("workflow_requests.id", ondelete="CASCADE"), nullable=False
    )
    step_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    submission_round: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("request_id", "step_id", "action", "submission_round", name="uq_action_receipt"),
    )


class DelegateSettingRecord(Base):
    """Standing proxy approver, one per delegating user."""

    __tablename__ = "delegate_settings"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    delegate_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    delegate_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    start_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
