"""
Report review domain models.

Models:
    - Report: uploaded document under review, mirrors its workflow's phase
    - ReportWorkflow: approval workflow header with the optimistic-concurrency version
    - ApprovalStepRecord: one row per review step
    - WorkflowCheckpointRecord: append-only workflow snapshots
    - ReportComment: threaded remarks on a report / step
"""

import uuid
from datetime import datetime, timezone

from reportflow.models import db


__all__ = [
    "Report",
    "ReportWorkflow",
    "ApprovalStepRecord",
    "WorkflowCheckpointRecord",
    "ReportComment",
]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. Report
# ═════════════════════════════════════════════════════════════════════════════

class Report(db.Model):
    """
    A submitted document under review.

    ``phase`` is the report-facing lifecycle and is written only by the
    repository after a committed workflow transition.
    """

    __tablename__ = "reports"
    __table_args__ = (
        db.Index("idx_report_project_phase", "project_id", "phase"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(db.String(64), nullable=True, index=True)
    name = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(100), nullable=True)

    uploaded_by = db.Column(db.String(64), nullable=False, index=True)
    uploaded_by_name = db.Column(db.String(255), nullable=True)

    phase = db.Column(
        db.String(30), nullable=False, default="pending_review",
        comment="draft | pending_review | in_review | changes_requested | approved | rejected | cancelled",
    )
    active_workflow_id = db.Column(db.String(36), nullable=True)
    current_reviewer_id = db.Column(db.String(64), nullable=True, index=True)
    next_reviewer_id = db.Column(db.String(64), nullable=True)
    file_ids = db.Column(db.JSON, default=list, comment="Opaque ids in external file storage")

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_review_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "uploaded_by": self.uploaded_by,
            "uploaded_by_name": self.uploaded_by_name,
            "phase": self.phase,
            "active_workflow_id": self.active_workflow_id,
            "current_reviewer_id": self.current_reviewer_id,
            "next_reviewer_id": self.next_reviewer_id,
            "file_ids": list(self.file_ids or []),
            "submitted_at": _iso(self.submitted_at),
            "last_review_at": _iso(self.last_review_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Report {self.id[:8]} {self.phase}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ReportWorkflow
# ═════════════════════════════════════════════════════════════════════════════

class ReportWorkflow(db.Model):
    """
    Workflow header. Only one workflow per report is active at a time;
    retired workflows stay for audit.

    ``version`` is bumped by a compare-and-set UPDATE on every mutating
    operation, never through the ORM attribute.
    """

    __tablename__ = "report_workflows"
    __table_args__ = (
        db.Index("idx_rwf_report_active", "report_id", "is_active"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    report_id = db.Column(
        db.String(36), db.ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    status = db.Column(
        db.String(20), nullable=False, default="in_progress",
        comment="in_progress | approved | rejected | cancelled",
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    policy = db.Column(db.JSON, nullable=False, default=dict, comment="{kind, quorum, required_weight}")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    resubmittable = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)
    submitted_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    last_escalation_at = db.Column(db.DateTime(timezone=True), nullable=True)

    steps = db.relationship(
        "ApprovalStepRecord", backref="workflow", lazy="select",
        order_by="ApprovalStepRecord.step_number", cascade="all, delete-orphan",
    )
    checkpoints = db.relationship(
        "WorkflowCheckpointRecord", backref="workflow", lazy="select",
        order_by="WorkflowCheckpointRecord.sequence", cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<ReportWorkflow {self.id[:8]} v{self.version} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. ApprovalStepRecord
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalStepRecord(db.Model):
    """One review stage. Delegation/escalation history is append-only JSON."""

    __tablename__ = "report_approval_steps"
    __table_args__ = (
        db.Index("idx_ras_assignee_status", "assigned_user_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workflow_id = db.Column(
        db.String(36), db.ForeignKey("report_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_number = db.Column(db.Integer, nullable=False)
    required_role = db.Column(db.String(50), nullable=True)
    assigned_user_id = db.Column(db.String(64), nullable=True)
    assigned_user_name = db.Column(db.String(255), nullable=True)
    weight = db.Column(db.Float, nullable=False, default=1)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | approved | rejected | skipped | delegated | escalated",
    )
    origin = db.Column(db.String(20), nullable=False, default="chain", comment="chain | escalation")

    comment = db.Column(db.Text, nullable=True)
    reasoning = db.Column(db.Text, nullable=True)
    conditions = db.Column(db.JSON, default=list)
    decided_by = db.Column(db.String(64), nullable=True)
    decided_by_name = db.Column(db.String(255), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    became_current_at = db.Column(db.DateTime(timezone=True), nullable=True)
    review_started_at = db.Column(db.DateTime(timezone=True), nullable=True)

    delegations = db.Column(db.JSON, default=list)
    escalations = db.Column(db.JSON, default=list)

    def __repr__(self):
        return f"<ApprovalStepRecord #{self.step_number} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. WorkflowCheckpointRecord
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowCheckpointRecord(db.Model):
    """Immutable snapshot. Rows are inserted, never updated."""

    __tablename__ = "workflow_checkpoints"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "sequence", name="uq_wcp_workflow_sequence"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workflow_id = db.Column(
        db.String(36), db.ForeignKey("report_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    sequence = db.Column(db.Integer, nullable=False)
    note = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False)
    steps = db.Column(db.JSON, nullable=False, default=list, comment="Step list as of the snapshot")
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def __repr__(self):
        return f"<WorkflowCheckpointRecord {self.sequence}: {self.note[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. ReportComment
# ═════════════════════════════════════════════════════════════════════════════

class ReportComment(db.Model):
    """Threaded remark. Comments never change workflow status."""

    __tablename__ = "report_comments"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    report_id = db.Column(
        db.String(36), db.ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    workflow_id = db.Column(db.String(36), nullable=True)
    step_id = db.Column(db.String(36), nullable=True)
    author_id = db.Column(db.String(64), nullable=False)
    author_name = db.Column(db.String(255), nullable=True)
    content = db.Column(db.Text, nullable=False)
    is_internal = db.Column(db.Boolean, nullable=False, default=False)
    parent_comment_id = db.Column(
        db.String(36), db.ForeignKey("report_comments.id", ondelete="SET NULL"), nullable=True,
    )
    thread_depth = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "report_id": self.report_id,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "content": self.content,
            "is_internal": self.is_internal,
            "parent_comment_id": self.parent_comment_id,
            "thread_depth": self.thread_depth,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ReportComment {self.id[:8]} by {self.author_id}>"
