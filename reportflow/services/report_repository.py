"""
Report review repository.

Maps workflow snapshots (``services/workflow/state.py``) to the
Flask-SQLAlchemy tables and back. ``save_workflow`` is the only write path
for workflow state and enforces optimistic concurrency with a
compare-and-set UPDATE on ``report_workflows.version``:

    UPDATE report_workflows SET ..., version = :expected + 1
     WHERE id = :id AND version = :expected

Zero affected rows → ConflictError; the caller re-reads and retries.
"""

import logging
from dataclasses import replace

from sqlalchemy import select, update

from reportflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from reportflow.models import db
from reportflow.models.report import (
    ApprovalStepRecord,
    Report,
    ReportComment,
    ReportWorkflow,
    WorkflowCheckpointRecord,
)
from reportflow.services.workflow.state import (
    ApprovalPolicy,
    ApprovalStep,
    ApprovalWorkflow,
    DelegationRecord,
    EscalationRecord,
    ReportPhase,
    WorkflowCheckpoint,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

REVIEWABLE_PHASES = (ReportPhase.PENDING_REVIEW.value, ReportPhase.IN_REVIEW.value)
CLOSED_PHASES = (ReportPhase.APPROVED.value, ReportPhase.REJECTED.value, ReportPhase.CANCELLED.value)


class WorkflowRepository:
    """Storage contract the review service is written against."""

    def get_report(self, report_id):
        raise NotImplementedError

    def load_workflow(self, report_id) -> ApprovalWorkflow:
        raise NotImplementedError

    def save_workflow(self, workflow, expected_version, **kwargs) -> ApprovalWorkflow:
        raise NotImplementedError

    def append_comment(self, report_id, comment, workflow_id=None, commit=True):
        raise NotImplementedError

    def append_version(self, workflow_id, checkpoint):
        raise NotImplementedError


# ═════════════════════════════════════════════════════════════════════════════
# Row ↔ snapshot mapping
# ═════════════════════════════════════════════════════════════════════════════

def _step_from_row(row: ApprovalStepRecord) -> ApprovalStep:
    return ApprovalStep(
        id=row.id,
        step_number=row.step_number,
        required_role=row.required_role,
        assigned_user_id=row.assigned_user_id,
        assigned_user_name=row.assigned_user_name,
        weight=row.weight if row.weight is not None else 1,
        is_required=bool(row.is_required),
        status=row.status,
        origin=row.origin or "chain",
        comment=row.comment,
        reasoning=row.reasoning,
        conditions=tuple(row.conditions or ()),
        decided_by=row.decided_by,
        decided_by_name=row.decided_by_name,
        decided_at=as_utc(row.decided_at),
        due_date=as_utc(row.due_date),
        became_current_at=as_utc(row.became_current_at),
        review_started_at=as_utc(row.review_started_at),
        delegations=tuple(DelegationRecord.from_dict(d) for d in row.delegations or ()),
        escalations=tuple(EscalationRecord.from_dict(e) for e in row.escalations or ()),
    )


def _apply_step(row: ApprovalStepRecord, step: ApprovalStep) -> None:
    row.step_number = step.step_number
    row.required_role = step.required_role
    row.assigned_user_id = step.assigned_user_id
    row.assigned_user_name = step.assigned_user_name
    row.weight = step.weight
    row.is_required = step.is_required
    row.status = step.status.value
    row.origin = step.origin.value
    row.comment = step.comment
    row.reasoning = step.reasoning
    row.conditions = list(step.conditions)
    row.decided_by = step.decided_by
    row.decided_by_name = step.decided_by_name
    row.decided_at = step.decided_at
    row.due_date = step.due_date
    row.became_current_at = step.became_current_at
    row.review_started_at = step.review_started_at
    row.delegations = [d.to_dict() for d in step.delegations]
    row.escalations = [e.to_dict() for e in step.escalations]


def _checkpoint_from_row(row: WorkflowCheckpointRecord) -> WorkflowCheckpoint:
    return WorkflowCheckpoint(
        sequence=row.sequence,
        note=row.note,
        status=row.status,
        steps=tuple(ApprovalStep.from_dict(s) for s in row.steps or ()),
        created_by=row.created_by,
        created_at=as_utc(row.created_at),
    )


def _workflow_from_row(row: ReportWorkflow) -> ApprovalWorkflow:
    return ApprovalWorkflow(
        id=row.id,
        report_id=row.report_id,
        steps=tuple(_step_from_row(s) for s in sorted(row.steps, key=lambda s: s.step_number)),
        status=row.status,
        version=row.version,
        policy=ApprovalPolicy.from_dict(row.policy),
        submitted_by=row.submitted_by,
        created_at=as_utc(row.created_at),
        completed_at=as_utc(row.completed_at),
        checkpoints=tuple(_checkpoint_from_row(c) for c in sorted(row.checkpoints, key=lambda c: c.sequence)),
        resubmittable=bool(row.resubmittable),
        notes=row.notes,
        last_escalation_at=as_utc(row.last_escalation_at),
    )


# ═════════════════════════════════════════════════════════════════════════════
# SQLAlchemy implementation
# ═════════════════════════════════════════════════════════════════════════════

class SqlWorkflowRepository(WorkflowRepository):
    """Flask-SQLAlchemy backed repository. One commit per mutating call."""

    # ── Reads ─────────────────────────────────────────────────────────────

    def get_report(self, report_id) -> Report:
        report = db.session.get(Report, report_id)
        if report is None:
            raise NotFoundError("Report", report_id)
        return report

    def _active_row(self, report: Report) -> ReportWorkflow:
        row = db.session.get(ReportWorkflow, report.active_workflow_id) if report.active_workflow_id else None
        if row is None:
            raise NotFoundError("ApprovalWorkflow", report.id)
        return row

    def load_workflow(self, report_id) -> ApprovalWorkflow:
        return _workflow_from_row(self._active_row(self.get_report(report_id)))

    def load_workflow_by_step(self, step_id) -> ApprovalWorkflow:
        step = db.session.get(ApprovalStepRecord, step_id)
        if step is None:
            raise NotFoundError("ApprovalStep", step_id)
        return _workflow_from_row(step.workflow)

    def list_workflows(self, report_id):
        """Every workflow of a report, oldest first (retired ones included)."""
        stmt = (
            select(ReportWorkflow)
            .where(ReportWorkflow.report_id == report_id)
            .order_by(ReportWorkflow.created_at)
        )
        return [_workflow_from_row(r) for r in db.session.execute(stmt).scalars().all()]

    def active_workflows(self, project_id=None):
        """Active workflow snapshots plus a report id → name map."""
        stmt = (
            select(ReportWorkflow, Report.name)
            .join(Report, Report.id == ReportWorkflow.report_id)
            .where(ReportWorkflow.is_active.is_(True))
        )
        if project_id:
            stmt = stmt.where(Report.project_id == project_id)
        rows = db.session.execute(stmt).all()
        return [_workflow_from_row(wf) for wf, _ in rows], {wf.report_id: name for wf, name in rows}

    def list_pending_for(self, reviewer_id, project_id=None):
        q = Report.query.filter(
            Report.current_reviewer_id == reviewer_id,
            Report.phase.in_(REVIEWABLE_PHASES),
        )
        if project_id:
            q = q.filter_by(project_id=project_id)
        return q.order_by(Report.submitted_at.asc()).all()

    def list_for_uploader(self, uploader_id, project_id=None, phase=None):
        q = Report.query.filter_by(uploaded_by=uploader_id)
        if project_id:
            q = q.filter_by(project_id=project_id)
        if phase:
            q = q.filter_by(phase=phase)
        return q.order_by(Report.created_at.desc()).all()

    def find_by_file(self, file_id):
        # JSON containment is not portable across SQLite/PostgreSQL
        for report in Report.query.filter(Report.file_ids.isnot(None)).all():
            if file_id in (report.file_ids or []):
                return report
        raise NotFoundError("Report", f"file:{file_id}")

    def get_comment(self, comment_id) -> ReportComment:
        comment = db.session.get(ReportComment, comment_id)
        if comment is None:
            raise NotFoundError("ReportComment", comment_id)
        return comment

    def list_comments(self, report_id, include_internal=True):
        q = ReportComment.query.filter_by(report_id=report_id)
        if not include_internal:
            q = q.filter_by(is_internal=False)
        return q.order_by(ReportComment.created_at.asc()).all()

    # ── Writes ────────────────────────────────────────────────────────────

    def add_report(self, report: Report, workflow: ApprovalWorkflow, comments=()) -> Report:
        """Insert a new report and its first workflow in one transaction."""
        report.active_workflow_id = workflow.id
        db.session.add(report)
        db.session.flush()
        self._insert_workflow(workflow)
        self._update_pointers(report, workflow)
        for c in comments:
            self.append_comment(report.id, c, workflow_id=workflow.id, commit=False)
        db.session.commit()
        return report

    def _insert_workflow(self, workflow: ApprovalWorkflow) -> ReportWorkflow:
        row = ReportWorkflow(
            id=workflow.id,
            report_id=workflow.report_id,
            status=workflow.status.value,
            version=workflow.version,
            policy=workflow.policy.to_dict(),
            is_active=True,
            resubmittable=workflow.resubmittable,
            notes=workflow.notes,
            submitted_by=workflow.submitted_by,
            created_at=workflow.created_at or utcnow(),
            completed_at=workflow.completed_at,
        )
        db.session.add(row)
        db.session.flush()
        for step in workflow.steps:
            step_row = ApprovalStepRecord(id=step.id, workflow_id=workflow.id)
            _apply_step(step_row, step)
            db.session.add(step_row)
        for checkpoint in workflow.checkpoints:
            self.append_version(workflow.id, checkpoint)
        db.session.flush()
        return row

    def _compare_and_set(self, workflow: ApprovalWorkflow, expected_version: int, **values) -> None:
        stmt = (
            update(ReportWorkflow)
            .where(ReportWorkflow.id == workflow.id, ReportWorkflow.version == expected_version)
            .values(version=expected_version + 1, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(stmt).rowcount == 0:
            db.session.rollback()
            actual = db.session.execute(
                select(ReportWorkflow.version).where(ReportWorkflow.id == workflow.id)
            ).scalar_one_or_none()
            if actual is None:
                raise NotFoundError("ApprovalWorkflow", workflow.id)
            logger.warning(
                "Version conflict on workflow %s: expected v%s, stored v%s",
                workflow.id, expected_version, actual,
                extra={"report_id": workflow.report_id, "workflow_id": workflow.id, "version": actual},
            )
            raise ConflictError("ApprovalWorkflow", workflow.id, expected_version, actual)

    def save_workflow(self, workflow: ApprovalWorkflow, expected_version: int, *,
                      report_phase=None, comments=(), reviewed=False, file_ids=None) -> ApprovalWorkflow:
        """Persist a new snapshot if nobody else wrote since ``expected_version``.

        Steps are upserted, unseen checkpoints appended, and report pointers,
        phase and ``file_ids`` updated in the same transaction.

        Returns:
            The snapshot carrying its new version.
        """
        self._compare_and_set(
            workflow, expected_version,
            status=workflow.status.value,
            policy=workflow.policy.to_dict(),
            resubmittable=workflow.resubmittable,
            notes=workflow.notes,
            completed_at=workflow.completed_at,
            last_escalation_at=workflow.last_escalation_at,
        )

        existing = {
            r.id: r for r in db.session.execute(
                select(ApprovalStepRecord).where(ApprovalStepRecord.workflow_id == workflow.id)
            ).scalars().all()
        }
        for step in workflow.steps:
            row = existing.get(step.id)
            if row is None:
                row = ApprovalStepRecord(id=step.id, workflow_id=workflow.id)
                db.session.add(row)
            _apply_step(row, step)

        stored = set(db.session.execute(
            select(WorkflowCheckpointRecord.sequence).where(WorkflowCheckpointRecord.workflow_id == workflow.id)
        ).scalars().all())
        for checkpoint in workflow.checkpoints:
            if checkpoint.sequence not in stored:
                self.append_version(workflow.id, checkpoint)

        report = self.get_report(workflow.report_id)
        if report.active_workflow_id == workflow.id:
            self._update_pointers(report, workflow, report_phase, reviewed)
        if file_ids is not None:
            report.file_ids = list(file_ids)
        for c in comments:
            self.append_comment(workflow.report_id, c, workflow_id=workflow.id, commit=False)

        db.session.commit()
        return replace(workflow, version=expected_version + 1)

    def replace_workflow(self, previous: ApprovalWorkflow, expected_version: int,
                         fresh: ApprovalWorkflow, *, report_phase=None, comments=(), file_ids=None) -> ApprovalWorkflow:
        """Retire ``previous`` and make ``fresh`` the report's active workflow."""
        self._compare_and_set(previous, expected_version, is_active=False)
        self._insert_workflow(fresh)
        report = self.get_report(previous.report_id)
        report.active_workflow_id = fresh.id
        if file_ids is not None:
            report.file_ids = list(file_ids)
        self._update_pointers(report, fresh, report_phase)
        for c in comments:
            self.append_comment(fresh.report_id, c, workflow_id=fresh.id, commit=False)
        db.session.commit()
        return fresh

    def _update_pointers(self, report: Report, workflow: ApprovalWorkflow, report_phase=None, reviewed=False):
        current = workflow.current_step
        nxt = workflow.next_step
        report.current_reviewer_id = current.assigned_user_id if current else None
        report.next_reviewer_id = nxt.assigned_user_id if nxt else None
        if report_phase is not None:
            report.phase = ReportPhase(report_phase).value
        if reviewed:
            report.last_review_at = utcnow()
        report.completed_at = workflow.completed_at if report.phase in CLOSED_PHASES else None

    def append_comment(self, report_id, comment, workflow_id=None, commit=True) -> ReportComment:
        """Append a comment; replies are threaded one level below their parent."""
        depth = 0
        if comment.reply_to:
            parent = self.get_comment(comment.reply_to)
            if parent.report_id != report_id:
                raise ValidationError("Cannot reply to a comment of another report",
                                      details={"reply_to": comment.reply_to})
            depth = parent.thread_depth + 1
        row = ReportComment(
            report_id=report_id,
            workflow_id=workflow_id,
            step_id=comment.step_id,
            author_id=comment.author_id,
            author_name=comment.author_name,
            content=comment.content,
            is_internal=comment.is_internal,
            parent_comment_id=comment.reply_to,
            thread_depth=depth,
        )
        db.session.add(row)
        if commit:
            db.session.commit()
        return row

    def append_version(self, workflow_id, checkpoint: WorkflowCheckpoint) -> WorkflowCheckpointRecord:
        row = WorkflowCheckpointRecord(
            workflow_id=workflow_id,
            sequence=checkpoint.sequence,
            note=checkpoint.note,
            status=checkpoint.status.value,
            steps=[s.to_dict() for s in checkpoint.steps],
            created_by=checkpoint.created_by,
            created_at=checkpoint.created_at,
        )
        db.session.add(row)
        return row

    def rollback(self) -> None:
        db.session.rollback()
