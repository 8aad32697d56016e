"""
Report Review Workflow Service: the single entry point for review operations.

Every mutating call follows the same path:
    1. load the active workflow snapshot through the repository
    2. run the pure engine function (permission + state checks live there)
    3. save with the version the caller read (compare-and-set)
    4. log the committed transition, then hand notification intents to the
       notifier; a delivery failure is logged and never undoes step 3

Design decisions:
    - Callers pass ``expected_version`` when they hold a view of the workflow;
      without it the freshly loaded version is used, so the compare-and-set
      still catches a writer that slipped in between load and save.
    - The resubmission policy (reopen | new_workflow) and the default
      rejection severity come from configuration, not from the caller.
    - The facade never retries on ConflictError.
"""

from __future__ import annotations

import logging
import uuid

from flask import current_app

from reportflow.core.exceptions import InvalidTransitionError, ValidationError
from reportflow.models.report import Report
from reportflow.services.notification import NotificationService
from reportflow.services.report_repository import SqlWorkflowRepository
from reportflow.services.workflow import checkpoints, delegation, engine
from reportflow.services.workflow.access import ActorContext, require_submitter_or_admin
from reportflow.services.workflow.bulk import BulkResult, run_bulk
from reportflow.services.workflow.chain import Assignee, ChainStage, build_workflow, rebuild_workflow
from reportflow.services.workflow.engine import (
    AddComment,
    Approve,
    ConditionalApprove,
    NewComment,
    Reject,
    RequestInformation,
    Skip,
    TransitionResult,
)
from reportflow.services.workflow.policy import weighted_approval
from reportflow.services.workflow.state import (
    ApprovalPolicy,
    ApprovalWorkflow,
    ReportPhase,
    WorkflowStatus,
    utcnow,
)
from reportflow.services.workflow.workload import analyze_workload

logger = logging.getLogger(__name__)

RESUBMIT_REOPEN = "reopen"
RESUBMIT_NEW_WORKFLOW = "new_workflow"

REVIEW_ACTIONS = ("APPROVE", "REJECT", "REQUEST_CHANGES", "SKIP")


def _review_action(action: str, comment, reasoning, skip_to_final_approval):
    kind = (action or "").strip().upper()
    if kind == "APPROVE":
        return Approve(comment=comment, reasoning=reasoning, skip_to_final_approval=skip_to_final_approval)
    if kind == "REJECT":
        return Reject(comment=comment, reasoning=reasoning)
    if kind == "REQUEST_CHANGES":
        return Reject(comment=comment, reasoning=reasoning, final=False)
    if kind == "SKIP":
        return Skip(reason=comment)
    raise ValidationError(
        f"Unknown review action '{action}'. Must be one of: {', '.join(REVIEW_ACTIONS)}",
        details={"action": action},
    )


class ReportWorkflowService:
    """Workflow facade. Stateless apart from its collaborators."""

    def __init__(self, repository=None, notifier=None, *,
                 resubmission_policy: str = RESUBMIT_REOPEN,
                 rejection_severity: str = engine.SEVERITY_CHANGES_REQUESTED,
                 clock=utcnow):
        self.repository = repository or SqlWorkflowRepository()
        self.notifier = notifier or NotificationService.emit
        self.resubmission_policy = resubmission_policy
        self.rejection_severity = rejection_severity
        self.clock = clock

    @classmethod
    def from_config(cls, config=None, **kwargs) -> ReportWorkflowService:
        config = config if config is not None else current_app.config
        return cls(
            resubmission_policy=config.get("REVIEW_RESUBMISSION_POLICY", RESUBMIT_REOPEN),
            rejection_severity=config.get("REVIEW_REJECTION_SEVERITY", engine.SEVERITY_CHANGES_REQUESTED),
            **kwargs,
        )

    # ── Plumbing ──────────────────────────────────────────────────────────

    def _commit(self, result: TransitionResult, loaded: ApprovalWorkflow, actor: ActorContext,
                expected_version: int | None, *, reviewed: bool = False, file_ids=None) -> ApprovalWorkflow:
        """Persist a transition result and fan out its notifications."""
        version = expected_version if expected_version is not None else loaded.version
        if result.mutated:
            saved = self.repository.save_workflow(
                result.workflow, version,
                report_phase=result.report_phase,
                comments=result.comments,
                reviewed=reviewed,
                file_ids=file_ids,
            )
        else:
            for comment in result.comments:
                self.repository.append_comment(loaded.report_id, comment, workflow_id=loaded.id)
            saved = result.workflow

        logger.info(
            "Report %s: %s by %s → workflow %s (v%s)",
            saved.report_id, result.action, actor.user_id, saved.status.value, saved.version,
            extra={
                "report_id": saved.report_id,
                "workflow_id": saved.id,
                "action": result.action,
                "actor_id": actor.user_id,
                "version": saved.version,
            },
        )
        self._dispatch(result.notifications)
        return saved

    def _dispatch(self, notifications) -> None:
        for intent in notifications:
            try:
                self.notifier(intent)
            except Exception:
                # Fire-and-forget: the transition is already committed
                logger.exception(
                    "Notification delivery failed for %s (%s)", intent.recipient_id, intent.kind,
                    extra={"report_id": intent.report_id, "step_id": intent.step_id},
                )
                self.repository.rollback()

    # ── Submission ────────────────────────────────────────────────────────

    def submit_report(self, actor: ActorContext, *, name: str, stages, role_assignments: dict,
                      project_id=None, description=None, category=None, file_ids=None,
                      policy: dict | None = None) -> dict:
        """Create a report and its initial workflow from an approval-chain template.

        Args:
            stages: list of dicts ``{role, weight, is_required, due_in_days, assigned_user_id}``.
            role_assignments: role → ``{"user_id", "display_name"}`` from the identity provider.
            policy: ``{"kind", "quorum", "required_weight"}``; unanimous when omitted.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required", details={"name": "required"})
        if not isinstance(stages, (list, tuple)):
            raise ValidationError("stages must be a list", details={"stages": "invalid"})

        assignments = {}
        for role, who in (role_assignments or {}).items():
            if isinstance(who, str):
                assignments[role] = Assignee(who)
            elif isinstance(who, dict) and who.get("user_id"):
                assignments[role] = Assignee(who["user_id"], who.get("display_name"))
            else:
                raise ValidationError(f"Invalid assignment for role '{role}'", details={"role": role})

        now = self.clock()
        report = Report(
            id=str(uuid.uuid4()),
            project_id=project_id,
            name=name,
            description=description,
            category=category,
            uploaded_by=actor.user_id,
            uploaded_by_name=actor.display_name,
            phase=ReportPhase.PENDING_REVIEW.value,
            file_ids=list(file_ids or []),
            submitted_at=now,
        )
        workflow = build_workflow(
            report.id,
            [ChainStage.from_dict(s) for s in stages],
            assignments,
            ApprovalPolicy.from_dict(policy),
            actor.user_id,
            now,
        )
        self.repository.add_report(report, workflow)

        logger.info(
            "Report %s submitted by %s with %d review steps",
            report.id, actor.user_id, len(workflow.steps),
            extra={
                "report_id": report.id,
                "workflow_id": workflow.id,
                "action": "submit",
                "actor_id": actor.user_id,
                "version": workflow.version,
                "project_id": project_id,
            },
        )
        first = workflow.current_step
        if first is not None:
            self._dispatch(engine.pending_review_notice(workflow, first))
        return {"report": report.to_dict(), "workflow": workflow.to_dict()}

    # ── Queries ───────────────────────────────────────────────────────────

    def get_report(self, report_id, *, include_internal: bool = True) -> dict:
        report = self.repository.get_report(report_id)
        workflow = self.repository.load_workflow(report_id)
        comments = self.repository.list_comments(report_id, include_internal=include_internal)
        return {
            "report": report.to_dict(),
            "workflow": workflow.to_dict(include_checkpoints=True),
            "comments": [c.to_dict() for c in comments],
        }

    def get_by_file(self, file_id) -> dict:
        return self.repository.find_by_file(file_id).to_dict()

    def get_pending_reviews(self, actor: ActorContext, project_id=None) -> list[dict]:
        """Reports whose current step is assigned to ``actor``."""
        items = []
        for report in self.repository.list_pending_for(actor.user_id, project_id):
            workflow = self.repository.load_workflow(report.id)
            current = workflow.current_step
            if current is None or current.assigned_user_id != actor.user_id:
                continue
            items.append({
                "report": report.to_dict(),
                "workflow_id": workflow.id,
                "version": workflow.version,
                "step": current.to_dict(),
            })
        return items

    def get_my_reports(self, actor: ActorContext, project_id=None, phase=None) -> list[dict]:
        if phase is not None:
            phase = ReportPhase(phase).value
        return [r.to_dict() for r in self.repository.list_for_uploader(actor.user_id, project_id, phase)]

    def get_weighted_approval(self, report_id) -> dict:
        workflow = self.repository.load_workflow(report_id)
        return weighted_approval(workflow.steps, workflow.policy).to_dict()

    def get_reviewer_workload(self, project_id=None, reviewer_id=None, *, now=None) -> list[dict]:
        workflows, names = self.repository.active_workflows(project_id)
        rows = analyze_workload(workflows, report_names=names, reviewer_id=reviewer_id, now=now or self.clock())
        return [r.to_dict() for r in rows]

    # ── Step transitions ──────────────────────────────────────────────────

    def _apply(self, actor, report_id, action, *, step_id=None, expected_version=None):
        loaded = self.repository.load_workflow(report_id)
        if step_id is None:
            engine.ensure_not_terminal(loaded, engine.action_name(action))
            current = loaded.current_step
            if current is None:
                raise InvalidTransitionError(engine.action_name(action), loaded.status.value,
                                             "workflow has no current step")
            step_id = current.id
        result = engine.apply_action(
            loaded, step_id, actor, action,
            expected_version=expected_version,
            now=self.clock(),
            rejection_severity=self.rejection_severity,
        )
        return self._commit(result, loaded, actor, expected_version, reviewed=result.mutated)

    def review(self, actor: ActorContext, report_id, action: str, *, comment=None, reasoning=None,
               skip_to_final_approval: bool = False, step_id=None, expected_version=None) -> ApprovalWorkflow:
        """Apply APPROVE / REJECT / REQUEST_CHANGES / SKIP to the current step."""
        return self._apply(
            actor, report_id, _review_action(action, comment, reasoning, skip_to_final_approval),
            step_id=step_id, expected_version=expected_version,
        )

    def request_information(self, actor: ActorContext, report_id, requested_from_user_id,
                            information_needed, *, deadline=None, step_id=None,
                            expected_version=None) -> ApprovalWorkflow:
        return self._apply(
            actor, report_id,
            RequestInformation(requested_from_user_id, information_needed, deadline),
            step_id=step_id, expected_version=expected_version,
        )

    def conditional_approve(self, actor: ActorContext, report_id, conditions, comment, *,
                            step_id=None, expected_version=None) -> ApprovalWorkflow:
        if not isinstance(conditions, (list, tuple)):
            raise ValidationError("conditions must be a list", details={"conditions": "invalid"})
        return self._apply(
            actor, report_id, ConditionalApprove(tuple(conditions), comment),
            step_id=step_id, expected_version=expected_version,
        )

    def add_comment(self, actor: ActorContext, report_id, content, *, step_id=None,
                    is_internal: bool = False, reply_to=None) -> ApprovalWorkflow:
        loaded = self.repository.load_workflow(report_id)
        result = engine.add_comment(loaded, actor, AddComment(content, is_internal, reply_to), step_id=step_id)
        return self._commit(result, loaded, actor, None)

    def start_review(self, actor: ActorContext, step_id, *, expected_version=None) -> ApprovalWorkflow:
        loaded = self.repository.load_workflow_by_step(step_id)
        result = engine.start_review(loaded, step_id, actor, expected_version=expected_version, now=self.clock())
        return self._commit(result, loaded, actor, expected_version)

    # ── Workflow lifecycle ────────────────────────────────────────────────

    def cancel_workflow(self, actor: ActorContext, report_id, reason=None, *,
                        expected_version=None) -> ApprovalWorkflow:
        loaded = self.repository.load_workflow(report_id)
        result = engine.cancel_workflow(loaded, actor, reason, expected_version=expected_version, now=self.clock())
        return self._commit(result, loaded, actor, expected_version)

    def resubmit_workflow(self, actor: ActorContext, report_id, *, file_ids=None, from_step_number: int = 1,
                          expected_version=None) -> ApprovalWorkflow:
        """Put a report with changes requested back into review.

        ``reopen`` resets the same workflow from ``from_step_number``;
        ``new_workflow`` retires it and starts a fresh one with the same chain.
        """
        report = self.repository.get_report(report_id)
        loaded = self.repository.load_workflow(report_id)
        if report.phase != ReportPhase.CHANGES_REQUESTED.value:
            raise InvalidTransitionError("resubmit", report.phase, "report has no changes requested")
        require_submitter_or_admin(actor, report.uploaded_by, "resubmit")
        if file_ids is not None and not isinstance(file_ids, (list, tuple)):
            raise ValidationError("file_ids must be a list", details={"file_ids": "invalid"})

        now = self.clock()
        if self.resubmission_policy == RESUBMIT_NEW_WORKFLOW:
            engine.check_version(loaded, expected_version)
            if not (loaded.status == WorkflowStatus.REJECTED and loaded.resubmittable):
                raise InvalidTransitionError("resubmit", loaded.status.value,
                                             "only workflows with changes requested can be resubmitted")
            fresh = rebuild_workflow(loaded, now)
            note = NewComment(actor.user_id, actor.display_name, "Report resubmitted for review")
            saved = self.repository.replace_workflow(
                loaded, expected_version if expected_version is not None else loaded.version, fresh,
                report_phase=ReportPhase.PENDING_REVIEW, comments=(note,), file_ids=file_ids,
            )
            logger.info(
                "Report %s resubmitted by %s as new workflow %s",
                report_id, actor.user_id, saved.id,
                extra={
                    "report_id": report_id,
                    "workflow_id": saved.id,
                    "action": "resubmit",
                    "actor_id": actor.user_id,
                    "version": saved.version,
                },
            )
            self._dispatch(engine.pending_review_notice(saved, saved.current_step))
            return saved

        result = engine.reopen_workflow(
            loaded, actor, from_step_number=from_step_number, expected_version=expected_version, now=now,
        )
        return self._commit(result, loaded, actor, expected_version, file_ids=file_ids)

    # ── Delegation & escalation ───────────────────────────────────────────

    def delegate_review(self, actor: ActorContext, step_id, delegate_to_user_id, reason, *,
                        delegate_to_name=None, expected_version=None) -> ApprovalWorkflow:
        loaded = self.repository.load_workflow_by_step(step_id)
        result = delegation.delegate_review(
            loaded, step_id, actor, delegate_to_user_id, reason,
            delegate_to_name=delegate_to_name, expected_version=expected_version, now=self.clock(),
        )
        return self._commit(result, loaded, actor, expected_version)

    def escalate_review(self, actor: ActorContext, report_id, escalation_reason, escalate_to_user_id, *,
                        escalate_to_name=None, weight=1, expected_version=None) -> ApprovalWorkflow:
        loaded = self.repository.load_workflow(report_id)
        result = delegation.escalate_review(
            loaded, actor, escalation_reason, escalate_to_user_id,
            escalate_to_name=escalate_to_name, weight=weight,
            expected_version=expected_version, now=self.clock(),
        )
        return self._commit(result, loaded, actor, expected_version)

    def set_step_due_date(self, actor: ActorContext, step_id, due_date, *,
                          expected_version=None) -> ApprovalWorkflow:
        loaded = self.repository.load_workflow_by_step(step_id)
        result = delegation.set_step_due_date(loaded, step_id, actor, due_date, expected_version=expected_version)
        return self._commit(result, loaded, actor, expected_version)

    # ── Checkpoints ───────────────────────────────────────────────────────

    def create_workflow_version(self, actor: ActorContext, report_id, checkpoint_note, *,
                                expected_version=None) -> dict:
        """Returns the new checkpoint's ``sequence`` and ``note``."""
        loaded = self.repository.load_workflow(report_id)
        result, checkpoint = checkpoints.create_workflow_version(
            loaded, actor, checkpoint_note, expected_version=expected_version, now=self.clock(),
        )
        saved = self._commit(result, loaded, actor, expected_version)
        return {**checkpoint.to_dict(include_steps=False), "version": saved.version}

    def return_to_step(self, actor: ActorContext, report_id, return_to_step_id, reason, *,
                       expected_version=None) -> ApprovalWorkflow:
        loaded = self.repository.load_workflow(report_id)
        result = checkpoints.return_to_step(
            loaded, return_to_step_id, actor, reason, expected_version=expected_version, now=self.clock(),
        )
        return self._commit(result, loaded, actor, expected_version)

    # ── Bulk ──────────────────────────────────────────────────────────────

    def bulk_approve(self, actor: ActorContext, report_ids, comment=None) -> BulkResult:
        return run_bulk(
            report_ids, lambda rid: self.review(actor, rid, "APPROVE", comment=comment),
            action="approve",
        )

    def bulk_reject(self, actor: ActorContext, report_ids, reason) -> BulkResult:
        return run_bulk(
            report_ids, lambda rid: self.review(actor, rid, "REJECT", comment=reason),
            action="reject",
        )

    def bulk_reassign(self, actor: ActorContext, report_ids, reassign_to_user_id, reason=None,
                      reassign_to_name=None) -> BulkResult:
        reason = (reason or "").strip() or "Bulk reassignment"

        def _reassign(report_id):
            workflow = self.repository.load_workflow(report_id)
            engine.ensure_not_terminal(workflow, "reassign")
            current = workflow.current_step
            if current is None:
                raise InvalidTransitionError("reassign", workflow.status.value, "workflow has no current step")
            self.delegate_review(actor, current.id, reassign_to_user_id, reason,
                                 delegate_to_name=reassign_to_name)

        return run_bulk(report_ids, _reassign, action="reassign")

    # ── Notifications ─────────────────────────────────────────────────────

    @staticmethod
    def list_notifications(actor: ActorContext, *, report_id=None, unread_only=False, limit=50, offset=0):
        return NotificationService.list_for_recipient(
            actor.user_id, report_id=report_id, unread_only=unread_only, limit=limit, offset=offset,
        )

    @staticmethod
    def unread_notification_count(actor: ActorContext) -> int:
        return NotificationService.unread_count(actor.user_id)

    @staticmethod
    def mark_notification_read(actor: ActorContext, notification_id):
        return NotificationService.mark_read(notification_id, actor.user_id)

    @staticmethod
    def mark_all_notifications_read(actor: ActorContext) -> int:
        return NotificationService.mark_all_read(actor.user_id)

    @staticmethod
    def clear_notifications(actor: ActorContext) -> int:
        return NotificationService.clear_for_recipient(actor.user_id)
