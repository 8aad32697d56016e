"""
Review Workflow: Step Transition Engine.

Applies one actor action to the current step of a workflow snapshot and
recomputes the workflow status. Pure: takes a snapshot, returns a
``TransitionResult`` holding the new snapshot plus the comments and
notification intents the caller must persist/emit. Version bumping and
persistence are the repository's job.

Actions (one dataclass per kind, dispatched by type):
    Approve, Reject, Skip, RequestInformation, ConditionalApprove, AddComment

Usage:
    from reportflow.services.workflow.engine import Approve, apply_action

    result = apply_action(workflow, step_id, actor, Approve(comment="LGTM"),
                          expected_version=3)
    result.workflow.status      # WorkflowStatus.IN_PROGRESS / APPROVED / ...
    result.notifications        # who must be told what

Edge-case policy:
    - terminal workflow               → WorkflowTerminalError
    - step is not the current step    → InvalidTransitionError
    - expected_version mismatch       → ConflictError
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from reportflow.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    ValidationError,
    WorkflowTerminalError,
)
from reportflow.services.workflow.access import (
    ActorContext,
    require_admin,
    require_assignee_or_admin,
    require_submitter_or_admin,
)
from reportflow.services.workflow.policy import has_rejection, is_satisfied
from reportflow.services.workflow.state import (
    ApprovalStep,
    ApprovalWorkflow,
    ReportPhase,
    StepStatus,
    WorkflowStatus,
    utcnow,
)

SEVERITY_CHANGES_REQUESTED = "changes_requested"
SEVERITY_REJECTED = "rejected"

THRESHOLD_NOT_REACHED = "approval threshold not reached"


# ═════════════════════════════════════════════════════════════════════════════
# Outputs
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class NewComment:
    """A comment the caller must append to the report's thread."""
    author_id: str
    author_name: str | None
    content: str
    step_id: str | None = None
    is_internal: bool = False
    reply_to: str | None = None


@dataclass(frozen=True)
class NotificationIntent:
    """Engine decision that ``recipient_id`` must be told about a report event."""
    recipient_id: str
    report_id: str
    kind: str
    message: str
    step_id: str | None = None


@dataclass(frozen=True)
class TransitionResult:
    action: str
    workflow: ApprovalWorkflow
    report_phase: ReportPhase | None = None
    comments: tuple[NewComment, ...] = ()
    notifications: tuple[NotificationIntent, ...] = ()
    # False for actions that only append comments/notifications
    mutated: bool = True


# ═════════════════════════════════════════════════════════════════════════════
# Actions
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Approve:
    comment: str | None = None
    reasoning: str | None = None
    skip_to_final_approval: bool = False


@dataclass(frozen=True)
class Reject:
    comment: str
    reasoning: str | None = None
    # None → use the configured rejection severity
    final: bool | None = None


@dataclass(frozen=True)
class Skip:
    reason: str


@dataclass(frozen=True)
class RequestInformation:
    requested_from_user_id: str
    information_needed: str
    deadline: datetime | None = None


@dataclass(frozen=True)
class ConditionalApprove:
    conditions: tuple[str, ...]
    comment: str


@dataclass(frozen=True)
class AddComment:
    content: str
    is_internal: bool = False
    reply_to: str | None = None


# ═════════════════════════════════════════════════════════════════════════════
# Guards
# ═════════════════════════════════════════════════════════════════════════════

def check_version(workflow: ApprovalWorkflow, expected_version: int | None) -> None:
    if expected_version is not None and expected_version != workflow.version:
        raise ConflictError("ApprovalWorkflow", workflow.id, expected_version, workflow.version)


def ensure_not_terminal(workflow: ApprovalWorkflow, action: str) -> None:
    if workflow.is_terminal:
        raise WorkflowTerminalError(workflow.id, workflow.status.value, action)


def current_step_for(workflow: ApprovalWorkflow, step_id: str, action: str) -> ApprovalStep:
    """Return the step if it is the current pending step, else raise."""
    ensure_not_terminal(workflow, action)
    step = workflow.step(step_id)
    current = workflow.current_step
    if current is None or current.id != step.id:
        raise InvalidTransitionError(
            action, step.status.value,
            f"step {step.step_number} is not the current step"
            + (f" (current is step {current.step_number})" if current else ""),
        )
    return step


def _required_text(value: str | None, field_name: str, action: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required to {action}", details={field_name: "required"})
    return text


# ═════════════════════════════════════════════════════════════════════════════
# Advancement
# ═════════════════════════════════════════════════════════════════════════════

def pending_review_notice(workflow: ApprovalWorkflow, step: ApprovalStep) -> tuple[NotificationIntent, ...]:
    if not step.assigned_user_id:
        return ()
    return (NotificationIntent(
        recipient_id=step.assigned_user_id,
        report_id=workflow.report_id,
        step_id=step.id,
        kind="pending_review",
        message=f"Report is awaiting your review (step {step.step_number})",
    ),)


def _submitter_notice(workflow: ApprovalWorkflow, kind: str, message: str) -> tuple[NotificationIntent, ...]:
    if not workflow.submitted_by:
        return ()
    return (NotificationIntent(
        recipient_id=workflow.submitted_by,
        report_id=workflow.report_id,
        kind=kind,
        message=message,
    ),)


def advance(workflow: ApprovalWorkflow, steps, now: datetime):
    """Recompute workflow status after a step outcome.

    Returns (workflow, report_phase, notifications).
    """
    steps = tuple(steps)
    if has_rejection(steps):
        wf = replace(workflow, steps=steps, status=WorkflowStatus.REJECTED, completed_at=now)
        return wf, ReportPhase.REJECTED, ()

    if is_satisfied(steps, workflow.policy):
        wf = replace(workflow, steps=steps, status=WorkflowStatus.APPROVED, completed_at=now)
        return wf, ReportPhase.APPROVED, _submitter_notice(wf, "approved", "Your report has been approved")

    wf = replace(workflow, steps=steps, status=WorkflowStatus.IN_PROGRESS)
    nxt = wf.current_step
    if nxt is None:
        # Chain exhausted without meeting a quorum/weighted threshold
        wf = replace(
            wf, status=WorkflowStatus.REJECTED, completed_at=now,
            resubmittable=True, notes=THRESHOLD_NOT_REACHED,
        )
        return wf, ReportPhase.CHANGES_REQUESTED, _submitter_notice(
            wf, "changes_requested", f"Review finished: {THRESHOLD_NOT_REACHED}",
        )

    if nxt.became_current_at is None:
        nxt = replace(nxt, became_current_at=now)
        wf = replace(wf, steps=wf.replace_step(nxt))
    return wf, ReportPhase.IN_REVIEW, pending_review_notice(wf, nxt)


# ═════════════════════════════════════════════════════════════════════════════
# Handlers
# ═════════════════════════════════════════════════════════════════════════════

def _approve(workflow, step, actor, action: Approve, now, **_):
    if action.skip_to_final_approval:
        require_admin(actor, "skip_to_final_approval")
    require_assignee_or_admin(actor, step, "approve")
    decided = step.decide(StepStatus.APPROVED, actor.user_id, actor.display_name, now,
                          comment=action.comment, reasoning=action.reasoning)
    steps = workflow.replace_step(decided)
    comments = ()
    if action.comment:
        comments = (NewComment(actor.user_id, actor.display_name, action.comment, step_id=step.id),)

    if action.skip_to_final_approval:
        note = f"Skipped to final approval by {actor.display_name or actor.user_id}"
        steps = tuple(
            s.decide(StepStatus.SKIPPED, None, None, now, comment=note)
            if s.is_pending else s
            for s in steps
        )
        wf = replace(workflow, steps=steps, status=WorkflowStatus.APPROVED, completed_at=now)
        notices = _submitter_notice(wf, "approved", "Your report has been approved")
        return TransitionResult("approve", wf, ReportPhase.APPROVED, comments, notices)

    wf, phase, notices = advance(workflow, steps, now)
    return TransitionResult("approve", wf, phase, comments, notices)


def _conditional_approve(workflow, step, actor, action: ConditionalApprove, now, **_):
    require_assignee_or_admin(actor, step, "conditional_approve")
    conditions = tuple(c.strip() for c in action.conditions if c and c.strip())
    if not conditions:
        raise ValidationError("At least one condition is required for a conditional approval",
                              details={"conditions": "required"})
    comment = _required_text(action.comment, "comment", "conditionally approve")
    full = f"Conditionally approved with conditions: {', '.join(conditions)}. {comment}"
    decided = step.decide(StepStatus.APPROVED, actor.user_id, actor.display_name, now,
                          comment=comment, conditions=conditions)
    wf, phase, notices = advance(workflow, workflow.replace_step(decided), now)
    comments = (NewComment(actor.user_id, actor.display_name, full, step_id=step.id),)
    return TransitionResult("conditional_approve", wf, phase, comments, notices)


def _reject(workflow, step, actor, action: Reject, now, rejection_severity=SEVERITY_CHANGES_REQUESTED, **_):
    require_assignee_or_admin(actor, step, "reject")
    comment = _required_text(action.comment, "comment", "reject")
    final = action.final if action.final is not None else rejection_severity == SEVERITY_REJECTED
    decided = step.decide(StepStatus.REJECTED, actor.user_id, actor.display_name, now,
                          comment=comment, reasoning=action.reasoning)
    # Later steps stay pending untouched; rejection short-circuits the chain
    wf = replace(
        workflow,
        steps=workflow.replace_step(decided),
        status=WorkflowStatus.REJECTED,
        completed_at=now,
        resubmittable=not final,
    )
    phase = ReportPhase.REJECTED if final else ReportPhase.CHANGES_REQUESTED
    notices = _submitter_notice(
        wf, phase.value,
        ("Your report was rejected: " if final else "Changes requested on your report: ") + comment,
    )
    comments = (NewComment(actor.user_id, actor.display_name, comment, step_id=step.id),)
    return TransitionResult("reject", wf, phase, comments, notices)


def _skip(workflow, step, actor, action: Skip, now, **_):
    reason = _required_text(action.reason, "reason", "skip")
    if step.is_required:
        # Required steps may only be skipped as an administrative override
        require_admin(actor, "skip")
    else:
        require_assignee_or_admin(actor, step, "skip")
    decided = step.decide(StepStatus.SKIPPED, actor.user_id, actor.display_name, now, comment=reason)
    wf, phase, notices = advance(workflow, workflow.replace_step(decided), now)
    comments = (NewComment(actor.user_id, actor.display_name, f"Step skipped: {reason}", step_id=step.id),)
    return TransitionResult("skip", wf, phase, comments, notices)


def _request_information(workflow, step, actor, action: RequestInformation, now, **_):
    require_assignee_or_admin(actor, step, "request_information")
    target = _required_text(action.requested_from_user_id, "requested_from_user_id", "request information")
    needed = _required_text(action.information_needed, "information_needed", "request information")
    text = f"Information requested from {target}: {needed}"
    if action.deadline:
        text += f" (Deadline: {action.deadline.isoformat()})"
    notice = NotificationIntent(
        recipient_id=target,
        report_id=workflow.report_id,
        step_id=step.id,
        kind="information_requested",
        message=text,
    )
    comments = (NewComment(actor.user_id, actor.display_name, text, step_id=step.id),)
    return TransitionResult("request_information", workflow, None, comments, (notice,), mutated=False)


_HANDLERS = {
    Approve: _approve,
    ConditionalApprove: _conditional_approve,
    Reject: _reject,
    Skip: _skip,
    RequestInformation: _request_information,
}


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════

def apply_action(
    workflow: ApprovalWorkflow,
    step_id: str,
    actor: ActorContext,
    action,
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
    rejection_severity: str = SEVERITY_CHANGES_REQUESTED,
) -> TransitionResult:
    """Apply a step-level action to the current step of ``workflow``.

    Raises:
        ConflictError, WorkflowTerminalError, InvalidTransitionError,
        NotFoundError, PermissionDenied, ValidationError
    """
    check_version(workflow, expected_version)
    now = now or utcnow()

    if isinstance(action, AddComment):
        return add_comment(workflow, actor, action, step_id=step_id)

    handler = _HANDLERS.get(type(action))
    if handler is None:
        raise TypeError(f"Unsupported review action: {type(action).__name__}")

    step = current_step_for(workflow, step_id, action_name(action))
    return handler(workflow, step, actor, action, now, rejection_severity=rejection_severity)


def add_comment(workflow: ApprovalWorkflow, actor: ActorContext, action: AddComment,
                step_id: str | None = None) -> TransitionResult:
    """Record a remark; never changes workflow status and is allowed on terminal workflows."""
    content = _required_text(action.content, "content", "comment")
    if step_id is not None:
        workflow.step(step_id)
    comment = NewComment(
        actor.user_id, actor.display_name, content,
        step_id=step_id,
        is_internal=action.is_internal,
        reply_to=action.reply_to,
    )
    return TransitionResult("comment", workflow, None, (comment,), (), mutated=False)


def start_review(workflow: ApprovalWorkflow, step_id: str, actor: ActorContext,
                 *, expected_version: int | None = None, now: datetime | None = None) -> TransitionResult:
    """The current assignee opens the report; report phase pending_review → in_review."""
    check_version(workflow, expected_version)
    now = now or utcnow()
    step = current_step_for(workflow, step_id, "start_review")
    require_assignee_or_admin(actor, step, "start_review")
    started = replace(step, review_started_at=step.review_started_at or now)
    wf = replace(workflow, steps=workflow.replace_step(started))
    return TransitionResult("start_review", wf, ReportPhase.IN_REVIEW)


def cancel_workflow(workflow: ApprovalWorkflow, actor: ActorContext, reason: str | None = None,
                    *, expected_version: int | None = None, now: datetime | None = None) -> TransitionResult:
    """Cancel an in-progress workflow, or one awaiting resubmission."""
    check_version(workflow, expected_version)
    now = now or utcnow()
    awaiting_resubmission = workflow.status == WorkflowStatus.REJECTED and workflow.resubmittable
    if workflow.is_terminal and not awaiting_resubmission:
        raise WorkflowTerminalError(workflow.id, workflow.status.value, "cancel")
    require_submitter_or_admin(actor, workflow.submitted_by, "cancel")
    reason = (reason or "").strip() or None
    wf = replace(
        workflow,
        status=WorkflowStatus.CANCELLED,
        completed_at=now,
        resubmittable=False,
        notes=reason,
    )
    comments = ()
    if reason:
        comments = (NewComment(actor.user_id, actor.display_name, f"Workflow cancelled: {reason}"),)
    current = workflow.current_step
    notices = ()
    if current is not None and current.assigned_user_id and current.assigned_user_id != actor.user_id:
        notices = (NotificationIntent(
            recipient_id=current.assigned_user_id,
            report_id=workflow.report_id,
            step_id=current.id,
            kind="cancelled",
            message="A report awaiting your review was cancelled",
        ),)
    return TransitionResult("cancel", wf, ReportPhase.CANCELLED, comments, notices)


def reopen_workflow(workflow: ApprovalWorkflow, actor: ActorContext, *, from_step_number: int = 1,
                    expected_version: int | None = None, now: datetime | None = None) -> TransitionResult:
    """Resubmission in place: reset steps from ``from_step_number`` onward and resume review."""
    from reportflow.services.workflow.checkpoints import take_checkpoint

    check_version(workflow, expected_version)
    now = now or utcnow()
    if not (workflow.status == WorkflowStatus.REJECTED and workflow.resubmittable):
        raise InvalidTransitionError(
            "resubmit", workflow.status.value, "only workflows with changes requested can be resubmitted",
        )
    require_submitter_or_admin(actor, workflow.submitted_by, "resubmit")
    if not any(s.step_number == from_step_number for s in workflow.steps):
        raise InvalidTransitionError("resubmit", workflow.status.value,
                                     f"step {from_step_number} does not exist")
    rejected = [s.step_number for s in workflow.steps if s.status == StepStatus.REJECTED]
    if rejected and from_step_number > min(rejected):
        raise InvalidTransitionError(
            "resubmit", workflow.status.value,
            f"resubmission must restart at or before rejected step {min(rejected)}",
        )

    snapshot = take_checkpoint(workflow, f"Before resubmission by {actor.display_name or actor.user_id}",
                               actor.user_id, now)
    steps = tuple(s.reset() if s.step_number >= from_step_number else s for s in workflow.steps)
    wf = replace(
        workflow,
        steps=steps,
        status=WorkflowStatus.IN_PROGRESS,
        completed_at=None,
        resubmittable=False,
        notes=None,
        checkpoints=workflow.checkpoints + (snapshot,),
    )
    current = wf.current_step
    notices = ()
    if current is not None:
        current = replace(current, became_current_at=now)
        wf = replace(wf, steps=wf.replace_step(current))
        notices = pending_review_notice(wf, current)
    return TransitionResult("resubmit", wf, ReportPhase.PENDING_REVIEW, (), notices)


def action_name(action) -> str:
    return {
        Approve: "approve",
        ConditionalApprove: "conditional_approve",
        Reject: "reject",
        Skip: "skip",
        RequestInformation: "request_information",
    }[type(action)]
