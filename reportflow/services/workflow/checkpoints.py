"""
Review Workflow: Checkpoint/Versioning Service.

Checkpoints are immutable snapshots of the step list and workflow status
under a human note. ``return_to_step`` always records one automatically
before rolling back, so every rewind is traceable.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from reportflow.core.exceptions import InvalidTransitionError, ValidationError
from reportflow.services.workflow.access import ActorContext, require_assignee_or_admin
from reportflow.services.workflow.engine import (
    NewComment,
    TransitionResult,
    check_version,
    ensure_not_terminal,
    pending_review_notice,
)
from reportflow.services.workflow.state import (
    ApprovalWorkflow,
    ReportPhase,
    WorkflowCheckpoint,
    WorkflowStatus,
    utcnow,
)


def take_checkpoint(workflow: ApprovalWorkflow, note: str, created_by: str | None,
                    now: datetime) -> WorkflowCheckpoint:
    return WorkflowCheckpoint(
        sequence=len(workflow.checkpoints) + 1,
        note=note,
        status=workflow.status,
        steps=workflow.steps,
        created_by=created_by,
        created_at=now,
    )


def create_workflow_version(
    workflow: ApprovalWorkflow,
    actor: ActorContext,
    checkpoint_note: str,
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> tuple[TransitionResult, WorkflowCheckpoint]:
    """Snapshot the workflow under ``checkpoint_note``. Allowed on terminal workflows."""
    check_version(workflow, expected_version)
    note = (checkpoint_note or "").strip()
    if not note:
        raise ValidationError("checkpoint_note is required", details={"checkpoint_note": "required"})
    checkpoint = take_checkpoint(workflow, note, actor.user_id, now or utcnow())
    wf = replace(workflow, checkpoints=workflow.checkpoints + (checkpoint,))
    return TransitionResult("create_version", wf), checkpoint


def return_to_step(
    workflow: ApprovalWorkflow,
    return_to_step_id: str,
    actor: ActorContext,
    reason: str,
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Roll back: steps from the target onward become pending again.

    Earlier steps keep their outcome; every step keeps its assignee, weight
    and required role.
    """
    check_version(workflow, expected_version)
    now = now or utcnow()
    ensure_not_terminal(workflow, "return_to_step")
    if not workflow.has_step(return_to_step_id):
        raise InvalidTransitionError("return_to_step", workflow.status.value,
                                     f"step {return_to_step_id} is not part of this workflow")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required to return to a step", details={"reason": "required"})

    current = workflow.current_step
    if current is not None:
        require_assignee_or_admin(actor, current, "return_to_step")
    target = workflow.step(return_to_step_id)
    if current is not None and target.step_number > current.step_number:
        raise InvalidTransitionError(
            "return_to_step", workflow.status.value,
            f"step {target.step_number} is ahead of the current step {current.step_number}",
        )

    snapshot = take_checkpoint(
        workflow, f"Before return to step {target.step_number}: {reason}", actor.user_id, now,
    )
    steps = tuple(s.reset() if s.step_number >= target.step_number else s for s in workflow.steps)
    wf = replace(
        workflow,
        steps=steps,
        status=WorkflowStatus.IN_PROGRESS,
        completed_at=None,
        checkpoints=workflow.checkpoints + (snapshot,),
    )
    new_current = replace(wf.step(target.id), became_current_at=now)
    wf = replace(wf, steps=wf.replace_step(new_current))

    comment = NewComment(
        actor.user_id, actor.display_name,
        f"Returned to step {target.step_number}: {reason}",
        step_id=target.id,
    )
    phase = ReportPhase.IN_REVIEW if target.step_number > 1 else ReportPhase.PENDING_REVIEW
    return TransitionResult("return_to_step", wf, phase, (comment,), pending_review_notice(wf, new_current))
