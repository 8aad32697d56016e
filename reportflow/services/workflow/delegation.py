"""
Review Workflow: Delegation & Escalation Manager.

delegate_review:  hand the current step to another reviewer (status stays pending)
escalate_review:  insert a forced review step right after the current one
set_step_due_date: administrative due-date update, read by the workload analyzer

All functions are pure over the workflow snapshot and return a
``TransitionResult`` like the transition engine.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime

from reportflow.core.exceptions import InvalidTransitionError, ValidationError
from reportflow.services.workflow.access import (
    ActorContext,
    require_admin,
    require_assignee_or_admin,
)
from reportflow.services.workflow.engine import (
    NewComment,
    NotificationIntent,
    TransitionResult,
    check_version,
    current_step_for,
    ensure_not_terminal,
)
from reportflow.services.workflow.state import (
    ApprovalStep,
    ApprovalWorkflow,
    DelegationRecord,
    EscalationRecord,
    StepOrigin,
    StepStatus,
    renumber,
    utcnow,
    validate_step_order,
)


def delegate_review(
    workflow: ApprovalWorkflow,
    step_id: str,
    actor: ActorContext,
    delegate_to_user_id: str,
    reason: str,
    *,
    delegate_to_name: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Reassign the current step. Only the assignee field and delegation history change."""
    check_version(workflow, expected_version)
    now = now or utcnow()
    step = current_step_for(workflow, step_id, "delegate")
    require_assignee_or_admin(actor, step, "delegate")

    delegate_to_user_id = (delegate_to_user_id or "").strip()
    if not delegate_to_user_id:
        raise ValidationError("delegate_to_user_id is required", details={"delegate_to_user_id": "required"})
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required to delegate", details={"reason": "required"})
    if delegate_to_user_id == step.assigned_user_id:
        raise ValidationError("Step is already assigned to this user",
                              details={"delegate_to_user_id": delegate_to_user_id})

    record = DelegationRecord(
        from_user_id=step.assigned_user_id,
        to_user_id=delegate_to_user_id,
        to_user_name=delegate_to_name,
        reason=reason,
        actor_id=actor.user_id,
        at=now,
    )
    delegated = replace(
        step,
        assigned_user_id=delegate_to_user_id,
        assigned_user_name=delegate_to_name,
        delegations=step.delegations + (record,),
    )
    wf = replace(workflow, steps=workflow.replace_step(delegated))
    notice = NotificationIntent(
        recipient_id=delegate_to_user_id,
        report_id=workflow.report_id,
        step_id=step.id,
        kind="delegated",
        message=f"A review (step {step.step_number}) was delegated to you: {reason}",
    )
    comment = NewComment(
        actor.user_id, actor.display_name,
        f"Review delegated from {step.assigned_user_id} to {delegate_to_user_id}: {reason}",
        step_id=step.id, is_internal=True,
    )
    return TransitionResult("delegate", wf, None, (comment,), (notice,))


def escalate_review(
    workflow: ApprovalWorkflow,
    actor: ActorContext,
    escalation_reason: str,
    escalate_to_user_id: str,
    *,
    escalate_to_name: str | None = None,
    weight: float = 1,
    expected_version: int | None = None,
    now: datetime | None = None,
    id_factory=None,
) -> TransitionResult:
    """Insert an escalation step after the current one, renumbering the rest.

    The current step keeps its own pending decision.
    """
    check_version(workflow, expected_version)
    now = now or utcnow()
    ensure_not_terminal(workflow, "escalate")
    current = workflow.current_step
    if current is None:
        raise InvalidTransitionError("escalate", workflow.status.value, "workflow has no current step")
    require_assignee_or_admin(actor, current, "escalate")

    escalate_to_user_id = (escalate_to_user_id or "").strip()
    if not escalate_to_user_id:
        raise ValidationError("escalate_to_user_id is required", details={"escalate_to_user_id": "required"})
    escalation_reason = (escalation_reason or "").strip()
    if not escalation_reason:
        raise ValidationError("escalation_reason is required", details={"escalation_reason": "required"})

    new_id = (id_factory or (lambda: str(uuid.uuid4())))()
    record = EscalationRecord(
        from_step_id=current.id,
        escalation_step_id=new_id,
        escalated_to_user_id=escalate_to_user_id,
        reason=escalation_reason,
        actor_id=actor.user_id,
        at=now,
    )
    inserted = ApprovalStep(
        id=new_id,
        step_number=current.step_number + 1,
        required_role=None,
        assigned_user_id=escalate_to_user_id,
        assigned_user_name=escalate_to_name,
        weight=weight,
        is_required=True,
        status=StepStatus.PENDING,
        origin=StepOrigin.ESCALATION,
        escalations=(record,),
    )
    marked_current = replace(current, escalations=current.escalations + (record,))

    ordered = []
    for s in workflow.steps:
        if s.id == current.id:
            ordered.extend([marked_current, inserted])
        else:
            ordered.append(s)
    steps = renumber(ordered)
    validate_step_order(steps)

    wf = replace(workflow, steps=steps, last_escalation_at=now)
    notice = NotificationIntent(
        recipient_id=escalate_to_user_id,
        report_id=workflow.report_id,
        step_id=new_id,
        kind="escalated",
        message=f"A report review was escalated to you: {escalation_reason}",
    )
    comment = NewComment(
        actor.user_id, actor.display_name,
        f"Review escalated to {escalate_to_user_id}: {escalation_reason}",
        step_id=current.id,
    )
    return TransitionResult("escalate", wf, None, (comment,), (notice,))


def set_step_due_date(
    workflow: ApprovalWorkflow,
    step_id: str,
    actor: ActorContext,
    due_date: datetime | None,
    *,
    expected_version: int | None = None,
) -> TransitionResult:
    """Set (or clear, with None) the due date of a pending step. Status is untouched."""
    check_version(workflow, expected_version)
    ensure_not_terminal(workflow, "set_due_date")
    require_admin(actor, "set_due_date")
    step = workflow.step(step_id)
    if not step.is_pending:
        raise InvalidTransitionError("set_due_date", step.status.value,
                                     f"step {step.step_number} is already resolved")
    updated = replace(step, due_date=due_date)
    return TransitionResult("set_due_date", replace(workflow, steps=workflow.replace_step(updated)))
