"""
Approval-chain template → initial workflow.

The submission flow supplies an ordered list of stages (role, weight,
required flag, optional due-in-days) and a role → assignee map resolved by
the identity provider. ``build_workflow`` turns them into a version-1
workflow whose first step is current.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from reportflow.core.exceptions import ValidationError
from reportflow.services.workflow.policy import validate_achievable
from reportflow.services.workflow.state import (
    ApprovalPolicy,
    ApprovalStep,
    ApprovalWorkflow,
    StepOrigin,
    WorkflowStatus,
    renumber,
    validate_step_order,
)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Assignee:
    user_id: str
    display_name: str | None = None


@dataclass(frozen=True)
class ChainStage:
    """One entry of an approval-chain template."""
    role: str | None
    weight: float = 1
    is_required: bool = True
    due_in_days: int | None = None
    assigned_user_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> ChainStage:
        if not isinstance(data, dict):
            raise ValidationError("Each chain stage must be an object")
        role = data.get("role") or data.get("required_role")
        user_id = data.get("assigned_user_id")
        if not role and not user_id:
            raise ValidationError("Each chain stage needs a role or an assigned_user_id",
                                  details={"stage": data})
        try:
            weight = float(data.get("weight", 1))
        except (TypeError, ValueError):
            raise ValidationError("weight must be a number", details={"weight": data.get("weight")})
        if weight < 0:
            raise ValidationError("weight must not be negative", details={"weight": weight})
        due = data.get("due_in_days")
        if due is not None and (not isinstance(due, int) or due < 0):
            raise ValidationError("due_in_days must be a non-negative integer", details={"due_in_days": due})
        return cls(
            role=role,
            weight=weight,
            is_required=bool(data.get("is_required", True)),
            due_in_days=due,
            assigned_user_id=user_id,
        )


def _resolve(stage: ChainStage, role_assignments: dict) -> Assignee:
    if stage.assigned_user_id:
        found = role_assignments.get(stage.role) if stage.role else None
        name = found.display_name if found and found.user_id == stage.assigned_user_id else None
        return Assignee(stage.assigned_user_id, name)
    found = role_assignments.get(stage.role)
    if found is None:
        raise ValidationError(f"No reviewer is assigned to role '{stage.role}'",
                              details={"role": stage.role})
    return found


def build_workflow(
    report_id: str,
    stages,
    role_assignments: dict,
    policy: ApprovalPolicy,
    submitted_by: str | None,
    now: datetime,
    *,
    workflow_id: str | None = None,
    id_factory=_new_id,
) -> ApprovalWorkflow:
    """Create the initial workflow for a freshly submitted report.

    Raises ValidationError for an empty chain, an unassigned role or a
    policy no outcome of the chain could satisfy.
    """
    stages = list(stages or ())
    if not stages:
        raise ValidationError("An approval chain needs at least one stage", details={"stages": "required"})

    steps = []
    for number, stage in enumerate(stages, 1):
        assignee = _resolve(stage, role_assignments or {})
        steps.append(ApprovalStep(
            id=id_factory(),
            step_number=number,
            required_role=stage.role,
            assigned_user_id=assignee.user_id,
            assigned_user_name=assignee.display_name,
            weight=stage.weight,
            is_required=stage.is_required,
            origin=StepOrigin.CHAIN,
            due_date=now + timedelta(days=stage.due_in_days) if stage.due_in_days is not None else None,
            became_current_at=now if number == 1 else None,
        ))
    steps = tuple(steps)
    validate_step_order(steps)
    validate_achievable(steps, policy)

    return ApprovalWorkflow(
        id=workflow_id or id_factory(),
        report_id=report_id,
        steps=steps,
        status=WorkflowStatus.IN_PROGRESS,
        version=1,
        policy=policy,
        submitted_by=submitted_by,
        created_at=now,
    )


def rebuild_workflow(previous: ApprovalWorkflow, now: datetime, *, id_factory=_new_id) -> ApprovalWorkflow:
    """Fresh workflow with the same chain, used by the new_workflow resubmission policy.

    Escalation steps of the previous round are not carried over.
    """
    chain = [s for s in previous.steps if s.origin == StepOrigin.CHAIN]
    steps = []
    for s in renumber(chain):
        fresh = replace(s.reset(), id=id_factory(), delegations=(), escalations=())
        if fresh.step_number == 1:
            fresh = replace(fresh, became_current_at=now)
        steps.append(fresh)
    steps = tuple(steps)
    validate_achievable(steps, previous.policy)
    return ApprovalWorkflow(
        id=id_factory(),
        report_id=previous.report_id,
        steps=steps,
        status=WorkflowStatus.IN_PROGRESS,
        version=1,
        policy=previous.policy,
        submitted_by=previous.submitted_by,
        created_at=now,
    )
