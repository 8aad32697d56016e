"""
Weighted Approval Calculator.

Decides whether a workflow's step outcomes satisfy its approval policy.
A single rejected step always wins over any policy.

Usage:
    from reportflow.services.workflow.policy import is_satisfied, weighted_approval

    if is_satisfied(workflow.steps, workflow.policy):
        ...
    weighted_approval(workflow.steps, workflow.policy).to_dict()
    # -> {"is_approved": False, "total_weight": 10, "approved_weight": 5, "required_weight": 6}
"""

from __future__ import annotations

from dataclasses import dataclass

from reportflow.core.exceptions import ValidationError
from reportflow.services.workflow.state import ApprovalPolicy, PolicyKind, StepStatus


@dataclass(frozen=True)
class WeightedApproval:
    """Read-only view of how far a workflow is from its approval threshold."""
    is_approved: bool
    total_weight: float
    approved_weight: float
    required_weight: float

    def to_dict(self) -> dict:
        return {
            "is_approved": self.is_approved,
            "total_weight": self.total_weight,
            "approved_weight": self.approved_weight,
            "required_weight": self.required_weight,
        }


def has_rejection(steps) -> bool:
    return any(s.status == StepStatus.REJECTED for s in steps)


def approved_count(steps) -> int:
    return sum(1 for s in steps if s.status == StepStatus.APPROVED)


def approved_weight(steps) -> float:
    # skipped steps contribute zero
    return sum(s.weight for s in steps if s.status == StepStatus.APPROVED)


def is_satisfied(steps, policy: ApprovalPolicy) -> bool:
    """True when the step outcomes meet the policy and nothing was rejected."""
    if has_rejection(steps):
        return False
    if policy.kind == PolicyKind.UNANIMOUS:
        return bool(steps) and all(
            s.status in (StepStatus.APPROVED, StepStatus.SKIPPED) for s in steps
        )
    if policy.kind == PolicyKind.QUORUM:
        return approved_count(steps) >= policy.quorum
    if policy.kind == PolicyKind.WEIGHTED:
        return approved_weight(steps) >= policy.required_weight
    raise ValueError(f"Unknown policy kind: {policy.kind}")


def weighted_approval(steps, policy: ApprovalPolicy) -> WeightedApproval:
    """Summarise weights without touching workflow state.

    For weighted policies ``required_weight`` is the policy threshold; for
    unanimous and quorum policies it is the total weight of required steps.
    """
    total = sum(s.weight for s in steps)
    if policy.kind == PolicyKind.WEIGHTED:
        required = policy.required_weight
    else:
        required = sum(s.weight for s in steps if s.is_required)
    return WeightedApproval(
        is_approved=is_satisfied(steps, policy),
        total_weight=total,
        approved_weight=approved_weight(steps),
        required_weight=required,
    )


def validate_achievable(steps, policy: ApprovalPolicy) -> None:
    """Reject policies no outcome of this chain could ever satisfy."""
    if policy.kind == PolicyKind.QUORUM and policy.quorum > len(steps):
        raise ValidationError(
            f"quorum {policy.quorum} exceeds the {len(steps)} steps in the chain",
            details={"quorum": policy.quorum, "steps": len(steps)},
        )
    if policy.kind == PolicyKind.WEIGHTED:
        total = sum(s.weight for s in steps)
        if policy.required_weight > total:
            raise ValidationError(
                f"required_weight {policy.required_weight} exceeds total chain weight {total}",
                details={"required_weight": policy.required_weight, "total_weight": total},
            )
