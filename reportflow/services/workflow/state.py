"""
Review Workflow: snapshot model.

Immutable value types the transition engine works on. Every engine call
takes an ``ApprovalWorkflow`` snapshot and returns a new one built with
``dataclasses.replace``; nothing here touches the database.

Invariants (checked by ``validate_step_order``):
    - step numbers are contiguous, start at 1 and strictly increase
    - step ids are unique within a workflow
    - while the workflow is in_progress, the *current* step is the
      lowest-numbered ``pending`` step (zero or one at any time)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from reportflow.core.exceptions import NotFoundError, ValidationError


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


TERMINAL_WORKFLOW_STATUSES = frozenset({
    WorkflowStatus.APPROVED,
    WorkflowStatus.REJECTED,
    WorkflowStatus.CANCELLED,
})


class StepStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    # Accepted from stored data only; delegation/escalation keep a step pending
    DELEGATED = "delegated"
    ESCALATED = "escalated"


RESOLVED_STEP_STATUSES = frozenset({StepStatus.APPROVED, StepStatus.REJECTED, StepStatus.SKIPPED})


class ReportPhase(str, Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    IN_REVIEW = "in_review"
    CHANGES_REQUESTED = "changes_requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class StepOrigin(str, Enum):
    CHAIN = "chain"
    ESCALATION = "escalation"


class PolicyKind(str, Enum):
    UNANIMOUS = "unanimous"
    QUORUM = "quorum"
    WEIGHTED = "weighted"


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value))


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise naive datetimes (SQLite drops tzinfo) to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ═════════════════════════════════════════════════════════════════════════════
# Policy
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ApprovalPolicy:
    """How step outcomes combine into a workflow verdict.

    unanimous: every step approved or skipped.
    quorum:    at least ``quorum`` steps approved.
    weighted:  sum of approved step weights >= ``required_weight``.
    """
    kind: PolicyKind = PolicyKind.UNANIMOUS
    quorum: int | None = None
    required_weight: float | None = None

    def __post_init__(self):
        try:
            kind = PolicyKind(self.kind)
        except ValueError:
            raise ValidationError(f"Unknown policy kind '{self.kind}'", details={"kind": self.kind})
        object.__setattr__(self, "kind", kind)
        if kind == PolicyKind.QUORUM and (not isinstance(self.quorum, int) or self.quorum < 1):
            raise ValidationError("quorum policy needs a quorum of at least 1",
                                  details={"quorum": self.quorum})
        if kind == PolicyKind.WEIGHTED and (
                not isinstance(self.required_weight, (int, float)) or self.required_weight <= 0):
            raise ValidationError("weighted policy needs a positive required_weight",
                                  details={"required_weight": self.required_weight})

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "quorum": self.quorum,
            "required_weight": self.required_weight,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> ApprovalPolicy:
        data = data or {}
        return cls(
            kind=data.get("kind") or PolicyKind.UNANIMOUS,
            quorum=data.get("quorum"),
            required_weight=data.get("required_weight"),
        )


# ═════════════════════════════════════════════════════════════════════════════
# Audit records (append-only)
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DelegationRecord:
    from_user_id: str | None
    to_user_id: str
    reason: str
    actor_id: str
    at: datetime
    to_user_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "to_user_name": self.to_user_name,
            "reason": self.reason,
            "actor_id": self.actor_id,
            "at": _iso(self.at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> DelegationRecord:
        return cls(
            from_user_id=data.get("from_user_id"),
            to_user_id=data["to_user_id"],
            to_user_name=data.get("to_user_name"),
            reason=data.get("reason", ""),
            actor_id=data.get("actor_id", ""),
            at=_parse_dt(data.get("at")),
        )


@dataclass(frozen=True)
class EscalationRecord:
    """Written on the escalated-from step and on the inserted escalation step."""
    from_step_id: str
    escalation_step_id: str
    escalated_to_user_id: str
    reason: str
    actor_id: str
    at: datetime

    def to_dict(self) -> dict:
        return {
            "from_step_id": self.from_step_id,
            "escalation_step_id": self.escalation_step_id,
            "escalated_to_user_id": self.escalated_to_user_id,
            "reason": self.reason,
            "actor_id": self.actor_id,
            "at": _iso(self.at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> EscalationRecord:
        return cls(
            from_step_id=data["from_step_id"],
            escalation_step_id=data["escalation_step_id"],
            escalated_to_user_id=data["escalated_to_user_id"],
            reason=data.get("reason", ""),
            actor_id=data.get("actor_id", ""),
            at=_parse_dt(data.get("at")),
        )


# ═════════════════════════════════════════════════════════════════════════════
# Step
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ApprovalStep:
    """One review stage, owned by one assignee at a time."""
    id: str
    step_number: int
    required_role: str | None
    assigned_user_id: str | None
    assigned_user_name: str | None = None
    weight: float = 1
    is_required: bool = True
    status: StepStatus = StepStatus.PENDING
    origin: StepOrigin = StepOrigin.CHAIN
    comment: str | None = None
    reasoning: str | None = None
    conditions: tuple[str, ...] = ()
    decided_by: str | None = None
    decided_by_name: str | None = None
    decided_at: datetime | None = None
    due_date: datetime | None = None
    became_current_at: datetime | None = None
    review_started_at: datetime | None = None
    delegations: tuple[DelegationRecord, ...] = ()
    escalations: tuple[EscalationRecord, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "status", StepStatus(self.status))
        object.__setattr__(self, "origin", StepOrigin(self.origin))

    @property
    def is_pending(self) -> bool:
        return self.status == StepStatus.PENDING

    @property
    def is_resolved(self) -> bool:
        return self.status in RESOLVED_STEP_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        return self.is_pending and self.due_date is not None and self.due_date < now

    def decide(self, status: StepStatus, actor_id: str | None, actor_name: str | None,
               now: datetime, comment: str | None = None, reasoning: str | None = None,
               conditions: tuple[str, ...] = ()) -> ApprovalStep:
        return replace(
            self,
            status=status,
            decided_by=actor_id,
            decided_by_name=actor_name,
            decided_at=now,
            comment=comment,
            reasoning=reasoning,
            conditions=tuple(conditions),
        )

    def reset(self) -> ApprovalStep:
        """Back to pending; assignee, weight, role and history are kept."""
        return replace(
            self,
            status=StepStatus.PENDING,
            comment=None,
            reasoning=None,
            conditions=(),
            decided_by=None,
            decided_by_name=None,
            decided_at=None,
            became_current_at=None,
            review_started_at=None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "step_number": self.step_number,
            "required_role": self.required_role,
            "assigned_user_id": self.assigned_user_id,
            "assigned_user_name": self.assigned_user_name,
            "weight": self.weight,
            "is_required": self.is_required,
            "status": self.status.value,
            "origin": self.origin.value,
            "comment": self.comment,
            "reasoning": self.reasoning,
            "conditions": list(self.conditions),
            "decided_by": self.decided_by,
            "decided_by_name": self.decided_by_name,
            "decided_at": _iso(self.decided_at),
            "due_date": _iso(self.due_date),
            "became_current_at": _iso(self.became_current_at),
            "review_started_at": _iso(self.review_started_at),
            "delegations": [d.to_dict() for d in self.delegations],
            "escalations": [e.to_dict() for e in self.escalations],
        }

    @classmethod
    def from_dict(cls, data: dict) -> ApprovalStep:
        return cls(
            id=data["id"],
            step_number=data["step_number"],
            required_role=data.get("required_role"),
            assigned_user_id=data.get("assigned_user_id"),
            assigned_user_name=data.get("assigned_user_name"),
            weight=data.get("weight", 1),
            is_required=data.get("is_required", True),
            status=data.get("status", StepStatus.PENDING),
            origin=data.get("origin", StepOrigin.CHAIN),
            comment=data.get("comment"),
            reasoning=data.get("reasoning"),
            conditions=tuple(data.get("conditions") or ()),
            decided_by=data.get("decided_by"),
            decided_by_name=data.get("decided_by_name"),
            decided_at=_parse_dt(data.get("decided_at")),
            due_date=_parse_dt(data.get("due_date")),
            became_current_at=_parse_dt(data.get("became_current_at")),
            review_started_at=_parse_dt(data.get("review_started_at")),
            delegations=tuple(DelegationRecord.from_dict(d) for d in data.get("delegations") or ()),
            escalations=tuple(EscalationRecord.from_dict(e) for e in data.get("escalations") or ()),
        )


# ═════════════════════════════════════════════════════════════════════════════
# Checkpoint
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class WorkflowCheckpoint:
    """Immutable snapshot of the step list and status under a note."""
    sequence: int
    note: str
    status: WorkflowStatus
    steps: tuple[ApprovalStep, ...]
    created_by: str | None
    created_at: datetime

    def __post_init__(self):
        object.__setattr__(self, "status", WorkflowStatus(self.status))

    def to_dict(self, include_steps: bool = True) -> dict:
        data = {
            "sequence": self.sequence,
            "note": self.note,
            "status": self.status.value,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }
        if include_steps:
            data["steps"] = [s.to_dict() for s in self.steps]
        return data


# ═════════════════════════════════════════════════════════════════════════════
# Workflow
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ApprovalWorkflow:
    """One report's chain of review steps plus its optimistic-concurrency version."""
    id: str
    report_id: str
    steps: tuple[ApprovalStep, ...]
    status: WorkflowStatus
    version: int
    policy: ApprovalPolicy = field(default_factory=ApprovalPolicy)
    submitted_by: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    checkpoints: tuple[WorkflowCheckpoint, ...] = ()
    resubmittable: bool = False
    notes: str | None = None
    last_escalation_at: datetime | None = None

    def __post_init__(self):
        object.__setattr__(self, "status", WorkflowStatus(self.status))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    @property
    def current_step(self) -> ApprovalStep | None:
        if self.status != WorkflowStatus.IN_PROGRESS:
            return None
        pending = [s for s in self.steps if s.is_pending]
        return min(pending, key=lambda s: s.step_number) if pending else None

    @property
    def next_step(self) -> ApprovalStep | None:
        """First pending step after the current one."""
        current = self.current_step
        if current is None:
            return None
        later = [s for s in self.steps if s.is_pending and s.step_number > current.step_number]
        return min(later, key=lambda s: s.step_number) if later else None

    def step(self, step_id: str) -> ApprovalStep:
        for s in self.steps:
            if s.id == step_id:
                return s
        raise NotFoundError("ApprovalStep", step_id)

    def has_step(self, step_id: str) -> bool:
        return any(s.id == step_id for s in self.steps)

    def replace_step(self, updated: ApprovalStep) -> tuple[ApprovalStep, ...]:
        return tuple(updated if s.id == updated.id else s for s in self.steps)

    def to_dict(self, include_checkpoints: bool = False) -> dict:
        current = self.current_step
        data = {
            "id": self.id,
            "report_id": self.report_id,
            "status": self.status.value,
            "version": self.version,
            "policy": self.policy.to_dict(),
            "submitted_by": self.submitted_by,
            "resubmittable": self.resubmittable,
            "notes": self.notes,
            "current_step_id": current.id if current else None,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
            "last_escalation_at": _iso(self.last_escalation_at),
            "steps": [s.to_dict() for s in self.steps],
            "checkpoint_count": len(self.checkpoints),
        }
        if include_checkpoints:
            data["checkpoints"] = [c.to_dict(include_steps=False) for c in self.checkpoints]
        return data


# ═════════════════════════════════════════════════════════════════════════════
# Invariants
# ═════════════════════════════════════════════════════════════════════════════

def renumber(steps) -> tuple[ApprovalStep, ...]:
    """Re-assign contiguous step numbers (1..N) keeping the given order."""
    return tuple(
        s if s.step_number == i else replace(s, step_number=i)
        for i, s in enumerate(steps, 1)
    )


def validate_step_order(steps) -> None:
    """Raise ValidationError unless step numbers are 1..N and ids unique."""
    numbers = [s.step_number for s in steps]
    if numbers != list(range(1, len(numbers) + 1)):
        raise ValidationError(
            "Step numbers must be contiguous and start at 1",
            details={"step_numbers": numbers},
        )
    ids = [s.id for s in steps]
    if len(set(ids)) != len(ids):
        raise ValidationError("Step ids must be unique within a workflow")
