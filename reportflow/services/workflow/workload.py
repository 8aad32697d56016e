"""
Reviewer Workload Analyzer.

Read-only aggregation over workflow snapshots:
    pending_count       : pending steps assigned to the reviewer in in-progress workflows
    completed_count     : steps the reviewer resolved
    overdue_count       : pending steps past their due date
    average_review_hours: mean of decided_at - became_current_at over resolved steps

Nothing here writes; callers may run it alongside any transition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from reportflow.services.workflow.state import WorkflowStatus, as_utc, utcnow


@dataclass(frozen=True)
class PendingReviewItem:
    report_id: str
    report_name: str | None
    step_id: str
    step_number: int
    due_date: datetime | None
    is_overdue: bool
    days_pending: int
    is_current: bool

    def to_dict(self) -> dict:
        return {
            "report_id": self.report_id,
            "report_name": self.report_name,
            "step_id": self.step_id,
            "step_number": self.step_number,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "is_overdue": self.is_overdue,
            "days_pending": self.days_pending,
            "is_current": self.is_current,
        }


@dataclass
class ReviewerWorkload:
    reviewer_id: str
    reviewer_name: str | None = None
    pending_count: int = 0
    completed_count: int = 0
    overdue_count: int = 0
    average_review_hours: float | None = None
    reports: list[PendingReviewItem] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "reviewer_id": self.reviewer_id,
            "reviewer_name": self.reviewer_name,
            "pending_count": self.pending_count,
            "completed_count": self.completed_count,
            "overdue_count": self.overdue_count,
            "average_review_hours": self.average_review_hours,
            "reports": [r.to_dict() for r in self.reports],
        }


def analyze_workload(workflows, *, report_names: dict | None = None,
                     reviewer_id: str | None = None, now: datetime | None = None) -> list[ReviewerWorkload]:
    """Aggregate per-reviewer workload, sorted by pending count (desc) then reviewer id."""
    now = now or utcnow()
    report_names = report_names or {}
    by_reviewer: dict[str, ReviewerWorkload] = {}
    durations: dict[str, list[float]] = {}

    def bucket(user_id: str) -> ReviewerWorkload:
        if user_id not in by_reviewer:
            by_reviewer[user_id] = ReviewerWorkload(reviewer_id=user_id)
        return by_reviewer[user_id]

    for wf in workflows:
        current = wf.current_step
        for step in wf.steps:
            if step.is_pending and wf.status == WorkflowStatus.IN_PROGRESS and step.assigned_user_id:
                if reviewer_id and step.assigned_user_id != reviewer_id:
                    continue
                row = bucket(step.assigned_user_id)
                row.reviewer_name = row.reviewer_name or step.assigned_user_name
                overdue = step.is_overdue(now)
                since = as_utc(step.became_current_at or wf.created_at)
                days = (now - since).days if since else 0
                row.pending_count += 1
                row.overdue_count += 1 if overdue else 0
                row.reports.append(PendingReviewItem(
                    report_id=wf.report_id,
                    report_name=report_names.get(wf.report_id),
                    step_id=step.id,
                    step_number=step.step_number,
                    due_date=step.due_date,
                    is_overdue=overdue,
                    days_pending=max(days, 0),
                    is_current=current is not None and current.id == step.id,
                ))
            elif step.is_resolved and step.decided_by:
                if reviewer_id and step.decided_by != reviewer_id:
                    continue
                row = bucket(step.decided_by)
                row.reviewer_name = row.reviewer_name or step.decided_by_name
                row.completed_count += 1
                if step.became_current_at and step.decided_at:
                    hours = (as_utc(step.decided_at) - as_utc(step.became_current_at)).total_seconds() / 3600
                    durations.setdefault(step.decided_by, []).append(hours)

    for user_id, values in durations.items():
        by_reviewer[user_id].average_review_hours = round(sum(values) / len(values), 2)

    for row in by_reviewer.values():
        row.reports.sort(key=lambda r: (not r.is_overdue, r.due_date is None, r.due_date or now))

    return sorted(by_reviewer.values(), key=lambda r: (-r.pending_count, r.reviewer_id))
