"""
Bulk Operation Coordinator.

Applies one single-report operation to many report ids in the order given.
Every report is its own transaction: a typed workflow error on one report is
recorded and the batch moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from reportflow.core.exceptions import WORKFLOW_ERRORS

logger = logging.getLogger(__name__)


@dataclass
class BulkResult:
    success: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"success": self.success, "failed": self.failed, "errors": list(self.errors)}


def run_bulk(report_ids, operation, *, action: str = "bulk") -> BulkResult:
    """Call ``operation(report_id)`` for each id, isolating failures.

    Only workflow errors are collected; anything else is a defect and
    propagates.
    """
    result = BulkResult()
    for report_id in report_ids or ():
        try:
            operation(report_id)
        except WORKFLOW_ERRORS as exc:
            result.failed += 1
            result.errors.append(f"{report_id}: {exc}")
            logger.warning(
                "Bulk %s skipped report %s: %s", action, report_id, exc,
                extra={"report_id": report_id, "action": action},
            )
        else:
            result.success += 1
    logger.info(
        "Bulk %s finished: %d succeeded, %d failed", action, result.success, result.failed,
        extra={"action": action},
    )
    return result
