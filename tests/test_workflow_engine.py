"""
Step Transition Engine tests (pure, no database).

Tests cover:
  - approve advances the current step and notifies the next assignee
  - reject short-circuits the chain; severity from config or the actor
  - skip rules for required / optional steps
  - request-information and comments never change workflow state
  - conditional approval persists its conditions
  - terminal workflows, non-current steps and stale versions are refused
  - step-ordering invariant across a full run
  - cancel and reopen (resubmission in place)
"""

import pytest

from reportflow.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
    WorkflowTerminalError,
)
from reportflow.services.workflow.engine import (
    THRESHOLD_NOT_REACHED,
    AddComment,
    Approve,
    ConditionalApprove,
    Reject,
    RequestInformation,
    Skip,
    add_comment,
    apply_action,
    cancel_workflow,
    reopen_workflow,
    start_review,
)
from reportflow.services.workflow.state import (
    ApprovalPolicy,
    PolicyKind,
    ReportPhase,
    StepStatus,
    WorkflowStatus,
    validate_step_order,
)


def _approve(wf, step_number, make_actor, now=None, **kwargs):
    step = wf.steps[step_number - 1]
    return apply_action(wf, step.id, make_actor(step.assigned_user_id), Approve(**kwargs), now=now).workflow


# ═════════════════════════════════════════════════════════════════════════
# APPROVE
# ═════════════════════════════════════════════════════════════════════════

class TestApprove:
    def test_approve_advances_to_next_step(self, make_workflow, make_actor, later):
        wf = make_workflow()
        now = later(hours=2)
        result = apply_action(wf, "step-1", make_actor("reviewer1"), Approve(comment="LGTM"), now=now)

        assert result.workflow.status == WorkflowStatus.IN_PROGRESS
        assert result.workflow.steps[0].status == StepStatus.APPROVED
        assert result.workflow.steps[0].decided_at == now
        assert result.workflow.current_step.id == "step-2"
        assert result.workflow.current_step.became_current_at == now
        assert result.report_phase == ReportPhase.IN_REVIEW
        assert [(n.recipient_id, n.kind) for n in result.notifications] == [("reviewer2", "pending_review")]
        assert result.comments[0].content == "LGTM"

    def test_approve_stores_reasoning(self, make_workflow, make_actor):
        wf = make_workflow()
        result = apply_action(wf, "step-1", make_actor("reviewer1"), Approve(reasoning="Figures reconcile"))
        assert result.workflow.steps[0].reasoning == "Figures reconcile"
        assert result.comments == ()

    def test_final_approval_approves_workflow(self, make_workflow, make_actor):
        wf = make_workflow(weights=(1, 1))
        wf = _approve(wf, 1, make_actor)
        result = apply_action(wf, "step-2", make_actor("reviewer2"), Approve())

        assert result.workflow.status == WorkflowStatus.APPROVED
        assert result.workflow.completed_at is not None
        assert result.report_phase == ReportPhase.APPROVED
        assert [(n.recipient_id, n.kind) for n in result.notifications] == [("uploader", "approved")]

    def test_non_current_step_is_refused(self, make_workflow, make_actor):
        wf = make_workflow()
        with pytest.raises(InvalidTransitionError):
            apply_action(wf, "step-2", make_actor("reviewer2"), Approve())

    def test_unknown_step_is_not_found(self, make_workflow, make_actor):
        with pytest.raises(NotFoundError):
            apply_action(make_workflow(), "nope", make_actor("reviewer1"), Approve())

    def test_non_assignee_is_refused(self, make_workflow, make_actor):
        with pytest.raises(PermissionDenied):
            apply_action(make_workflow(), "step-1", make_actor("reviewer2"), Approve())

    def test_admin_may_act_on_any_current_step(self, make_workflow, admin):
        result = apply_action(make_workflow(), "step-1", admin, Approve())
        assert result.workflow.steps[0].decided_by == "admin"

    def test_skip_to_final_requires_admin(self, make_workflow, make_actor):
        with pytest.raises(PermissionDenied):
            apply_action(make_workflow(), "step-1", make_actor("reviewer1"),
                         Approve(skip_to_final_approval=True))

    def test_skip_to_final_skips_remaining_steps(self, make_workflow, admin):
        result = apply_action(make_workflow(), "step-1", admin, Approve(skip_to_final_approval=True))

        assert result.workflow.status == WorkflowStatus.APPROVED
        assert [s.status for s in result.workflow.steps] == [
            StepStatus.APPROVED, StepStatus.SKIPPED, StepStatus.SKIPPED,
        ]
        assert result.workflow.steps[1].comment.startswith("Skipped to final approval by")
        assert result.workflow.steps[0].decided_by == "admin"
        assert [s.decided_by for s in result.workflow.steps[1:]] == [None, None]


# ═════════════════════════════════════════════════════════════════════════
# REJECT
# ═════════════════════════════════════════════════════════════════════════

class TestReject:
    @pytest.mark.parametrize("k", [1, 2, 3, 4])
    def test_reject_short_circuits(self, make_workflow, make_actor, k):
        wf = make_workflow(weights=(1, 1, 1, 1))
        for n in range(1, k):
            wf = _approve(wf, n, make_actor)
        result = apply_action(wf, f"step-{k}", make_actor(f"reviewer{k}"), Reject(comment="Numbers are off"))

        assert result.workflow.status == WorkflowStatus.REJECTED
        assert result.workflow.steps[k - 1].status == StepStatus.REJECTED
        for later_step in result.workflow.steps[k:]:
            assert later_step.status == StepStatus.PENDING
            assert later_step.decided_by is None

    def test_reject_requires_comment(self, make_workflow, make_actor):
        with pytest.raises(ValidationError):
            apply_action(make_workflow(), "step-1", make_actor("reviewer1"), Reject(comment="  "))

    def test_default_severity_requests_changes(self, make_workflow, make_actor):
        result = apply_action(make_workflow(), "step-1", make_actor("reviewer1"), Reject(comment="Fix totals"))
        assert result.report_phase == ReportPhase.CHANGES_REQUESTED
        assert result.workflow.resubmittable is True
        assert result.notifications[0].recipient_id == "uploader"
        assert result.notifications[0].kind == "changes_requested"

    def test_configured_final_severity(self, make_workflow, make_actor):
        result = apply_action(make_workflow(), "step-1", make_actor("reviewer1"), Reject(comment="No"),
                              rejection_severity="rejected")
        assert result.report_phase == ReportPhase.REJECTED
        assert result.workflow.resubmittable is False

    def test_explicit_severity_overrides_config(self, make_workflow, make_actor):
        result = apply_action(make_workflow(), "step-1", make_actor("reviewer1"),
                              Reject(comment="Fix", final=False), rejection_severity="rejected")
        assert result.report_phase == ReportPhase.CHANGES_REQUESTED
        assert result.workflow.resubmittable is True


# ═════════════════════════════════════════════════════════════════════════
# SKIP
# ═════════════════════════════════════════════════════════════════════════

class TestSkip:
    def test_required_step_needs_admin(self, make_workflow, make_actor):
        with pytest.raises(PermissionDenied):
            apply_action(make_workflow(), "step-1", make_actor("reviewer1"), Skip(reason="Out of office"))

    def test_admin_skips_required_step(self, make_workflow, admin):
        result = apply_action(make_workflow(), "step-1", admin, Skip(reason="Override"))
        assert result.workflow.steps[0].status == StepStatus.SKIPPED
        assert result.workflow.current_step.id == "step-2"

    def test_assignee_skips_optional_step(self, make_workflow, make_actor):
        wf = make_workflow(required=[False, True, True])
        result = apply_action(wf, "step-1", make_actor("reviewer1"), Skip(reason="Not applicable"))
        assert result.workflow.steps[0].status == StepStatus.SKIPPED

    def test_reason_required(self, make_workflow, admin):
        with pytest.raises(ValidationError):
            apply_action(make_workflow(), "step-1", admin, Skip(reason=""))

    def test_unanimous_counts_skipped_steps(self, make_workflow, make_actor, admin):
        wf = make_workflow(weights=(1, 1))
        wf = _approve(wf, 1, make_actor)
        result = apply_action(wf, "step-2", admin, Skip(reason="Reviewer left"))
        assert result.workflow.status == WorkflowStatus.APPROVED


# ═════════════════════════════════════════════════════════════════════════
# POLICY OUTCOMES
# ═════════════════════════════════════════════════════════════════════════

class TestPolicyOutcomes:
    def test_quorum_reached_early(self, make_workflow, make_actor):
        wf = make_workflow(policy=ApprovalPolicy(PolicyKind.QUORUM, quorum=2))
        wf = _approve(wf, 1, make_actor)
        wf = _approve(wf, 2, make_actor)
        assert wf.status == WorkflowStatus.APPROVED
        assert wf.steps[2].status == StepStatus.PENDING

    def test_chain_exhausted_below_threshold(self, make_workflow, make_actor):
        wf = make_workflow(policy=ApprovalPolicy(PolicyKind.QUORUM, quorum=2), required=[False, False, False])
        wf = _approve(wf, 1, make_actor)
        wf = apply_action(wf, "step-2", make_actor("reviewer2"), Skip(reason="n/a")).workflow
        result = apply_action(wf, "step-3", make_actor("reviewer3"), Skip(reason="n/a"))

        assert result.workflow.status == WorkflowStatus.REJECTED
        assert result.workflow.resubmittable is True
        assert result.workflow.notes == THRESHOLD_NOT_REACHED
        assert result.report_phase == ReportPhase.CHANGES_REQUESTED


# ═════════════════════════════════════════════════════════════════════════
# NON-MUTATING ACTIONS
# ═════════════════════════════════════════════════════════════════════════

class TestNonMutating:
    def test_request_information_keeps_step_current(self, make_workflow, make_actor, later):
        wf = make_workflow()
        result = apply_action(
            wf, "step-1", make_actor("reviewer1"),
            RequestInformation("uploader", "Source data for Q1", deadline=later(days=3)),
        )
        assert result.mutated is False
        assert result.workflow == wf
        assert result.notifications[0].recipient_id == "uploader"
        assert result.notifications[0].kind == "information_requested"
        assert "Source data for Q1" in result.comments[0].content
        assert "Deadline:" in result.comments[0].content

    def test_request_information_needs_target(self, make_workflow, make_actor):
        with pytest.raises(ValidationError):
            apply_action(make_workflow(), "step-1", make_actor("reviewer1"), RequestInformation("", "x"))

    def test_comment_allowed_on_terminal_workflow(self, make_workflow, admin, make_actor):
        wf = apply_action(make_workflow(), "step-1", admin, Approve(skip_to_final_approval=True)).workflow
        result = add_comment(wf, make_actor("reviewer2"), AddComment("Late note", is_internal=True))
        assert result.mutated is False
        assert result.comments[0].is_internal is True

    def test_comment_requires_content(self, make_workflow, make_actor):
        with pytest.raises(ValidationError):
            add_comment(make_workflow(), make_actor("reviewer1"), AddComment(""))

    def test_start_review_marks_step(self, make_workflow, make_actor, later):
        result = start_review(make_workflow(), "step-1", make_actor("reviewer1"), now=later(minutes=5))
        assert result.workflow.steps[0].review_started_at == later(minutes=5)
        assert result.workflow.steps[0].status == StepStatus.PENDING
        assert result.report_phase == ReportPhase.IN_REVIEW


# ═════════════════════════════════════════════════════════════════════════
# CONDITIONAL APPROVAL
# ═════════════════════════════════════════════════════════════════════════

class TestConditionalApprove:
    def test_conditions_are_persisted(self, make_workflow, make_actor):
        result = apply_action(
            make_workflow(), "step-1", make_actor("reviewer1"),
            ConditionalApprove(("Add appendix B", "Fix typo on p.3"), "Fine otherwise"),
        )
        step = result.workflow.steps[0]
        assert step.status == StepStatus.APPROVED
        assert step.conditions == ("Add appendix B", "Fix typo on p.3")
        assert result.workflow.current_step.id == "step-2"
        assert result.comments[0].content.startswith("Conditionally approved with conditions: Add appendix B")

    def test_conditions_required(self, make_workflow, make_actor):
        with pytest.raises(ValidationError):
            apply_action(make_workflow(), "step-1", make_actor("reviewer1"), ConditionalApprove((), "ok"))


# ═════════════════════════════════════════════════════════════════════════
# GUARDS
# ═════════════════════════════════════════════════════════════════════════

class TestGuards:
    @pytest.mark.parametrize("action", [
        Approve(),
        Reject(comment="x"),
        Skip(reason="x"),
        RequestInformation("uploader", "x"),
        ConditionalApprove(("c",), "x"),
    ])
    def test_terminal_workflow_refuses_step_actions(self, make_workflow, admin, action):
        wf = apply_action(make_workflow(), "step-1", admin, Reject(comment="stop")).workflow
        with pytest.raises(WorkflowTerminalError):
            apply_action(wf, "step-2", admin, action)

    def test_stale_version_conflicts(self, make_workflow, make_actor):
        wf = make_workflow(version=4)
        with pytest.raises(ConflictError) as exc:
            apply_action(wf, "step-1", make_actor("reviewer1"), Approve(), expected_version=3)
        assert exc.value.expected_version == 3
        assert exc.value.actual_version == 4

    def test_step_ordering_invariant_through_full_run(self, make_workflow, make_actor):
        wf = make_workflow(weights=(1, 1, 1, 1))
        for n in range(1, 5):
            validate_step_order(wf.steps)
            current = [s for s in wf.steps if s.is_pending and wf.current_step and s.id == wf.current_step.id]
            assert len(current) == 1
            assert current[0].step_number == n
            wf = _approve(wf, n, make_actor)
        assert wf.status == WorkflowStatus.APPROVED
        assert wf.current_step is None


# ═════════════════════════════════════════════════════════════════════════
# CANCEL / REOPEN
# ═════════════════════════════════════════════════════════════════════════

class TestCancelAndReopen:
    def test_uploader_cancels(self, make_workflow, uploader):
        result = cancel_workflow(make_workflow(), uploader, "Superseded")
        assert result.workflow.status == WorkflowStatus.CANCELLED
        assert result.report_phase == ReportPhase.CANCELLED
        assert result.comments[0].content == "Workflow cancelled: Superseded"
        assert result.notifications[0].recipient_id == "reviewer1"

    def test_reviewer_cannot_cancel(self, make_workflow, make_actor):
        with pytest.raises(PermissionDenied):
            cancel_workflow(make_workflow(), make_actor("reviewer1"))

    def test_cannot_cancel_approved(self, make_workflow, admin):
        wf = apply_action(make_workflow(), "step-1", admin, Approve(skip_to_final_approval=True)).workflow
        with pytest.raises(WorkflowTerminalError):
            cancel_workflow(wf, admin)

    def test_can_cancel_while_awaiting_resubmission(self, make_workflow, make_actor, uploader):
        wf = apply_action(make_workflow(), "step-1", make_actor("reviewer1"), Reject(comment="Fix")).workflow
        assert cancel_workflow(wf, uploader).workflow.status == WorkflowStatus.CANCELLED

    def test_reopen_resets_from_step(self, make_workflow, make_actor, uploader):
        wf = _approve(make_workflow(), 1, make_actor)
        wf = apply_action(wf, "step-2", make_actor("reviewer2"), Reject(comment="Fix chart")).workflow

        result = reopen_workflow(wf, uploader, from_step_number=2)

        assert result.workflow.status == WorkflowStatus.IN_PROGRESS
        assert result.workflow.steps[0].status == StepStatus.APPROVED
        assert result.workflow.steps[1].status == StepStatus.PENDING
        assert result.workflow.current_step.id == "step-2"
        assert result.report_phase == ReportPhase.PENDING_REVIEW
        assert len(result.workflow.checkpoints) == 1
        assert result.workflow.checkpoints[0].status == WorkflowStatus.REJECTED
        assert result.notifications[0].recipient_id == "reviewer2"

    def test_reopen_refuses_final_rejection(self, make_workflow, make_actor, uploader):
        wf = apply_action(make_workflow(), "step-1", make_actor("reviewer1"), Reject(comment="No", final=True)).workflow
        with pytest.raises(InvalidTransitionError):
            reopen_workflow(wf, uploader)

    def test_reopen_must_restart_at_rejected_step(self, make_workflow, make_actor, uploader):
        wf = _approve(make_workflow(), 1, make_actor)
        wf = apply_action(wf, "step-2", make_actor("reviewer2"), Reject(comment="Fix chart")).workflow

        with pytest.raises(InvalidTransitionError):
            reopen_workflow(wf, uploader, from_step_number=3)

    def test_reopened_workflow_can_still_be_approved(self, make_workflow, make_actor, uploader):
        wf = _approve(make_workflow(), 1, make_actor)
        wf = apply_action(wf, "step-2", make_actor("reviewer2"), Reject(comment="Fix chart")).workflow
        wf = reopen_workflow(wf, uploader, from_step_number=1).workflow

        for n in (1, 2, 3):
            wf = _approve(wf, n, make_actor)

        assert wf.status == WorkflowStatus.APPROVED
