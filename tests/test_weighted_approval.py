"""
Weighted Approval Calculator + chain builder tests.

Pure functions, no database.
"""

import pytest

from reportflow.core.exceptions import ValidationError
from reportflow.services.workflow.chain import Assignee, ChainStage, build_workflow, rebuild_workflow
from reportflow.services.workflow.engine import Approve, Skip, apply_action
from reportflow.services.workflow.policy import (
    approved_weight,
    is_satisfied,
    validate_achievable,
    weighted_approval,
)
from reportflow.services.workflow.state import (
    ApprovalPolicy,
    PolicyKind,
    StepOrigin,
    StepStatus,
    WorkflowStatus,
)


WEIGHTED_6 = ApprovalPolicy(PolicyKind.WEIGHTED, required_weight=6)


def _approve_current(wf, make_actor):
    step = wf.current_step
    return apply_action(wf, step.id, make_actor(step.assigned_user_id), Approve()).workflow


class TestWeightedPolicy:
    def test_threshold_not_met_keeps_workflow_open(self, make_workflow, make_actor):
        wf = make_workflow(weights=(2, 3, 5), policy=WEIGHTED_6)
        wf = _approve_current(wf, make_actor)
        wf = _approve_current(wf, make_actor)

        summary = weighted_approval(wf.steps, wf.policy)
        assert summary.to_dict() == {
            "is_approved": False,
            "total_weight": 10,
            "approved_weight": 5,
            "required_weight": 6,
        }
        assert wf.status == WorkflowStatus.IN_PROGRESS
        assert wf.current_step.step_number == 3

    def test_threshold_met_approves(self, make_workflow, make_actor):
        wf = make_workflow(weights=(2, 3, 5), policy=WEIGHTED_6)
        for _ in range(3):
            wf = _approve_current(wf, make_actor)
        assert wf.status == WorkflowStatus.APPROVED
        assert weighted_approval(wf.steps, wf.policy).approved_weight == 10

    def test_heavy_step_alone_can_satisfy(self, make_workflow, make_actor):
        wf = make_workflow(weights=(5, 3, 2), policy=ApprovalPolicy(PolicyKind.WEIGHTED, required_weight=5))
        wf = _approve_current(wf, make_actor)
        assert wf.status == WorkflowStatus.APPROVED
        assert wf.steps[1].status == StepStatus.PENDING

    def test_skipped_steps_contribute_zero(self, make_workflow, admin):
        wf = make_workflow(weights=(2, 3, 5), policy=WEIGHTED_6)
        wf = apply_action(wf, "step-1", admin, Skip(reason="Delegated outside")).workflow
        assert approved_weight(wf.steps) == 0

    def test_rejection_beats_weight(self, make_workflow):
        wf = make_workflow(weights=(2, 3, 5), policy=WEIGHTED_6)
        steps = (
            wf.steps[0].decide(StepStatus.REJECTED, "x", None, wf.created_at),
            wf.steps[1].decide(StepStatus.APPROVED, "x", None, wf.created_at),
            wf.steps[2].decide(StepStatus.APPROVED, "x", None, wf.created_at),
        )
        assert is_satisfied(steps, wf.policy) is False

    def test_non_weighted_policy_reports_required_weight(self, make_workflow):
        wf = make_workflow(weights=(2, 3, 5), required=[True, False, True])
        assert weighted_approval(wf.steps, wf.policy).required_weight == 7


class TestPolicyValidation:
    @pytest.mark.parametrize("kwargs", [
        {"kind": "quorum", "quorum": 0},
        {"kind": "quorum"},
        {"kind": "weighted", "required_weight": 0},
        {"kind": "weighted", "required_weight": "six"},
        {"kind": "majority"},
    ])
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ValidationError):
            ApprovalPolicy(**kwargs)

    def test_from_dict_defaults_to_unanimous(self):
        assert ApprovalPolicy.from_dict(None).kind == PolicyKind.UNANIMOUS

    def test_quorum_larger_than_chain(self, make_workflow):
        wf = make_workflow(weights=(1, 1))
        with pytest.raises(ValidationError):
            validate_achievable(wf.steps, ApprovalPolicy(PolicyKind.QUORUM, quorum=3))

    def test_weight_larger_than_chain(self, make_workflow):
        wf = make_workflow(weights=(2, 3))
        with pytest.raises(ValidationError):
            validate_achievable(wf.steps, ApprovalPolicy(PolicyKind.WEIGHTED, required_weight=6))


class TestChainBuilder:
    ASSIGNMENTS = {
        "analyst": Assignee("u-analyst", "Ana Analyst"),
        "manager": Assignee("u-manager", "Max Manager"),
    }

    def _ids(self):
        counter = iter(range(1, 100))
        return lambda: f"id-{next(counter)}"

    def test_build_assigns_roles_in_order(self, later):
        stages = [ChainStage("analyst", weight=2, due_in_days=3), ChainStage("manager", weight=5)]
        wf = build_workflow("r-1", stages, self.ASSIGNMENTS, ApprovalPolicy(), "uploader", later(),
                            id_factory=self._ids())

        assert wf.version == 1
        assert wf.status == WorkflowStatus.IN_PROGRESS
        assert [s.assigned_user_id for s in wf.steps] == ["u-analyst", "u-manager"]
        assert [s.step_number for s in wf.steps] == [1, 2]
        assert wf.steps[0].due_date == later(days=3)
        assert wf.steps[0].became_current_at == later()
        assert wf.steps[1].became_current_at is None
        assert wf.current_step.id == wf.steps[0].id

    def test_unassigned_role_fails(self, later):
        with pytest.raises(ValidationError):
            build_workflow("r-1", [ChainStage("auditor")], self.ASSIGNMENTS, ApprovalPolicy(), "u", later())

    def test_empty_chain_fails(self, later):
        with pytest.raises(ValidationError):
            build_workflow("r-1", [], self.ASSIGNMENTS, ApprovalPolicy(), "u", later())

    def test_unachievable_policy_fails(self, later):
        with pytest.raises(ValidationError):
            build_workflow("r-1", [ChainStage("analyst")], self.ASSIGNMENTS,
                           ApprovalPolicy(PolicyKind.QUORUM, quorum=2), "u", later())

    @pytest.mark.parametrize("data", [
        {},
        {"role": "analyst", "weight": "heavy"},
        {"role": "analyst", "weight": -1},
        {"role": "analyst", "due_in_days": -2},
        "analyst",
    ])
    def test_invalid_stage(self, data):
        with pytest.raises(ValidationError):
            ChainStage.from_dict(data)

    def test_rebuild_drops_escalation_steps(self, make_workflow, later):
        from dataclasses import replace

        wf = make_workflow(weights=(1, 1))
        escalated = replace(wf.steps[1], id="esc", origin=StepOrigin.ESCALATION, step_number=2)
        wf = replace(wf, steps=(wf.steps[0], escalated, replace(wf.steps[1], step_number=3)))

        fresh = rebuild_workflow(wf, later(days=1), id_factory=self._ids())

        assert fresh.id != wf.id
        assert fresh.version == 1
        assert [s.assigned_user_id for s in fresh.steps] == ["reviewer1", "reviewer2"]
        assert [s.step_number for s in fresh.steps] == [1, 2]
        assert all(s.status == StepStatus.PENDING for s in fresh.steps)
        assert fresh.steps[0].became_current_at == later(days=1)
