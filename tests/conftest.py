"""
Shared pytest fixtures for the report review test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - service: ReportWorkflowService bound to the testing config
    - make_actor / admin / uploader: ActorContext builders
    - make_workflow: in-memory workflow snapshot factory (no DB)
    - submit_report: submits a report through the service
"""

from datetime import datetime, timedelta, timezone

import pytest

from reportflow import create_app
from reportflow.models import db as _db
from reportflow.services.review_service import ReportWorkflowService
from reportflow.services.workflow.access import ActorContext
from reportflow.services.workflow.state import (
    ApprovalPolicy,
    ApprovalStep,
    ApprovalWorkflow,
    WorkflowStatus,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Actors ───────────────────────────────────────────────────────────────


@pytest.fixture()
def make_actor():
    def _make(user_id, is_admin=False, display_name=None):
        return ActorContext(user_id=user_id, display_name=display_name or user_id.title(), is_admin=is_admin)
    return _make


@pytest.fixture()
def admin(make_actor):
    return make_actor("admin", is_admin=True, display_name="Ada Admin")


@pytest.fixture()
def uploader(make_actor):
    return make_actor("uploader", display_name="Uma Uploader")


# ── Pure snapshot factory ────────────────────────────────────────────────


@pytest.fixture()
def make_workflow():
    """Build an in-progress workflow snapshot; step i is assigned to ``reviewer{i}``."""
    def _make(weights=(1, 1, 1), policy=None, required=None, version=1, submitted_by="uploader"):
        required = required or [True] * len(weights)
        steps = tuple(
            ApprovalStep(
                id=f"step-{i}",
                step_number=i,
                required_role=f"role{i}",
                assigned_user_id=f"reviewer{i}",
                assigned_user_name=f"Reviewer {i}",
                weight=w,
                is_required=req,
                became_current_at=T0 if i == 1 else None,
            )
            for i, (w, req) in enumerate(zip(weights, required), 1)
        )
        return ApprovalWorkflow(
            id="wf-1",
            report_id="report-1",
            steps=steps,
            status=WorkflowStatus.IN_PROGRESS,
            version=version,
            policy=policy or ApprovalPolicy(),
            submitted_by=submitted_by,
            created_at=T0,
        )
    return _make


# ── Service-level fixtures ───────────────────────────────────────────────


@pytest.fixture()
def service(app):
    return ReportWorkflowService.from_config(app.config)


@pytest.fixture()
def submit_report(service, uploader):
    """Submit a report whose chain has one stage per weight; stage i → ``reviewer{i}``."""
    def _submit(weights=(1, 1, 1), policy=None, name="Quarterly Report", project_id="proj-1",
                due_in_days=None, file_ids=None, actor=None):
        stages = [
            {"role": f"role{i}", "weight": w, "due_in_days": due_in_days}
            for i, w in enumerate(weights, 1)
        ]
        assignments = {
            f"role{i}": {"user_id": f"reviewer{i}", "display_name": f"Reviewer {i}"}
            for i in range(1, len(weights) + 1)
        }
        return service.submit_report(
            actor or uploader,
            name=name,
            stages=stages,
            role_assignments=assignments,
            project_id=project_id,
            file_ids=file_ids,
            policy=policy,
        )
    return _submit


@pytest.fixture()
def later():
    """Timestamps relative to the fixed test epoch."""
    def _later(**kwargs):
        return T0 + timedelta(**kwargs)
    return _later
