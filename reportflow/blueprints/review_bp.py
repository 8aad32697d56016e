"""Report review & approval blueprint.

REST surface over ``ReportWorkflowService``. The blueprint parses input and
maps typed errors to HTTP; permission, state and version checks live in the
service/engine.

Endpoint groups:
  Reports             POST /api/v1/reports
                      GET  /api/v1/reports/<rid>
                      GET  /api/v1/reports/pending-reviews
                      GET  /api/v1/reports/mine
                      GET  /api/v1/reports/by-file/<file_id>
  Step actions        POST /api/v1/reports/<rid>/review
                      POST /api/v1/reports/<rid>/comments
                      POST /api/v1/reports/<rid>/request-information
                      POST /api/v1/reports/<rid>/conditional-approve
  Lifecycle           POST /api/v1/reports/<rid>/resubmit
                      POST /api/v1/reports/<rid>/cancel
                      POST /api/v1/reports/<rid>/escalate
                      POST /api/v1/reports/<rid>/versions
                      POST /api/v1/reports/<rid>/return-to-step
                      GET  /api/v1/reports/<rid>/weighted-approval
  Step admin          POST /api/v1/approval-steps/<sid>/delegate
                      PUT  /api/v1/approval-steps/<sid>/due-date
                      POST /api/v1/approval-steps/<sid>/start
  Bulk                POST /api/v1/reports/bulk/approve|reject|reassign
  Workload            GET  /api/v1/reviewers/workload
  Notifications       GET/DELETE /api/v1/report-notifications
                      GET  /api/v1/report-notifications/unread-count
                      POST /api/v1/report-notifications/<nid>/read
                      POST /api/v1/report-notifications/read-all

The acting user comes from the identity provider in front of this service
as headers: X-User-Id (required), X-User-Name, X-User-Roles (comma list).
Mutating endpoints accept ``expected_version`` in the body; a stale one
answers 409 ERR_CONFLICT_VERSION.
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from reportflow.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
    WorkflowTerminalError,
)
from reportflow.services.review_service import ReportWorkflowService
from reportflow.services.workflow.access import ActorContext
from reportflow.services.workflow.state import as_utc
from reportflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

review_bp = Blueprint("review", __name__, url_prefix="/api/v1")


# ── Request helpers ──────────────────────────────────────────────────────────


def _service() -> ReportWorkflowService:
    return ReportWorkflowService.from_config()


def _actor() -> tuple[ActorContext | None, tuple | None]:
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        return None, api_error(E.VALIDATION_REQUIRED, "X-User-Id header is required")
    roles = (request.headers.get("X-User-Roles") or "").split(",")
    actor = ActorContext.from_roles(
        user_id,
        request.headers.get("X-User-Name") or None,
        [r.strip() for r in roles if r.strip()],
        current_app.config.get("REVIEW_ADMIN_ROLES", ()),
    )
    return actor, None


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is not None and not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data or {}


def _expected_version(data: dict) -> int | None:
    value = data.get("expected_version")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("expected_version must be an integer", details={"expected_version": value})
    return value


def _parse_datetime(value, field_name: str) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO-8601 datetime", details={field_name: value})


def _id_list(data: dict) -> list:
    ids = data.get("report_ids")
    if not isinstance(ids, list) or not ids:
        raise ValidationError("report_ids must be a non-empty list", details={"report_ids": "required"})
    return ids


# ── Error handlers ────────────────────────────────────────────────────────────


@review_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@review_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@review_bp.errorhandler(PermissionDenied)
def _handle_forbidden(error: PermissionDenied):
    return api_error(E.FORBIDDEN, str(error))


@review_bp.errorhandler(WorkflowTerminalError)
def _handle_terminal(error: WorkflowTerminalError):
    return api_error(E.WORKFLOW_TERMINAL, str(error), details={"status": error.status})


@review_bp.errorhandler(InvalidTransitionError)
def _handle_transition(error: InvalidTransitionError):
    return api_error(E.CONFLICT_STATE, str(error), details={"current_status": error.current_status})


@review_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(
        E.CONFLICT_VERSION, str(error),
        details={"expected_version": error.expected_version, "actual_version": error.actual_version},
    )


@review_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in review_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Reports  (/api/v1/reports)
# ═════════════════════════════════════════════════════════════════════════


@review_bp.route("/reports", methods=["POST"])
def submit_report():
    """Create a report and its approval workflow.

    Body: {
        name, stages: [{role, weight?, is_required?, due_in_days?, assigned_user_id?}],
        role_assignments: {role: {user_id, display_name?}},
        project_id?, description?, category?, file_ids?, policy?
    }
    Returns: {report, workflow} (201).
    """
    actor, err = _actor()
    if err:
        return err
    data = _body()
    result = _service().submit_report(
        actor,
        name=data.get("name"),
        stages=data.get("stages"),
        role_assignments=data.get("role_assignments") or {},
        project_id=data.get("project_id"),
        description=data.get("description"),
        category=data.get("category"),
        file_ids=data.get("file_ids"),
        policy=data.get("policy"),
    )
    return jsonify(result), 201


@review_bp.route("/reports/pending-reviews", methods=["GET"])
def pending_reviews():
    actor, err = _actor()
    if err:
        return err
    items = _service().get_pending_reviews(actor, request.args.get("project_id"))
    return jsonify({"items": items, "total": len(items)}), 200


@review_bp.route("/reports/mine", methods=["GET"])
def my_reports():
    actor, err = _actor()
    if err:
        return err
    phase = request.args.get("phase")
    try:
        items = _service().get_my_reports(actor, request.args.get("project_id"), phase)
    except ValueError:
        raise ValidationError(f"Unknown phase '{phase}'", details={"phase": phase})
    return jsonify({"items": items, "total": len(items)}), 200


@review_bp.route("/reports/by-file/<file_id>", methods=["GET"])
def report_by_file(file_id):
    return jsonify(_service().get_by_file(file_id)), 200


@review_bp.route("/reports/<rid>", methods=["GET"])
def get_report(rid):
    """Report, active workflow (with checkpoints) and comments."""
    include_internal = request.args.get("include_internal", "true").lower() != "false"
    return jsonify(_service().get_report(rid, include_internal=include_internal)), 200


@review_bp.route("/reports/<rid>/weighted-approval", methods=["GET"])
def weighted_approval(rid):
    return jsonify(_service().get_weighted_approval(rid)), 200


# ═════════════════════════════════════════════════════════════════════════
# Step actions
# ═════════════════════════════════════════════════════════════════════════


@review_bp.route("/reports/<rid>/review", methods=["POST"])
def review_report(rid):
    """Body: {action: APPROVE|REJECT|REQUEST_CHANGES|SKIP, comment?, reasoning?,
    skip_to_final_approval?, step_id?, expected_version?}"""
    actor, err = _actor()
    if err:
        return err
    data = _body()
    workflow = _service().review(
        actor, rid, data.get("action"),
        comment=data.get("comment"),
        reasoning=data.get("reasoning"),
        skip_to_final_approval=bool(data.get("skip_to_final_approval", False)),
        step_id=data.get("step_id"),
        expected_version=_expected_version(data),
    )
    return jsonify(workflow.to_dict()), 200


@review_bp.route("/reports/<rid>/comments", methods=["POST"])
def add_comment(rid):
    actor, err = _actor()
    if err:
        return err
    data = _body()
    _service().add_comment(
        actor, rid, data.get("content"),
        step_id=data.get("step_id"),
        is_internal=bool(data.get("is_internal", False)),
        reply_to=data.get("reply_to"),
    )
    return jsonify(_service().get_report(rid)["comments"]), 201


@review_bp.route("/reports/<rid>/request-information", methods=["POST"])
def request_information(rid):
    actor, err = _actor()
    if err:
        return err
    data = _body()
    workflow = _service().request_information(
        actor, rid,
        data.get("requested_from_user_id"),
        data.get("information_needed"),
        deadline=_parse_datetime(data.get("deadline"), "deadline"),
        step_id=data.get("step_id"),
        expected_version=_expected_version(data),
    )
    return jsonify(workflow.to_dict()), 200


@review_bp.route("/reports/<rid>/conditional-approve", methods=["POST"])
def conditional_approve(rid):
    actor, err = _actor()
    if err:
        return err
    data = _body()
    workflow = _service().conditional_approve(
        actor, rid, data.get("conditions") or [], data.get("comment"),
        step_id=data.get("step_id"),
        expected_version=_expected_version(data),
    )
    return jsonify(workflow.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Workflow lifecycle
# ═════════════════════════════════════════════════════════════════════════


@review_bp.route("/reports/<rid>/resubmit", methods=["POST"])
def resubmit(rid):
    actor, err = _actor()
    if err:
        return err
    data = _body()
    from_step = data.get("from_step_number", 1)
    if isinstance(from_step, bool) or not isinstance(from_step, int):
        raise ValidationError("from_step_number must be an integer", details={"from_step_number": from_step})
    workflow = _service().resubmit_workflow(
        actor, rid,
        file_ids=data.get("file_ids"),
        from_step_number=from_step,
        expected_version=_expected_version(data),
    )
    return jsonify(workflow.to_dict()), 200


@review_bp.route("/reports/<rid>/cancel", methods=["POST"])
def cancel(rid):
    actor, err = _actor()
    if err:
        return err
    data = _body()
    workflow = _service().cancel_workflow(
        actor, rid, data.get("reason"), expected_version=_expected_version(data),
    )
    return jsonify(workflow.to_dict()), 200


@review_bp.route("/reports/<rid>/escalate", methods=["POST"])
def escalate(rid):
    actor, err = _actor()
    if err:
        return err
    data = _body()
    weight = data.get("weight", 1)
    if isinstance(weight, bool) or not isinstance(weight, (int, float)) or weight < 0:
        raise ValidationError("weight must be a non-negative number", details={"weight": weight})
    workflow = _service().escalate_review(
        actor, rid,
        data.get("escalation_reason"),
        data.get("escalate_to_user_id"),
        escalate_to_name=data.get("escalate_to_name"),
        weight=weight,
        expected_version=_expected_version(data),
    )
    return jsonify(workflow.to_dict()), 200


@review_bp.route("/reports/<rid>/versions", methods=["POST"])
def create_version(rid):
    """Body: {checkpoint_note, expected_version?}. Returns {sequence, note, ...} (201)."""
    actor, err = _actor()
    if err:
        return err
    data = _body()
    checkpoint = _service().create_workflow_version(
        actor, rid, data.get("checkpoint_note"), expected_version=_expected_version(data),
    )
    return jsonify(checkpoint), 201


@review_bp.route("/reports/<rid>/return-to-step", methods=["POST"])
def return_to_step(rid):
    actor, err = _actor()
    if err:
        return err
    data = _body()
    workflow = _service().return_to_step(
        actor, rid, data.get("return_to_step_id"), data.get("reason"),
        expected_version=_expected_version(data),
    )
    return jsonify(workflow.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Step admin  (/api/v1/approval-steps/<sid>)
# ═════════════════════════════════════════════════════════════════════════


@review_bp.route("/approval-steps/<sid>/delegate", methods=["POST"])
def delegate(sid):
    actor, err = _actor()
    if err:
        return err
    data = _body()
    workflow = _service().delegate_review(
        actor, sid, data.get("delegate_to_user_id"), data.get("reason"),
        delegate_to_name=data.get("delegate_to_name"),
        expected_version=_expected_version(data),
    )
    return jsonify(workflow.to_dict()), 200


@review_bp.route("/approval-steps/<sid>/due-date", methods=["PUT"])
def set_due_date(sid):
    """Body: {due_date: ISO-8601 | null, expected_version?}"""
    actor, err = _actor()
    if err:
        return err
    data = _body()
    workflow = _service().set_step_due_date(
        actor, sid, _parse_datetime(data.get("due_date"), "due_date"),
        expected_version=_expected_version(data),
    )
    return jsonify(workflow.to_dict()), 200


@review_bp.route("/approval-steps/<sid>/start", methods=["POST"])
def start(sid):
    actor, err = _actor()
    if err:
        return err
    data = _body()
    workflow = _service().start_review(actor, sid, expected_version=_expected_version(data))
    return jsonify(workflow.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Bulk  (/api/v1/reports/bulk)
# ═════════════════════════════════════════════════════════════════════════


@review_bp.route("/reports/bulk/approve", methods=["POST"])
def bulk_approve():
    actor, err = _actor()
    if err:
        return err
    data = _body()
    result = _service().bulk_approve(actor, _id_list(data), data.get("comment"))
    return jsonify(result.to_dict()), 200


@review_bp.route("/reports/bulk/reject", methods=["POST"])
def bulk_reject():
    actor, err = _actor()
    if err:
        return err
    data = _body()
    reason = (data.get("reason") or "").strip()
    if not reason:
        raise ValidationError("reason is required for a bulk rejection", details={"reason": "required"})
    result = _service().bulk_reject(actor, _id_list(data), reason)
    return jsonify(result.to_dict()), 200


@review_bp.route("/reports/bulk/reassign", methods=["POST"])
def bulk_reassign():
    actor, err = _actor()
    if err:
        return err
    data = _body()
    target = (data.get("reassign_to_user_id") or "").strip()
    if not target:
        raise ValidationError("reassign_to_user_id is required", details={"reassign_to_user_id": "required"})
    result = _service().bulk_reassign(
        actor, _id_list(data), target, data.get("reason"),
        reassign_to_name=data.get("reassign_to_name"),
    )
    return jsonify(result.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Workload
# ═════════════════════════════════════════════════════════════════════════


@review_bp.route("/reviewers/workload", methods=["GET"])
def reviewer_workload():
    """Query params: project_id?, reviewer_id?"""
    rows = _service().get_reviewer_workload(
        project_id=request.args.get("project_id"),
        reviewer_id=request.args.get("reviewer_id"),
    )
    return jsonify({"reviewers": rows, "total": len(rows)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Notifications  (/api/v1/report-notifications)
# ═════════════════════════════════════════════════════════════════════════


@review_bp.route("/report-notifications", methods=["GET"])
def list_notifications():
    actor, err = _actor()
    if err:
        return err
    items, total = ReportWorkflowService.list_notifications(
        actor,
        report_id=request.args.get("report_id"),
        unread_only=request.args.get("unread_only", "false").lower() == "true",
        limit=min(request.args.get("limit", 50, type=int), 200),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total}), 200


@review_bp.route("/report-notifications/unread-count", methods=["GET"])
def unread_count():
    actor, err = _actor()
    if err:
        return err
    return jsonify({"unread_count": ReportWorkflowService.unread_notification_count(actor)}), 200


@review_bp.route("/report-notifications/<int:nid>/read", methods=["POST"])
def mark_read(nid):
    actor, err = _actor()
    if err:
        return err
    return jsonify(ReportWorkflowService.mark_notification_read(actor, nid).to_dict()), 200


@review_bp.route("/report-notifications/read-all", methods=["POST"])
def mark_all_read():
    actor, err = _actor()
    if err:
        return err
    return jsonify({"marked_read": ReportWorkflowService.mark_all_notifications_read(actor)}), 200


@review_bp.route("/report-notifications", methods=["DELETE"])
def clear_notifications():
    actor, err = _actor()
    if err:
        return err
    return jsonify({"deleted": ReportWorkflowService.clear_notifications(actor)}), 200
