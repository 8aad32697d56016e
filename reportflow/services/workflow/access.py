"""
Actor capability used by every permission check in the review engine.

The identity provider resolves who an actor is; the engine only ever asks
"is this actor the step's assignee, the uploader, or an administrator".
"""

from __future__ import annotations

from dataclasses import dataclass

from reportflow.core.exceptions import PermissionDenied


@dataclass(frozen=True)
class ActorContext:
    """Who is acting, as far as the workflow engine needs to know."""
    user_id: str
    display_name: str | None = None
    is_admin: bool = False

    @classmethod
    def from_roles(cls, user_id: str, display_name: str | None, roles, admin_roles) -> ActorContext:
        return cls(
            user_id=user_id,
            display_name=display_name,
            is_admin=bool(set(roles or ()) & set(admin_roles or ())),
        )


def is_assignee(actor: ActorContext, step) -> bool:
    return step.assigned_user_id is not None and step.assigned_user_id == actor.user_id


def require_assignee_or_admin(actor: ActorContext, step, action: str) -> None:
    if actor.is_admin or is_assignee(actor, step):
        return
    raise PermissionDenied(
        actor.user_id, action,
        f"step {step.step_number} is assigned to {step.assigned_user_id}",
    )


def require_admin(actor: ActorContext, action: str) -> None:
    if not actor.is_admin:
        raise PermissionDenied(actor.user_id, action, "administrator role required")


def require_submitter_or_admin(actor: ActorContext, submitted_by: str | None, action: str) -> None:
    if actor.is_admin or (submitted_by is not None and submitted_by == actor.user_id):
        return
    raise PermissionDenied(actor.user_id, action, "only the uploader or an administrator may do this")
