"""
Role-based permission checks at the identity seam.

The stage engine itself never checks permissions; the HTTP layer asks
this module before calling into it.

Usage:
    from jobflow.services.permission import check_permission, PermissionDenied

    # Raises PermissionDenied if not allowed
    check_permission(tenant_id=1, user_id=7, action="stage_override")

    # Boolean check
    if has_permission(tenant_id=1, user_id=7, action="workflow_edit"):
        ...
"""

from jobflow.core.exceptions import PermissionDenied
from jobflow.models import db
from jobflow.models.auth import User

__all__ = ["PERMISSION_MATRIX", "PermissionDenied", "check_permission", "has_permission"]

PERMISSION_MATRIX = {
    "owner": {"stage_override", "workflow_edit", "task_update"},
    "admin": {"stage_override", "workflow_edit", "task_update"},
    "site_admin": {"stage_override", "workflow_edit", "task_update"},
    "foreman": {"task_update"},
    "member": {"task_update"},
    "client": set(),
}


def has_permission(tenant_id: int | None, user_id: int | None, action: str) -> bool:
    """
    Check if an active user of ``tenant_id`` may perform ``action``.

    Returns:
        True if the user's role grants the action.
    """
    if user_id is None:
        return False
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return False
    if tenant_id is not None and user.tenant_id != tenant_id:
        return False
    return action in PERMISSION_MATRIX.get(user.role, set())


def check_permission(tenant_id: int | None, user_id: int | None, action: str) -> None:
    """Raise PermissionDenied if the user may not perform ``action``."""
    if not has_permission(tenant_id, user_id, action):
        raise PermissionDenied(user_id, action)
