"""
Role gate for engine operations.

Services receive ``actor_role`` explicitly and call ``check_permission``
before mutating anything; the identity itself is resolved by ``auth.py``.

Usage:
    from compliance_engine.services.permission import check_permission

    check_permission("workflow_publish", actor_role)   # raises PermissionDenied
"""

import logging

from compliance_engine.core.exceptions import PermissionDenied

logger = logging.getLogger(__name__)

# action → roles allowed to perform it
PERMISSION_MATRIX: dict[str, frozenset[str]] = {
    "workflow_publish": frozenset({"admin"}),
    "escalation_resolve": frozenset({"admin"}),
    "review_decide": frozenset({"qc_reviewer", "ops_manager", "admin"}),
    "review_start": frozenset({"qc_reviewer", "ops_manager", "admin"}),
    "rule_manage": frozenset({"admin"}),
    "catalog_manage": frozenset({"admin"}),
    "obligation_work": frozenset({"ops_executive", "ops_manager", "admin"}),
    "obligation_schedule": frozenset({"ops_manager", "admin"}),
    "jobs_manage": frozenset({"admin"}),
}


def has_permission(action: str, actor_role: str | None) -> bool:
    allowed = PERMISSION_MATRIX.get(action)
    if allowed is None:
        raise KeyError(f"Unknown action: {action}")
    return actor_role in allowed


def check_permission(action: str, actor_role: str | None) -> None:
    """Raise PermissionDenied unless ``actor_role`` may perform ``action``."""
    if not has_permission(action, actor_role):
        logger.warning(
            "Permission denied: role %r attempted %s", actor_role, action,
            extra={"actor_role": actor_role, "event_type": "permission_denied"},
        )
        raise PermissionDenied(action, actor_role, sorted(PERMISSION_MATRIX[action]))
