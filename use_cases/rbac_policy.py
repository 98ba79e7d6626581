"""Centralized Role-Based Access Control logic."""

from typing import Dict, Optional

from use_cases.session_models import Role, UserProfile

# Actions only admins may perform; anything not listed is open to every active user
ADMIN_ACTIONS = {
    "VIEW_ADMIN_DASHBOARD",
    "MANAGE_STAFF",
    "EDIT_INVENTORY",
    "BULK_UPDATE_INVENTORY",
    "APPROVE_DEBIT_SALES",
}

ACTION_ROLES: Dict[str, Role] = {action: "admin" for action in ADMIN_ACTIONS}


def required_role(action: str) -> Optional[Role]:
    return ACTION_ROLES.get(action)


def enforce(user: Optional[UserProfile], action: str) -> bool:
    """
    Evaluates if the user is authorized to perform the action.
    Returns True if authorized, False otherwise.
    """
    import auth
    from infrastructure.repositories.sqlite_audit_repository import AuditAction

    authorized = False

    if user is not None and user.active:
        if user.role == "admin":
            authorized = True
        elif required_role(action) is None:
            authorized = True

    if not authorized:
        auth.get_audit_repo().log_action(
            AuditAction.RBAC_DENIED,
            actor_id=user.id if user else None,
            actor_role=user.role if user else None,
            metadata={
                "target_action": action,
                "required_role": required_role(action),
                "reason": "insufficient_rights" if user else "no_session",
            },
            result="deny",
        )

    return authorized
