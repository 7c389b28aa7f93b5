from fastapi import HTTPException, status, Depends
from typing import Iterable
from auth import get_current_user
from engine.application_lifecycle import Actor
import logging

logger = logging.getLogger(__name__)

ADMIN = "admin"
STAFF = "staff"
SSC_MEMBER = "ssc_member"
SSC_CHAIR = "ssc_chair"
FINANCE_OFFICER = "finance_officer"

ALL_ROLES = (ADMIN, STAFF, SSC_MEMBER, SSC_CHAIR, FINANCE_OFFICER)

# Roles per operation
CAN_SUBMIT = (ADMIN, STAFF)
CAN_TRANSITION = (ADMIN, STAFF)
CAN_REVIEW = (ADMIN, SSC_MEMBER, SSC_CHAIR)
CAN_FINAL_APPROVE = (ADMIN, SSC_CHAIR)
CAN_DISBURSE = (ADMIN, FINANCE_OFFICER)
CAN_MANAGE_BUDGET = (ADMIN, FINANCE_OFFICER)
CAN_RECONCILE = (ADMIN, FINANCE_OFFICER)


class PermissionChecker:
    """
    Role enforcement for scholarship operations.

    RULES:
    1. User must be authenticated (JWT from the identity service)
    2. User must not be flagged inactive in the token
    3. Role must be in the operation's allowed set
    """

    def __init__(self, *allowed_roles: str):
        self.allowed_roles = set(allowed_roles or ALL_ROLES)

    async def __call__(self, current_user: dict = Depends(get_current_user)) -> Actor:
        if current_user.get("active_status") is False:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User account is inactive"
            )

        role = current_user.get("role")
        if role not in self.allowed_roles:
            logger.warning(
                f"[PERMISSION] User {current_user.get('user_id')} with role {role} denied; "
                f"requires one of {sorted(self.allowed_roles)}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{role}' is not permitted for this operation"
            )

        return Actor(user_id=str(current_user["user_id"]), role=role, name=current_user.get("name"))


def check_role(actor: Actor, allowed_roles: Iterable[str], operation: str):
    """Inline role check for operations whose required role depends on the payload."""
    if actor.role not in set(allowed_roles):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{actor.role}' is not permitted to {operation}"
        )
    return True
