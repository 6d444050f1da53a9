"""
Security guards for role-based access control.

Roles come only from the explicit ``roles`` claim of a verified token.
"""

from typing import List
from fastapi import Depends, HTTPException, status
from fiatmint.app.models.enums import UserRole
from fiatmint.app.core.dependencies import get_current_user


def has_role(current_user: dict, *roles: UserRole) -> bool:
    granted = set(current_user.get("roles") or [])
    return any(role.value in granted for role in roles)


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.post("/perks")
        async def create_perk(current_user: dict = Depends(require_role([UserRole.ADMIN]))):
            ...

    Raises:
        HTTPException 403 if none of the user's roles is in allowed_roles
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        if not current_user.get("roles"):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Role information missing from token"
            )

        if not has_role(current_user, *allowed_roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}"
            )

        return current_user

    return role_checker


require_admin = require_role([UserRole.ADMIN])
require_staff = require_role([UserRole.STAFF, UserRole.ADMIN])
