"""
User roles enumeration.

Roles arrive as an explicit claim set from the identity provider.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Manages catalog, campaigns and mint reconciliation
        STAFF: Redeems perk claims at the point of service
        MEMBER: Buys tokens, claims perks and votes (default role)
    """
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    MEMBER = "MEMBER"
