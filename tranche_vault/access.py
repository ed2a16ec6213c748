"""
access.py - Role-based access policy

The vault never decides who may call what; it asks its AccessPolicy.
RoleBasedAccessPolicy is the standard implementation.
"""

from typing import Dict, Set

from .core import Unauthorized

ADMIN_ROLE = "ADMIN"
EMERGENCY_ADMIN_ROLE = "EMERGENCY_ADMIN"
COLLATERAL_LIQUIDATOR_ROLE = "COLLATERAL_LIQUIDATOR"

ROLES = (ADMIN_ROLE, EMERGENCY_ADMIN_ROLE, COLLATERAL_LIQUIDATOR_ROLE)


class RoleBasedAccessPolicy:
    """
    Accounts hold named roles; only an ADMIN may grant or revoke them.

    Example:
        policy = RoleBasedAccessPolicy(admin="treasury")
        policy.grant_role("treasury", COLLATERAL_LIQUIDATOR_ROLE, "auction_house")
        policy.require_role(COLLATERAL_LIQUIDATOR_ROLE, "auction_house")  # ok
    """

    def __init__(self, admin: str):
        """
        Create a policy with an initial administrator.

        Args:
            admin: Account granted ADMIN and EMERGENCY_ADMIN
        """
        if not admin or not admin.strip():
            raise ValueError("Admin account cannot be empty")
        self.members: Dict[str, Set[str]] = {role: set() for role in ROLES}
        self.members[ADMIN_ROLE].add(admin)
        self.members[EMERGENCY_ADMIN_ROLE].add(admin)

    def has_role(self, role: str, account: str) -> bool:
        return account in self.members.get(role, ())

    def require_role(self, role: str, account: str) -> None:
        if not self.has_role(role, account):
            raise Unauthorized(f"Invalid caller: {account} lacks {role}")

    def grant_role(self, caller: str, role: str, account: str) -> None:
        self.require_role(ADMIN_ROLE, caller)
        if role not in self.members:
            raise ValueError(f"Unknown role: {role}")
        self.members[role].add(account)

    def revoke_role(self, caller: str, role: str, account: str) -> None:
        self.require_role(ADMIN_ROLE, caller)
        self.members.get(role, set()).discard(account)
