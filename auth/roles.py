# Role-Based Access Control for ShillMarket
# Defines agent permissions and the capability predicates handed to the
# order state machine.

from enum import Enum
from typing import Callable, List, Set

from database.models import AgentRole


class Permission(str, Enum):
    """Fine-grained permissions for the order pipeline."""

    # Requester permissions
    ACCEPT_OFFERS = "accept_offers"
    CONFIRM_ESCROW = "confirm_escrow"

    # Fulfiller permissions
    SUBMIT_PROOF = "submit_proof"

    # Common permissions
    VIEW_OWN_ORDERS = "view_own_orders"

    # Admin permissions
    RECONCILE_ORDERS = "reconcile_orders"


ROLE_PERMISSIONS = {
    AgentRole.REQUESTER: {
        Permission.ACCEPT_OFFERS,
        Permission.CONFIRM_ESCROW,
        Permission.VIEW_OWN_ORDERS,
    },
    AgentRole.FULFILLER: {
        Permission.SUBMIT_PROOF,
        Permission.VIEW_OWN_ORDERS,
    },
    AgentRole.ADMIN: set(Permission),
}

# A capability answers "may the acting agent do X?"
Capability = Callable[[Permission], bool]


def get_permissions_for_role(role: AgentRole) -> Set[Permission]:
    """Get all permissions for a role."""
    return ROLE_PERMISSIONS.get(role, set())


def has_permission(role: AgentRole, permission: Permission) -> bool:
    """Check if a role has a specific permission."""
    return permission in get_permissions_for_role(role)


def has_any_permission(role: AgentRole, permissions: List[Permission]) -> bool:
    """Check if a role has any of the specified permissions."""
    granted = get_permissions_for_role(role)
    return any(p in granted for p in permissions)


def capability_for(role: AgentRole) -> Capability:
    """Capability predicate bound to one role."""
    def capability(permission: Permission) -> bool:
        return has_permission(role, permission)
    return capability


def allow_all(permission: Permission) -> bool:
    """Capability for trusted internal callers."""
    return True
