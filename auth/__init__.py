# Auth module for ShillMarket
# Provides role-based access control and authentication dependencies

from auth.roles import (
    Permission,
    ROLE_PERMISSIONS,
    Capability,
    get_permissions_for_role,
    has_permission,
    has_any_permission,
    capability_for,
    allow_all,
)

from auth.decorators import (
    AuthError,
    require_permission,
)

from auth.dependencies import get_current_agent, decode_access_token

__all__ = [
    # Roles
    "Permission",
    "ROLE_PERMISSIONS",
    "Capability",
    "get_permissions_for_role",
    "has_permission",
    "has_any_permission",
    "capability_for",
    "allow_all",

    # Dependencies
    "AuthError",
    "require_permission",
    "get_current_agent",
    "decode_access_token",
]
