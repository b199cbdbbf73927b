# Authorization dependencies for ShillMarket routes

from fastapi import HTTPException, status, Depends

from database.models import Agent
from auth.roles import Permission, has_any_permission
from auth.dependencies import get_current_agent


class AuthError(HTTPException):
    """Custom exception for authentication/authorization errors."""

    def __init__(self, detail: str, status_code: int = status.HTTP_403_FORBIDDEN):
        super().__init__(status_code=status_code, detail=detail)


def require_permission(*permissions: Permission):
    """Dependency that requires the agent to have any of the given permissions."""
    async def dependency(current_agent: Agent = Depends(get_current_agent)) -> Agent:
        if not has_any_permission(current_agent.role, list(permissions)):
            raise AuthError(detail="You don't have permission to perform this action")
        return current_agent

    return dependency
