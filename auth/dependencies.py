# Authentication Dependencies for ShillMarket
# Provides dependencies for getting the current agent from JWT token

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from jose import jwt, JWTError
from typing import Optional
from pydantic import BaseModel
import os

from database.config import get_db
from database.models import Agent


# JWT Configuration
JWT_SECRET = os.getenv("JWT_SECRET_KEY", "your-secret-key-here")
JWT_ALGORITHM = "HS256"

security = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    agent_id: Optional[str] = None


def decode_access_token(token: str) -> Optional[TokenData]:
    """Decode and validate JWT token. Tokens are issued by the identity service."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    agent_id = payload.get("sub")
    if agent_id is None:
        return None
    return TokenData(agent_id=str(agent_id))


async def get_current_agent(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Agent:
    """
    Validate JWT token and return current agent.
    This is the core authentication dependency.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = decode_access_token(credentials.credentials)
    if token_data is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    agent = db.query(Agent).filter(Agent.id == token_data.agent_id).first()
    if agent is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Agent not found"
        )

    return agent
