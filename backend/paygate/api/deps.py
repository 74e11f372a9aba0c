"""API dependencies for authentication and access to application services."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.core.security import hash_session_token
from paygate.database import get_db
from paygate.models.user import User
from paygate.services.commands import PaymentCommands
from paygate.services.settlement_service import SettlementEngine


async def get_current_user(
    authorization: Optional[str] = Header(None, description="Bearer session token"),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Dependency that validates the bearer session token and returns the user.

    Args:
        authorization: ``Bearer <token>`` header
        db: Database session

    Returns:
        User: The authenticated user

    Raises:
        HTTPException: 401 if the token is missing or unknown
    """
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _invalid_session()

    result = await db.execute(
        select(User).where(User.session_token_hash == hash_session_token(token.strip()))
    )
    user = result.scalar_one_or_none()

    if not user:
        raise _invalid_session()
    return user


def _invalid_session() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "code": "INVALID_SESSION",
            "message": "Invalid or expired session token"
        }
    )


def get_engine(request: Request) -> SettlementEngine:
    return request.app.state.engine


def get_commands(request: Request) -> PaymentCommands:
    return request.app.state.commands
