from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from cvflow.core.security import decode_principal
from cvflow.db.session import get_session


async def get_db_session(session: AsyncSession = Depends(get_session)) -> AsyncSession:
    return session


async def get_current_principal(request: Request) -> str | None:
    """E-mail of the caller from a Bearer token or the access_token cookie, if any."""
    token = None
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
    if not token:
        token = request.cookies.get("access_token")
    if not token:
        return None
    return decode_principal(token)


async def require_principal(
    principal: str | None = Depends(get_current_principal),
) -> str:
    if not principal:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal
