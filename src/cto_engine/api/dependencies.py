"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from cto_engine.engine import CtoEngine


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with request.app.state.session_factory() as session:
        yield session


def get_engine(request: Request) -> CtoEngine:
    """Engine wired at application startup."""
    return request.app.state.engine


async def get_actor_id(
    x_actor_id: Annotated[str | None, Header()] = None
) -> UUID:
    """Extract the acting employee from header."""
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-ID header is required",
        )
    try:
        return UUID(x_actor_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Actor-ID format",
        )


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Engine = Annotated[CtoEngine, Depends(get_engine)]
ActorId = Annotated[UUID, Depends(get_actor_id)]
