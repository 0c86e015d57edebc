"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cto_engine.api.routes import (
    applications_router,
    approver_settings_router,
    credits_router,
    health_router,
)
from cto_engine.config import Settings, get_settings
from cto_engine.database import dispose_db, init_db
from cto_engine.engine import CtoEngine
from cto_engine.errors import (
    ConflictError,
    CtoError,
    ForbiddenError,
    InsufficientBalanceError,
    NotFoundError,
    OrderError,
    ValidationError,
)
from cto_engine.events import AsyncEventEmitter
from cto_engine.notifications import Notifier

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[CtoError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InsufficientBalanceError: status.HTTP_409_CONFLICT,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    OrderError: status.HTTP_409_CONFLICT,
    ConflictError: status.HTTP_409_CONFLICT,
    NotFoundError: status.HTTP_404_NOT_FOUND,
}


def status_for(exc: CtoError) -> int:
    """HTTP status code for a business error."""
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    emitter: AsyncEventEmitter | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Without a session factory the global database engine is used and
    disposed on shutdown.
    """
    settings = settings or get_settings()

    def wire(factory: async_sessionmaker[AsyncSession]) -> None:
        app.state.session_factory = factory
        app.state.engine = CtoEngine.create(factory, settings, emitter=emitter, notifier=notifier)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        owns_engine = session_factory is None
        if owns_engine:
            _, factory = init_db()
            wire(factory)
        yield
        # Let queued notifications finish before the database goes away
        await app.state.engine.emitter.aclose()
        if owns_engine:
            await dispose_db()

    app = FastAPI(
        title="CTO Engine API",
        description="Compensatory time off ledger and approvals",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if session_factory is not None:
        wire(session_factory)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(CtoError)
    async def cto_error_handler(request: Request, exc: CtoError) -> JSONResponse:
        """Map business errors to HTTP responses."""
        code = status_for(exc)
        logger.info("%s %s -> %d %s", request.method, request.url.path, code, exc.code)
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(credits_router, prefix="/api/v1")
    app.include_router(applications_router, prefix="/api/v1")
    app.include_router(approver_settings_router, prefix="/api/v1")

    return app
