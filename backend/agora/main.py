import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from agora.api.auth import build_facebook_router
from agora.api.graphql import build_graphql_router
from agora.api.router import api_router
from agora.config import Settings, get_settings
from agora.database import create_engine, create_session_maker
from agora.services.session_store import SessionStore
from agora.utils.facebook import FacebookProvider
from agora.utils.session import SessionMiddleware

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-DNS-Prefetch-Control": "off",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
}


def _validation_errors(exc: RequestValidationError | ValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({"field": field, "message": error["msg"]})

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Validation error",
            "errors": errors,
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    identity_provider: Optional[FacebookProvider] = None,
) -> FastAPI:
    """Build the API application.

    Everything is wired from ``settings``; tests pass their own session maker
    and identity provider instead of the configured database and Facebook.
    """
    settings = settings or get_settings()
    settings.validate_security()

    engine: Optional[AsyncEngine] = None
    if session_maker is None:
        engine = create_engine(settings)
        session_maker = create_session_maker(engine)

    session_store = SessionStore(session_maker, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "Starting %s (environment=%s, graphql=%s)",
            settings.app_name,
            settings.environment,
            settings.graphql_path,
        )
        if settings.session_cookie_secure is None:
            logger.info("Session cookies are marked secure for TLS requests")
        yield
        if engine is not None:
            await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        description="Social API with session cookies and Facebook login",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_maker = session_maker
    app.state.session_store = session_store
    app.state.identity_provider = identity_provider or FacebookProvider(settings)

    # Innermost first: sessions must wrap the routes, CORS must wrap everything
    app.add_middleware(SessionMiddleware, settings=settings, store=session_store)

    @app.middleware("http")
    async def security_headers(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        if settings.in_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=15552000; includeSubDomains"
            )
        return response

    # Enable GZip compression for responses > 500 bytes
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.client_addr],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api")
    app.include_router(build_graphql_router(settings), prefix=settings.graphql_path)
    app.include_router(build_facebook_router(settings))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _validation_errors(exc)

    @app.exception_handler(ValidationError)
    async def pydantic_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _validation_errors(exc)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")

        # Don't expose internal error details in production
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred. Please try again later.",
            },
        )

    return app


def run() -> None:
    """Console entry point: configure logging and serve with uvicorn."""
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=settings.app_port,
        proxy_headers=True,
        forwarded_allow_ips=settings.forwarded_allow_ips,
    )
