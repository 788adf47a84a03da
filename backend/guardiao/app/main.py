"""FastAPI application factory for the Guardião LGPD API."""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ..db.base import create_engine, dispose_engine
from .config import settings
from .errors import register_exception_handlers
from .logging import bind_contextvars, clear_contextvars
from .routes import auth, consentimentos, dsar


@asynccontextmanager
async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via integration tests
    """Initialise and tear down shared application resources."""

    create_engine(settings.database_url, echo=settings.sqlalchemy_echo)
    try:
        yield
    finally:
        await dispose_engine()


async def _request_context(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    clear_contextvars()
    bind_contextvars(request_id=request_id, path=request.url.path, method=request.method)
    try:
        response = await call_next(request)
    finally:
        clear_contextvars()
    response.headers["X-Request-ID"] = request_id
    return response


def create_app(*, api_prefix: str | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Parameters
    ----------
    api_prefix:
        Optional path prefix under which the API routers are mounted. When
        ``None`` the routers are mounted at the application root, which is
        what the test-suite uses; production mounts them under ``"/api"``.
    """

    app = FastAPI(title="Guardião LGPD", version="1.0", lifespan=_lifespan)

    if settings.env == "dev":
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.middleware("http")(_request_context)
    register_exception_handlers(app)

    router_prefix = (api_prefix or "").rstrip("/")
    if router_prefix and not router_prefix.startswith("/"):
        router_prefix = f"/{router_prefix}"

    for module in (auth, consentimentos, dsar):
        app.include_router(module.router, prefix=router_prefix)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app(api_prefix="/api")
