"""Common test fixtures for Guardião API tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from backend.guardiao.app.audit import AuditRecorder
from backend.guardiao.app.bruteforce import LoginThrottle
from backend.guardiao.app.config import settings
from backend.guardiao.app.dependencies import (
    get_audit_recorder,
    get_email_dispatcher,
    get_login_throttle,
    get_refresh_token_store,
    get_session,
)
from backend.guardiao.app.email import EmailDispatcher
from backend.guardiao.app.main import create_app
from backend.guardiao.app.refresh_tokens import RefreshTokenStore
from backend.guardiao.app.storage import MemoryCache
from backend.guardiao.db.base import create_engine, create_schema, create_session, dispose_engine


class InMemoryEmailDispatcher(EmailDispatcher):
    def __init__(self) -> None:
        super().__init__()
        self.outbox: list[dict[str, Any]] = []

    async def send_mfa_setup_email(self, *, email: str, nome: str, qr_code_url: str) -> None:
        self.outbox.append(
            {"type": "mfa_setup", "email": email, "nome": nome, "qr_code_url": qr_code_url}
        )

    async def send_dsar_notification(
        self,
        *,
        email: str,
        protocolo: str,
        tipo_direito: str,
        titular_nome: str,
        prazo,
    ) -> None:
        self.outbox.append(
            {
                "type": "dsar_notification",
                "email": email,
                "protocolo": protocolo,
                "tipo_direito": tipo_direito,
                "titular_nome": titular_nome,
                "prazo": prazo,
            }
        )

    async def send_dsar_response(
        self,
        *,
        email: str,
        protocolo: str,
        status: str,
        resposta: str,
    ) -> None:
        self.outbox.append(
            {
                "type": "dsar_response",
                "email": email,
                "protocolo": protocolo,
                "status": status,
                "resposta": resposta,
                "url": self.dsar_url(protocolo),
            }
        )


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Cheap bcrypt, plain-HTTP cookies and a private attachments folder."""

    monkeypatch.setattr(settings.auth, "bcrypt_rounds", 4)
    monkeypatch.setattr(settings.auth, "cookie_secure", False)
    attachments = tmp_path / "dsar-anexos"
    attachments.mkdir()
    monkeypatch.setattr(settings.dsar, "attachments_dir", attachments)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """Return a SQLite database URL located in a temporary directory."""

    return f"sqlite+aiosqlite:///{tmp_path / 'test.sqlite3'}"


@pytest_asyncio.fixture
async def db_engine(db_url: str) -> AsyncIterator[AsyncEngine]:
    """Initialise the global async engine and create the schema."""

    engine = create_engine(db_url, echo=False)
    await create_schema()
    try:
        yield engine
    finally:
        await dispose_engine()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Yield an :class:`AsyncSession` bound to the test database."""

    session = create_session()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> Callable[[], AsyncSession]:
    """Provide a helper to create fresh async sessions on demand."""

    def factory() -> AsyncSession:
        return create_session()

    return factory


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def refresh_store(cache: MemoryCache) -> RefreshTokenStore:
    return RefreshTokenStore(
        cache=cache,
        ttl_seconds=settings.auth.refresh_token_ttl_seconds,
        namespace=settings.auth.refresh_token_namespace,
    )


@pytest.fixture
def login_throttle(cache: MemoryCache) -> LoginThrottle:
    return LoginThrottle(
        cache=cache,
        max_attempts=settings.auth.login_rate_limit_attempts,
        window_seconds=settings.auth.login_rate_limit_window_seconds,
        namespace=settings.auth.login_rate_limit_namespace,
    )


@pytest.fixture
def audit_recorder(session_factory: Callable[[], AsyncSession]) -> AuditRecorder:
    return AuditRecorder(session_factory)


@pytest.fixture
def app(
    session_factory: Callable[[], AsyncSession],
    refresh_store: RefreshTokenStore,
    login_throttle: LoginThrottle,
    audit_recorder: AuditRecorder,
):
    """Create a FastAPI test application with storage overrides."""

    application = create_app()
    email_dispatcher = InMemoryEmailDispatcher()

    async def _override_session():
        session = session_factory()
        try:
            yield session
        finally:
            await session.close()

    application.dependency_overrides[get_session] = _override_session
    application.dependency_overrides[get_email_dispatcher] = lambda: email_dispatcher
    application.dependency_overrides[get_refresh_token_store] = lambda: refresh_store
    application.dependency_overrides[get_login_throttle] = lambda: login_throttle
    application.dependency_overrides[get_audit_recorder] = lambda: audit_recorder
    application.state.email_dispatcher = email_dispatcher
    return application


@pytest.fixture
def email_outbox(app) -> list[dict[str, Any]]:
    dispatcher: InMemoryEmailDispatcher = app.state.email_dispatcher
    dispatcher.outbox.clear()
    return dispatcher.outbox


@pytest_asyncio.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
        headers={"user-agent": "pytest-agent"},
    ) as http_client:
        yield http_client
