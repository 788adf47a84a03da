"""Common FastAPI dependency helpers."""
from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer, SecurityScopes
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import create_session, get_session
from ..db.models import User, UserRole
from .audit import AuditRecorder
from .bruteforce import LoginThrottle
from .config import settings
from .email import EmailDispatcher
from .errors import ApiError, ForbiddenError, UnauthorizedError
from .logging import get_logger
from .refresh_tokens import RefreshTokenStore
from .security import TokenData, decode_access_token
from .storage import build_cache
from .timeutils import ensure_aware, utcnow


logger = get_logger("guardiao.auth")

_bearer_scheme = HTTPBearer(auto_error=False)

_email_dispatcher = EmailDispatcher()
_cache = build_cache(settings.redis_url)
_refresh_token_store = RefreshTokenStore(
    cache=_cache,
    ttl_seconds=settings.auth.refresh_token_ttl_seconds,
    namespace=settings.auth.refresh_token_namespace,
)
_login_throttle = LoginThrottle(
    cache=_cache,
    max_attempts=settings.auth.login_rate_limit_attempts,
    window_seconds=settings.auth.login_rate_limit_window_seconds,
    namespace=settings.auth.login_rate_limit_namespace,
)
_audit_recorder = AuditRecorder(create_session)


def get_email_dispatcher() -> EmailDispatcher:
    """Return the configured e-mail dispatcher instance."""

    return _email_dispatcher


def get_refresh_token_store() -> RefreshTokenStore:
    return _refresh_token_store


def get_login_throttle() -> LoginThrottle:
    return _login_throttle


def get_audit_recorder() -> AuditRecorder:
    return _audit_recorder


def extract_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",", 1)[0].strip()
        if candidate:
            return candidate
    client = request.client
    if client and client.host:
        return client.host
    return "unknown"


BLOCKED_MESSAGE = "Conta bloqueada por administrador"
TERM_UNSIGNED_MESSAGE = "Termo de confidencialidade não assinado"
TERM_EXPIRED_MESSAGE = "Termo de confidencialidade vencido"


def ensure_account_policies(user: User) -> None:
    """Raise when a blocked account or confidentiality term forbids access."""

    if user.bloqueado:
        raise ForbiddenError(BLOCKED_MESSAGE, error="ACCOUNT_BLOCKED")
    if not user.termo_confid_assinado:
        raise ForbiddenError(TERM_UNSIGNED_MESSAGE, error="TERM_NOT_SIGNED")
    validade = ensure_aware(user.termo_validade)
    if validade is not None and validade < utcnow():
        raise ForbiddenError(TERM_EXPIRED_MESSAGE, error="TERM_EXPIRED")


async def _get_token_data(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> TokenData:
    if credentials is None:
        raise UnauthorizedError("Não autenticado", error="NOT_AUTHENTICATED")
    return decode_access_token(credentials.credentials)


def _normalise_role(role: UserRole | str) -> str:
    return role.value if isinstance(role, UserRole) else str(role).upper()


async def _load_active_user(db: AsyncSession, token: TokenData) -> User:
    result = await db.execute(select(User).where(User.id == token.subject))
    user = result.scalars().first()
    if user is None:
        raise UnauthorizedError("Token inválido", error="INVALID_TOKEN")
    if not user.ativo:
        raise UnauthorizedError("Conta desativada", error="ACCOUNT_DISABLED")
    ensure_account_policies(user)
    return user


async def get_current_user(
    security_scopes: SecurityScopes,
    token: TokenData = Depends(_get_token_data),
    db: AsyncSession = Depends(get_session),
) -> User:
    user = await _load_active_user(db, token)

    required_roles = sorted({_normalise_role(scope) for scope in security_scopes.scopes})
    if required_roles:
        user_role = _normalise_role(user.tipo)
        if user_role not in required_roles:
            logger.warning(
                "insufficient_role",
                user_id=user.id,
                user_role=user_role,
                required_roles=required_roles,
            )
            raise ForbiddenError(
                "Acesso negado: você não possui permissão para esta ação",
                error="INSUFFICIENT_ROLE",
                extra={"requiredRoles": required_roles, "userRole": user_role},
            )

    setattr(user, "token_data", token)
    return user


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_session),
) -> User | None:
    """Resolve the caller when a usable bearer token is sent, else ``None``."""

    if credentials is None:
        return None
    try:
        token = decode_access_token(credentials.credentials)
        return await _load_active_user(db, token)
    except ApiError:
        return None


def RequireRoles(*roles: UserRole | str) -> Callable:
    """Ensure the current user carries one of the supplied roles."""

    if not roles:
        raise ValueError("At least one role must be provided")
    required = sorted({_normalise_role(role) for role in roles})

    async def dependency(
        current_user: User = Security(get_current_user, scopes=required),
    ) -> User:
        return current_user

    return dependency


__all__ = [
    "BLOCKED_MESSAGE",
    "RequireRoles",
    "TERM_EXPIRED_MESSAGE",
    "TERM_UNSIGNED_MESSAGE",
    "ensure_account_policies",
    "extract_client_ip",
    "get_audit_recorder",
    "get_current_user",
    "get_email_dispatcher",
    "get_login_throttle",
    "get_optional_user",
    "get_refresh_token_store",
    "get_session",
]
