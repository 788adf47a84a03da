"""Password hashing and access token helpers for the Guardião API."""
from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
import jwt
from fastapi.concurrency import run_in_threadpool
from jwt import InvalidTokenError

from .config import settings
from .errors import UnauthorizedError


def hash_password(password: str) -> str:
    """Hash a password with bcrypt using the configured cost factor."""

    salt = bcrypt.gensalt(rounds=settings.auth.bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(stored_hash: str, candidate: str) -> bool:
    """Verify a plaintext password against the stored bcrypt hash."""

    try:
        return bcrypt.checkpw(candidate.encode("utf-8"), stored_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash or a candidate over bcrypt's 72 byte limit.
        return False


async def hash_password_async(password: str) -> str:
    return await run_in_threadpool(hash_password, password)


async def verify_password_async(stored_hash: str, candidate: str) -> bool:
    return await run_in_threadpool(verify_password, stored_hash, candidate)


def _jwt_error(detail: str) -> UnauthorizedError:
    """Return a standardised 401 error for JWT failures."""

    return UnauthorizedError(detail, error="INVALID_TOKEN")


@dataclass(frozen=True)
class TokenData:
    """Validated access token payload."""

    subject: str
    email: str | None
    role: str | None
    controladora_id: str | None
    expires_at: datetime
    claims: dict[str, Any]


def issue_access_token(user: Any, *, expires_in: int | None = None) -> tuple[str, datetime]:
    """Sign a short lived HS256 access token for ``user``."""

    now = datetime.now(timezone.utc)
    ttl = expires_in or settings.auth.access_token_ttl_seconds
    exp = now + timedelta(seconds=ttl)
    role = getattr(user.tipo, "value", user.tipo)
    payload: dict[str, Any] = {
        "sub": str(user.id),
        "email": user.email,
        "tipo": role,
        "controladoraId": user.controladora_id,
        "type": "access",
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    token = jwt.encode(payload, settings.auth.jwt_secret, algorithm="HS256")
    return token, exp


def decode_access_token(token: str) -> TokenData:
    """Validate ``token`` and return its payload."""

    try:
        payload = jwt.decode(
            token,
            settings.auth.jwt_secret,
            algorithms=["HS256"],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise _jwt_error("Token expirado") from exc
    except InvalidTokenError as exc:
        raise _jwt_error("Token inválido") from exc

    if payload.get("type", "access") != "access":
        raise _jwt_error("Token inválido")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise _jwt_error("Token inválido")

    return TokenData(
        subject=subject,
        email=payload.get("email"),
        role=payload.get("tipo"),
        controladora_id=payload.get("controladoraId"),
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        claims=dict(payload),
    )


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def hash_token(token: str) -> str:
    """Hash opaque tokens and backup codes before they are persisted."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


__all__ = [
    "TokenData",
    "decode_access_token",
    "generate_refresh_token",
    "hash_password",
    "hash_password_async",
    "hash_token",
    "issue_access_token",
    "verify_password",
    "verify_password_async",
]
