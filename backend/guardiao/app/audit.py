"""Utilities for recording audit trail events."""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import AuditLog
from .logging import get_logger


logger = get_logger("guardiao.audit")


class AuditAction:
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_MFA_REQUIRED = "LOGIN_MFA_REQUIRED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_VERIFIED = "MFA_VERIFIED"
    MFA_FAILED = "MFA_FAILED"
    MFA_DISABLED = "MFA_DISABLED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    USER_REGISTERED = "USER_REGISTERED"
    LOGOUT = "LOGOUT"
    REFRESH_TOKEN = "REFRESH_TOKEN"
    CONSENT_CREATED = "CONSENT_CREATED"
    CONSENT_UPDATED = "CONSENT_UPDATED"
    CONSENT_REVOKED = "CONSENT_REVOKED"
    CONSENT_DELETED = "CONSENT_DELETED"
    CONSENT_EXPORTED = "CONSENT_EXPORTED"
    DSAR_CREATED = "DSAR_CREATED"
    DSAR_UPDATED = "DSAR_UPDATED"


def compute_integrity_hash(
    action: str,
    user_id: str | None,
    ip_address: str | None,
    occurred_at: datetime,
) -> str:
    epoch_ms = int(occurred_at.timestamp() * 1000)
    material = f"{action}|{user_id or 'anonymous'}|{ip_address}|{epoch_ms}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class AuditRecorder:
    """Best-effort writer for the ``audit_logs`` table.

    Every call uses its own session so a failed request transaction never
    drops the audit row, and an audit failure never breaks the request.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        action: str,
        *,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        detail: Mapping[str, Any] | None = None,
        table: str = "users",
    ) -> AuditLog | None:
        occurred_at = datetime.now(timezone.utc)
        entry = AuditLog(
            usuario_id=user_id,
            acao=action,
            tabela_afetada=table,
            dados=dict(detail or {}),
            ip_address=ip_address,
            user_agent=(user_agent or "")[:255] or None,
            timestamp=occurred_at,
            hash_registro=compute_integrity_hash(action, user_id, ip_address, occurred_at),
        )
        try:
            async with self._session_factory() as session:
                session.add(entry)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            logger.error("audit_write_failed", action=action, user_id=user_id, error=str(exc))
            return None
        return entry


__all__ = ["AuditAction", "AuditRecorder", "compute_integrity_hash"]
