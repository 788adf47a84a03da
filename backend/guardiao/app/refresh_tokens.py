"""Opaque refresh tokens bound to a single user and stored in the cache."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from .errors import UnauthorizedError
from .logging import get_logger
from .security import generate_refresh_token, hash_token
from .storage import CacheBackend


logger = get_logger("guardiao.refresh_tokens")

INVALID_REFRESH_MESSAGE = "Refresh token inválido ou expirado"


class RefreshTokenStore:
    """Issue, rotate and revoke single-use refresh tokens.

    Records are keyed by the SHA-256 of the token so a cache dump never
    exposes usable tokens. Each record carries the user id it was issued for;
    rotation always re-issues for that same id. Records also carry the
    user's revocation generation at issue time; ``revoke_for_user`` bumps
    the generation, which invalidates every record issued before it.
    """

    def __init__(self, *, cache: CacheBackend, ttl_seconds: int, namespace: str = "auth:refresh") -> None:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be at least 1")
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._namespace = namespace

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _make_key(self, token: str) -> str:
        return f"{self._namespace}:{hash_token(token)}"

    def _generation_key(self, user_id: str) -> str:
        return f"{self._namespace}:generation:{user_id}"

    async def _generation(self, user_id: str) -> int:
        raw = await self._cache.get(self._generation_key(user_id))
        if raw is None:
            return 0
        try:
            return int(raw.decode("utf-8"))
        except (ValueError, AttributeError):
            return 0

    async def issue(self, user_id: str) -> tuple[str, datetime]:
        token = generate_refresh_token()
        expires_at = self._now() + timedelta(seconds=self._ttl_seconds)
        record = {
            "user_id": str(user_id),
            "expires_at": expires_at.isoformat(),
            "generation": await self._generation(str(user_id)),
        }
        await self._cache.set(
            self._make_key(token),
            json.dumps(record).encode("utf-8"),
            self._ttl_seconds,
        )
        return token, expires_at

    async def rotate(self, token: str) -> tuple[str, str, datetime]:
        """Consume ``token`` and return ``(user_id, new_token, expires_at)``."""

        if not token:
            raise UnauthorizedError(INVALID_REFRESH_MESSAGE, error="INVALID_REFRESH_TOKEN")

        raw = await self._cache.pop(self._make_key(token))
        if raw is None:
            logger.warning("refresh_token_rejected", reason="unknown_or_reused")
            raise UnauthorizedError(INVALID_REFRESH_MESSAGE, error="INVALID_REFRESH_TOKEN")

        try:
            record = json.loads(raw)
            user_id = str(record["user_id"])
            expires_at = datetime.fromisoformat(record["expires_at"])
            generation = int(record.get("generation", 0))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("refresh_token_rejected", reason="corrupt_record")
            raise UnauthorizedError(INVALID_REFRESH_MESSAGE, error="INVALID_REFRESH_TOKEN") from exc

        if expires_at <= self._now():
            logger.warning("refresh_token_rejected", reason="expired", user_id=user_id)
            raise UnauthorizedError(INVALID_REFRESH_MESSAGE, error="INVALID_REFRESH_TOKEN")

        if generation < await self._generation(user_id):
            logger.warning("refresh_token_rejected", reason="revoked", user_id=user_id)
            raise UnauthorizedError(INVALID_REFRESH_MESSAGE, error="INVALID_REFRESH_TOKEN")

        new_token, new_expires_at = await self.issue(user_id)
        return user_id, new_token, new_expires_at

    async def revoke(self, token: str | None) -> None:
        if not token:
            return
        await self._cache.delete(self._make_key(token))

    async def revoke_for_user(self, user_id: str) -> None:
        """Invalidate every refresh token issued to ``user_id`` so far."""

        user_id = str(user_id)
        generation = await self._generation(user_id) + 1
        # no TTL: an expired counter would restart at zero and re-admit live tokens
        await self._cache.set(self._generation_key(user_id), str(generation).encode("utf-8"))
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, generation=generation)


__all__ = ["INVALID_REFRESH_MESSAGE", "RefreshTokenStore"]
