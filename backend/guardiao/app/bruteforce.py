"""Login attempt throttling."""
from __future__ import annotations

from dataclasses import dataclass

from .storage import CacheBackend


@dataclass(frozen=True, slots=True)
class ThrottleStatus:
    """Failure count for an (email, IP) pair inside the current window."""

    failures: int
    blocked: bool


class LoginThrottle:
    """Track failed logins per e-mail and client address."""

    def __init__(
        self,
        *,
        cache: CacheBackend,
        max_attempts: int,
        window_seconds: int,
        namespace: str = "auth:login",
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")

        self._cache = cache
        self._max_attempts = max_attempts
        self._window_seconds = window_seconds
        self._namespace = namespace

    def _make_key(self, email: str, ip_address: str | None) -> str:
        return f"{self._namespace}:{self._normalise_email(email)}:{self._normalise_ip(ip_address)}"

    @staticmethod
    def _normalise_email(email: str) -> str:
        return email.strip().lower()

    @staticmethod
    def _normalise_ip(ip_address: str | None) -> str:
        if not ip_address:
            return "unknown"
        cleaned = ip_address.strip()
        return cleaned or "unknown"

    async def _get_count(self, key: str) -> int:
        raw = await self._cache.get(key)
        if raw is None:
            return 0
        try:
            return int(raw.decode("utf-8"))
        except (ValueError, AttributeError):
            return 0

    async def evaluate(self, *, email: str, ip_address: str | None) -> ThrottleStatus:
        failures = await self._get_count(self._make_key(email, ip_address))
        return ThrottleStatus(failures=failures, blocked=failures >= self._max_attempts)

    async def register_failure(self, *, email: str, ip_address: str | None) -> ThrottleStatus:
        key = self._make_key(email, ip_address)
        failures = await self._get_count(key) + 1
        await self._cache.set(key, str(failures).encode("utf-8"), self._window_seconds)
        return ThrottleStatus(failures=failures, blocked=failures >= self._max_attempts)

    async def reset(self, *, email: str, ip_address: str | None) -> None:
        await self._cache.delete(self._make_key(email, ip_address))


__all__ = ["LoginThrottle", "ThrottleStatus"]
