"""Ownership rules for consents and data subject requests.

Role checks answer "may this kind of user call the endpoint at all"; the
functions here answer "may this particular user touch this particular row".
They are evaluated against freshly loaded rows on every request.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional

from .errors import ForbiddenError


class Operation(str, enum.Enum):
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ResourceKind(str, enum.Enum):
    CONSENT = "CONSENT"
    DSAR = "DSAR"


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str
    tenant_id: Optional[str]

    @classmethod
    def from_user(cls, user: Any) -> "Caller":
        return cls(
            user_id=str(user.id),
            role=getattr(user.tipo, "value", user.tipo),
            tenant_id=user.controladora_id,
        )


@dataclass(frozen=True)
class ResourceOwnership:
    """Ownership facts of a single row.

    ``subject_user_id`` is the user account of the data subject (the titular
    linked user for consents, the requester for DSAR tickets) and
    ``collector_id`` is the agent who collected a consent.
    """

    kind: ResourceKind
    tenant_id: Optional[str]
    subject_user_id: Optional[str] = None
    collector_id: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(False, reason)


DEFAULT_DENY_REASON = "Acesso negado a este recurso"
TITULAR_UPDATE_DENIED = "Titular não tem permissão para alterar consentimentos"


def _same_tenant(caller: Caller, resource: ResourceOwnership) -> bool:
    return caller.tenant_id is not None and caller.tenant_id == resource.tenant_id


def _authorize_consent(operation: Operation, caller: Caller, resource: ResourceOwnership) -> Decision:
    if caller.role == "ROOT":
        return Decision.allow()
    if caller.role == "DPO":
        return Decision.allow() if _same_tenant(caller, resource) else Decision.deny(DEFAULT_DENY_REASON)
    if caller.role == "COLABORADOR":
        if _same_tenant(caller, resource) and resource.collector_id == caller.user_id:
            return Decision.allow()
        return Decision.deny(DEFAULT_DENY_REASON)
    if caller.role == "TITULAR":
        if resource.subject_user_id != caller.user_id:
            return Decision.deny(DEFAULT_DENY_REASON)
        if operation is Operation.UPDATE:
            return Decision.deny(TITULAR_UPDATE_DENIED)
        return Decision.allow()
    if caller.role == "PRESTADOR":
        if operation is Operation.READ and _same_tenant(caller, resource):
            return Decision.allow()
        return Decision.deny(DEFAULT_DENY_REASON)
    return Decision.deny(DEFAULT_DENY_REASON)


def _authorize_dsar(operation: Operation, caller: Caller, resource: ResourceOwnership) -> Decision:
    if caller.role == "ROOT":
        return Decision.allow()
    if caller.role == "DPO":
        if resource.tenant_id is None or _same_tenant(caller, resource):
            return Decision.allow()
        return Decision.deny(DEFAULT_DENY_REASON)
    if operation is Operation.READ and resource.subject_user_id == caller.user_id:
        return Decision.allow()
    return Decision.deny(DEFAULT_DENY_REASON)


def authorize(operation: Operation, caller: Caller, resource: ResourceOwnership) -> Decision:
    """Decide whether ``caller`` may perform ``operation`` on ``resource``."""

    if resource.kind is ResourceKind.CONSENT:
        return _authorize_consent(operation, caller, resource)
    return _authorize_dsar(operation, caller, resource)


def ensure_allowed(operation: Operation, caller: Caller, resource: ResourceOwnership) -> None:
    decision = authorize(operation, caller, resource)
    if not decision.allowed:
        raise ForbiddenError(decision.reason or DEFAULT_DENY_REASON, error="FORBIDDEN_RESOURCE")


__all__ = [
    "Caller",
    "Decision",
    "Operation",
    "ResourceKind",
    "ResourceOwnership",
    "TITULAR_UPDATE_DENIED",
    "authorize",
    "ensure_allowed",
]
