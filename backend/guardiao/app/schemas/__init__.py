"""Pydantic request models shared by the API routers."""

from .consentimentos import (
    CreateConsentimentoRequest,
    RevogarConsentimentoRequest,
    UpdateConsentimentoRequest,
)
from .dsar import CreateDsarRequest, UpdateDsarStatusRequest

__all__ = [
    "CreateConsentimentoRequest",
    "CreateDsarRequest",
    "RevogarConsentimentoRequest",
    "UpdateConsentimentoRequest",
    "UpdateDsarStatusRequest",
]
