"""Request models for the data subject request endpoints."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ...db.models import StatusDsar


class CreateDsarRequest(BaseModel):
    """Portal request. ``tipo`` is validated by the service for clearer messages."""

    tipo: str = Field(min_length=1, max_length=64)
    nome: str = Field(min_length=3, max_length=150)
    cpf: str = Field(min_length=11, max_length=14)
    email: EmailStr
    telefone: Optional[str] = Field(default=None, max_length=20)
    descricao: Optional[str] = Field(default=None, max_length=1000)
    formato: Optional[str] = Field(default=None, max_length=8)

    model_config = ConfigDict(populate_by_name=True)


class UpdateDsarStatusRequest(BaseModel):
    status: StatusDsar
    resposta_dpo: str = Field(alias="respostaDpo", min_length=20, max_length=2000)
    anexo_url: Optional[str] = Field(default=None, alias="anexoUrl", max_length=500)
    anexo_path: Optional[str] = Field(default=None, alias="anexoPath", max_length=500)
    motivo_indeferimento: Optional[str] = Field(
        default=None, alias="motivoIndeferimento", min_length=10, max_length=500
    )

    model_config = ConfigDict(populate_by_name=True)


__all__ = ["CreateDsarRequest", "UpdateDsarStatusRequest"]
