"""Request models for the consent endpoints."""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


_IMMUTABLE_FIELDS = ("titular_id", "tipo_consentimento_id", "base_legal_id")


class CreateConsentimentoRequest(BaseModel):
    titular_id: str = Field(alias="titularId", min_length=1)
    tipo_consentimento_id: str = Field(alias="tipoConsentimentoId", min_length=1)
    base_legal_id: Optional[str] = Field(default=None, alias="baseLegalId")
    classificacao_dados: List[str] = Field(default_factory=list, alias="classificacaoDados")
    documentos_solicitados: List[str] = Field(default_factory=list, alias="documentosSolicitados")
    canal_coleta: Optional[str] = Field(default=None, alias="canalColeta", max_length=64)
    local_armazenamento: Optional[str] = Field(
        default=None, alias="localArmazenamento", max_length=255
    )
    anexo_prova: Optional[str] = Field(default=None, alias="anexoProva", max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class UpdateConsentimentoRequest(BaseModel):
    """Partial update. Identity fields are accepted only to be rejected."""

    titular_id: Optional[str] = Field(default=None, alias="titularId")
    tipo_consentimento_id: Optional[str] = Field(default=None, alias="tipoConsentimentoId")
    base_legal_id: Optional[str] = Field(default=None, alias="baseLegalId")
    classificacao_dados: Optional[List[str]] = Field(default=None, alias="classificacaoDados")
    documentos_solicitados: Optional[List[str]] = Field(
        default=None, alias="documentosSolicitados"
    )
    canal_coleta: Optional[str] = Field(default=None, alias="canalColeta", max_length=64)
    local_armazenamento: Optional[str] = Field(
        default=None, alias="localArmazenamento", max_length=255
    )
    anexo_prova: Optional[str] = Field(default=None, alias="anexoProva", max_length=500)

    model_config = ConfigDict(populate_by_name=True)

    def touches_immutable_fields(self) -> bool:
        return any(name in self.model_fields_set for name in _IMMUTABLE_FIELDS)


class RevogarConsentimentoRequest(BaseModel):
    motivo: str = Field(max_length=500)


__all__ = [
    "CreateConsentimentoRequest",
    "RevogarConsentimentoRequest",
    "UpdateConsentimentoRequest",
]
