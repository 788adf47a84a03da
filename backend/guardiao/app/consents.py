"""Consent record management."""
from __future__ import annotations

import csv
import hashlib
import io
import json
import math
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import Select, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..db.models import (
    BaseLegal,
    Consentimento,
    StatusConsentimento,
    TipoConsentimento,
    Titular,
    User,
    UserRole,
)
from .errors import BadRequestError, ForbiddenError, NotFoundError
from .logging import get_logger
from .policy import ResourceKind, ResourceOwnership
from .schemas.consentimentos import CreateConsentimentoRequest, UpdateConsentimentoRequest
from .timeutils import ensure_aware, isoformat, utcnow


logger = get_logger("guardiao.consents")

EXPORT_COLUMNS = (
    "id",
    "titular_nome",
    "titular_cpf",
    "tipo_consentimento",
    "base_legal",
    "data_coleta",
    "status",
)


@dataclass(frozen=True)
class ConsentFilters:
    titular_id: str | None = None
    tipo_consentimento_id: str | None = None
    data_inicio: datetime | None = None
    data_fim: datetime | None = None


@dataclass(frozen=True)
class ExportedFile:
    content: bytes
    media_type: str
    filename: str


def mask_cpf(cpf: str | None) -> str | None:
    if not cpf or len(cpf) != 11:
        return None
    return f"***.{cpf[3:6]}.{cpf[6:9]}-**"


def page_meta(total: int, page: int, limit: int) -> dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


def _role(user: User) -> str:
    return getattr(user.tipo, "value", user.tipo)


class ConsentService:
    """Create, query and revoke consent records."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _compute_proof_hash(titular_id: str, tipo_id: str, anexo_prova: str | None) -> str:
        material = "-".join(
            (
                titular_id,
                tipo_id,
                anexo_prova or "",
                str(int(utcnow().timestamp() * 1000)),
                secrets.token_hex(8),
            )
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    @staticmethod
    def _base_query() -> Select[tuple[Consentimento]]:
        return select(Consentimento).options(
            selectinload(Consentimento.titular),
            selectinload(Consentimento.tipo_consentimento),
            selectinload(Consentimento.base_legal),
            selectinload(Consentimento.colaborador),
        )

    @staticmethod
    def ownership(consent: Consentimento) -> ResourceOwnership:
        titular = consent.titular
        return ResourceOwnership(
            kind=ResourceKind.CONSENT,
            tenant_id=titular.controladora_id if titular else None,
            subject_user_id=titular.usuario_id if titular else None,
            collector_id=consent.colaborador_id,
        )

    async def _validate_tipo(self, tipo_id: str, caller: User) -> TipoConsentimento:
        tipo = await self._session.get(TipoConsentimento, tipo_id)
        if tipo is None:
            raise NotFoundError("Tipo de consentimento não encontrado")
        if not tipo.ativo:
            raise ForbiddenError("Tipo de consentimento inativo")
        if _role(caller) != UserRole.ROOT.value and tipo.controladora_id != caller.controladora_id:
            raise ForbiddenError("Tipo de consentimento não pertence à sua controladora")
        return tipo

    async def create(self, payload: CreateConsentimentoRequest, collector: User) -> Consentimento:
        tipo = await self._validate_tipo(payload.tipo_consentimento_id, collector)
        if tipo.exige_prova_fisica and not (payload.anexo_prova or "").strip():
            raise BadRequestError("Este tipo de consentimento exige anexo de prova física")

        base_legal_id = payload.base_legal_id or tipo.base_legal_padrao_id
        if not base_legal_id:
            raise BadRequestError("Base legal obrigatória para este tipo de consentimento")

        titular = await self._session.get(Titular, payload.titular_id)
        if titular is None:
            raise NotFoundError(f"Titular {payload.titular_id} não encontrado")
        if _role(collector) != UserRole.ROOT.value and titular.controladora_id != collector.controladora_id:
            raise ForbiddenError("Titular não pertence à sua controladora")

        if await self._session.get(BaseLegal, base_legal_id) is None:
            raise NotFoundError(f"Base legal {base_legal_id} não encontrada")

        consent = Consentimento(
            titular_id=titular.id,
            tipo_consentimento_id=tipo.id,
            base_legal_id=base_legal_id,
            colaborador_id=collector.id,
            classificacao_dados=list(payload.classificacao_dados),
            documentos_solicitados=list(payload.documentos_solicitados),
            canal_coleta=payload.canal_coleta,
            local_armazenamento=payload.local_armazenamento,
            anexo_prova=payload.anexo_prova,
            comprovante_hash=self._compute_proof_hash(titular.id, tipo.id, payload.anexo_prova),
            data_coleta=utcnow(),
            ativo=True,
            status=StatusConsentimento.ATIVO,
        )
        self._session.add(consent)
        await self._session.commit()
        logger.info(
            "consent_created",
            consent_id=consent.id,
            titular_id=titular.id,
            comprovante_hash=consent.comprovante_hash,
        )
        return await self.get(consent.id)

    def _scope_to_caller(self, stmt: Select, caller: User) -> Select:
        role = _role(caller)
        if role == UserRole.ROOT.value:
            return stmt
        stmt = stmt.where(Titular.controladora_id == caller.controladora_id)
        if role == UserRole.TITULAR.value:
            stmt = stmt.where(Titular.usuario_id == caller.id)
        return stmt

    async def list_consents(
        self,
        caller: User,
        filters: ConsentFilters,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Consentimento], dict[str, Any]]:
        stmt = (
            self._base_query()
            .join(Titular, Consentimento.titular_id == Titular.id)
            .where(Consentimento.ativo.is_(True))
        )
        stmt = self._scope_to_caller(stmt, caller)
        if filters.titular_id:
            stmt = stmt.where(Consentimento.titular_id == filters.titular_id)
        if filters.tipo_consentimento_id:
            stmt = stmt.where(Consentimento.tipo_consentimento_id == filters.tipo_consentimento_id)
        if filters.data_inicio:
            stmt = stmt.where(Consentimento.data_coleta >= ensure_aware(filters.data_inicio))
        if filters.data_fim:
            stmt = stmt.where(Consentimento.data_coleta <= ensure_aware(filters.data_fim))

        total = await self._session.scalar(select(func.count()).select_from(stmt.subquery()))
        rows = await self._session.execute(
            stmt.order_by(Consentimento.data_coleta.desc()).offset((page - 1) * limit).limit(limit)
        )
        return list(rows.scalars().all()), page_meta(int(total or 0), page, limit)

    async def get(self, consent_id: str) -> Consentimento:
        result = await self._session.execute(
            self._base_query()
            .where(Consentimento.id == consent_id)
            .execution_options(populate_existing=True)
        )
        consent = result.scalars().first()
        if consent is None:
            raise NotFoundError(f"Consentimento {consent_id} não encontrado")
        return consent

    async def update(self, consent: Consentimento, payload: UpdateConsentimentoRequest) -> Consentimento:
        if payload.touches_immutable_fields():
            raise ForbiddenError("Não é permitido alterar titular, tipo ou base legal após criação")
        if consent.status == StatusConsentimento.REVOGADO or not consent.ativo:
            raise BadRequestError("Consentimento revogado não pode ser alterado")

        changes = payload.model_dump(
            exclude_unset=True,
            exclude={"titular_id", "tipo_consentimento_id", "base_legal_id"},
        )
        for field, value in changes.items():
            if value is None and field in ("classificacao_dados", "documentos_solicitados"):
                continue
            setattr(consent, field, value)
        if "anexo_prova" in changes:
            consent.comprovante_hash = self._compute_proof_hash(
                consent.titular_id, consent.tipo_consentimento_id, consent.anexo_prova
            )
        await self._session.commit()
        logger.info("consent_updated", consent_id=consent.id, fields=sorted(changes))
        return await self.get(consent.id)

    async def revoke(self, consent: Consentimento, motivo: str | None) -> Consentimento:
        reason = (motivo or "").strip()
        if len(reason) < 5:
            raise BadRequestError("Motivo da revogação deve ter pelo menos 5 caracteres")
        if consent.status == StatusConsentimento.REVOGADO:
            raise BadRequestError("Este consentimento já foi revogado")

        result = await self._session.execute(
            update(Consentimento)
            .where(
                Consentimento.id == consent.id,
                Consentimento.status == StatusConsentimento.ATIVO,
            )
            .values(
                status=StatusConsentimento.REVOGADO,
                ativo=False,
                data_revogacao=utcnow(),
                motivo_revogacao=reason,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            await self._session.rollback()
            raise BadRequestError("Este consentimento já foi revogado")
        await self._session.commit()
        logger.info("consent_revoked", consent_id=consent.id)
        return await self.get(consent.id)

    async def remove(self, consent: Consentimento) -> None:
        await self._session.delete(consent)
        await self._session.commit()
        logger.warning("consent_deleted", consent_id=consent.id)

    async def count_active(self, caller: User) -> int:
        stmt = (
            select(func.count(Consentimento.id))
            .join(Titular, Consentimento.titular_id == Titular.id)
            .where(Consentimento.status == StatusConsentimento.ATIVO)
        )
        stmt = self._scope_to_caller(stmt, caller)
        return int(await self._session.scalar(stmt) or 0)

    async def export(self, caller: User, fmt: str) -> ExportedFile:
        stmt = self._base_query().join(Titular, Consentimento.titular_id == Titular.id)
        stmt = self._scope_to_caller(stmt, caller).order_by(Consentimento.data_coleta.desc())
        consents = list((await self._session.execute(stmt)).scalars().all())

        filename = f"consentimentos_export_{utcnow().date().isoformat()}.{fmt}"
        if fmt == "csv":
            return ExportedFile(self._to_csv(consents), "text/csv", filename)
        payload = [serialize_consent(consent) for consent in consents]
        content = json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")
        return ExportedFile(content, "application/json", filename)

    @staticmethod
    def _to_csv(consents: Sequence[Consentimento]) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(EXPORT_COLUMNS)
        for consent in consents:
            writer.writerow(
                (
                    consent.id,
                    consent.titular.nome if consent.titular else "",
                    consent.titular.cpf if consent.titular else "",
                    consent.tipo_consentimento.nome if consent.tipo_consentimento else "",
                    consent.base_legal.codigo if consent.base_legal else "",
                    isoformat(consent.data_coleta),
                    consent.status.value,
                )
            )
        return buffer.getvalue().encode("utf-8")


def serialize_consent(consent: Consentimento) -> dict[str, Any]:
    titular = consent.titular
    tipo = consent.tipo_consentimento
    return {
        "id": consent.id,
        "titularId": consent.titular_id,
        "tipoConsentimentoId": consent.tipo_consentimento_id,
        "baseLegalId": consent.base_legal_id,
        "colaboradorId": consent.colaborador_id,
        "classificacaoDados": list(consent.classificacao_dados or []),
        "documentosSolicitados": list(consent.documentos_solicitados or []),
        "canalColeta": consent.canal_coleta,
        "localArmazenamento": consent.local_armazenamento,
        "anexoProva": consent.anexo_prova,
        "comprovanteHash": consent.comprovante_hash,
        "dataColeta": isoformat(consent.data_coleta),
        "dataRevogacao": isoformat(consent.data_revogacao),
        "motivoRevogacao": consent.motivo_revogacao,
        "ativo": consent.ativo,
        "status": consent.status.value,
        "createdAt": isoformat(consent.created_at),
        "updatedAt": isoformat(consent.updated_at),
        "titularNome": titular.nome if titular else None,
        "titularCpfMascarado": mask_cpf(titular.cpf) if titular else None,
        "tipoConsentimentoNome": (tipo.nome or tipo.codigo) if tipo else None,
        "baseLegalCodigo": consent.base_legal.codigo if consent.base_legal else None,
        "colaboradorNome": consent.colaborador.nome if consent.colaborador else "Sistema",
    }


__all__ = [
    "ConsentFilters",
    "ConsentService",
    "EXPORT_COLUMNS",
    "ExportedFile",
    "mask_cpf",
    "page_meta",
    "serialize_consent",
]
