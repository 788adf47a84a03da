"""Data subject access request (DSAR) tickets."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import Controladora, DsarSolicitacao, StatusDsar, TipoDireito, User, UserRole
from .config import settings
from .consents import page_meta
from .errors import BadRequestError, NotFoundError
from .logging import get_logger
from .policy import ResourceKind, ResourceOwnership
from .schemas.dsar import CreateDsarRequest, UpdateDsarStatusRequest
from .timeutils import ensure_aware, isoformat, utcnow


logger = get_logger("guardiao.dsar")

_NON_DIGITS = re.compile(r"\D")
_PORTABILITY_FORMATS = {"JSON", "CSV", "XML"}
_CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".json": "application/json",
}
_PROTOCOL_ATTEMPTS = 5
_TERMINAL_STATUSES = [status for status in StatusDsar if status.is_terminal]

PRAZO_LEGAL = "15 dias corridos"


@dataclass(frozen=True)
class DsarFilters:
    status: StatusDsar | None = None
    tipo: TipoDireito | None = None
    cpf: str | None = None


@dataclass(frozen=True)
class ResponseFile:
    """Either a local file to stream or an external URL to redirect to."""

    path: Path | None = None
    url: str | None = None
    filename: str | None = None
    media_type: str = "application/octet-stream"


def _digits(value: str | None) -> str:
    return _NON_DIGITS.sub("", value or "")


def parse_tipo_direito(raw: str) -> TipoDireito:
    tipo = (raw or "").strip().upper()
    try:
        return TipoDireito(tipo)
    except ValueError:
        allowed = ", ".join(item.value for item in TipoDireito)
        raise BadRequestError(
            f'Tipo de direito inválido: "{tipo}". Valores permitidos: {allowed}',
            error="INVALID_DSAR_TYPE",
        ) from None


def validate_by_type(tipo: TipoDireito, payload: CreateDsarRequest) -> None:
    descricao = (payload.descricao or "").strip()
    if tipo is TipoDireito.RECLAMACAO_ANPD:
        raise BadRequestError(
            "Este direito deve ser exercido diretamente na ANPD (www.gov.br/anpd)",
            error="DSAR_ANPD_ONLY",
        )
    if tipo is TipoDireito.CORRECAO_DE_DADOS and len(descricao) < 10:
        raise BadRequestError(
            "Para correção de dados, é obrigatório descrever detalhadamente quais dados estão incorretos"
        )
    if tipo is TipoDireito.ANONIMIZACAO_BLOQUEIO_ELIMINACAO and len(descricao) < 15:
        raise BadRequestError(
            "Para anonimização, bloqueio ou eliminação, é necessário justificar o pedido"
        )
    if tipo is TipoDireito.PORTABILIDADE and (payload.formato or "").upper() not in _PORTABILITY_FORMATS:
        raise BadRequestError("Para portabilidade, informe o formato desejado (JSON, CSV ou XML)")


class DsarService:
    """Open, list and answer data subject requests."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def ownership(ticket: DsarSolicitacao) -> ResourceOwnership:
        return ResourceOwnership(
            kind=ResourceKind.DSAR,
            tenant_id=ticket.controladora_id,
            subject_user_id=ticket.titular_id,
        )

    async def _next_sequence(self, year: int) -> int:
        current = await self._session.scalar(
            select(func.max(DsarSolicitacao.sequencia)).where(DsarSolicitacao.ano == year)
        )
        return int(current or 0) + 1

    async def create(self, payload: CreateDsarRequest, requester: User | None) -> DsarSolicitacao:
        tipo = parse_tipo_direito(payload.tipo)
        validate_by_type(tipo, payload)

        cpf = _digits(payload.cpf)
        if len(cpf) != 11:
            raise BadRequestError("CPF deve conter exatamente 11 dígitos numéricos")

        opened_at = utcnow()
        deadline = opened_at + timedelta(days=settings.dsar.response_deadline_days)
        fields: dict[str, Any] = {
            "tipo_direito": tipo,
            "status": StatusDsar.ABERTO,
            "titular_id": requester.id if requester else None,
            "controladora_id": requester.controladora_id if requester else None,
            "titular_nome": payload.nome.strip(),
            "titular_cpf": cpf,
            "titular_email": str(payload.email).lower(),
            "titular_telefone": _digits(payload.telefone) or None,
            "descricao": (payload.descricao or "").strip() or None,
            "formato": payload.formato.upper() if payload.formato else None,
            "data_prevista_resposta": deadline,
            "created_at": opened_at,
        }

        for attempt in range(1, _PROTOCOL_ATTEMPTS + 1):
            sequence = await self._next_sequence(opened_at.year)
            ticket = DsarSolicitacao(
                protocolo=f"DSAR-{opened_at.year}-{sequence:06d}",
                ano=opened_at.year,
                sequencia=sequence,
                **fields,
            )
            self._session.add(ticket)
            try:
                await self._session.commit()
            except IntegrityError:
                await self._session.rollback()
                logger.warning("dsar_protocol_conflict", attempt=attempt, sequence=sequence)
                continue
            logger.info("dsar_created", protocolo=ticket.protocolo, tipo=tipo.value)
            return ticket

        raise RuntimeError("Could not allocate a DSAR protocol number")

    async def notification_address(self, ticket: DsarSolicitacao) -> str:
        if ticket.controladora_id:
            controladora = await self._session.get(Controladora, ticket.controladora_id)
            if controladora is not None and controladora.email_dpo:
                return controladora.email_dpo
        return str(settings.dsar.default_dpo_email)

    async def list_mine(
        self, user: User, *, page: int = 1, limit: int = 10
    ) -> tuple[list[DsarSolicitacao], dict[str, Any]]:
        stmt = select(DsarSolicitacao).where(DsarSolicitacao.titular_id == user.id)
        return await self._paginate(stmt, page=page, limit=limit)

    async def list_all(
        self, caller: User, filters: DsarFilters, *, page: int = 1, limit: int = 20
    ) -> tuple[list[DsarSolicitacao], dict[str, Any]]:
        stmt = select(DsarSolicitacao)
        if getattr(caller.tipo, "value", caller.tipo) == UserRole.DPO.value:
            stmt = stmt.where(
                (DsarSolicitacao.controladora_id == caller.controladora_id)
                | DsarSolicitacao.controladora_id.is_(None)
            )
        if filters.status:
            stmt = stmt.where(DsarSolicitacao.status == filters.status)
        if filters.tipo:
            stmt = stmt.where(DsarSolicitacao.tipo_direito == filters.tipo)
        cpf = _digits(filters.cpf)
        if cpf:
            stmt = stmt.where(DsarSolicitacao.titular_cpf.contains(cpf))
        return await self._paginate(stmt, page=page, limit=limit)

    async def _paginate(self, stmt, *, page: int, limit: int) -> tuple[list[DsarSolicitacao], dict[str, Any]]:
        total = await self._session.scalar(select(func.count()).select_from(stmt.subquery()))
        rows = await self._session.execute(
            stmt.order_by(DsarSolicitacao.created_at.desc(), DsarSolicitacao.sequencia.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(rows.scalars().all()), page_meta(int(total or 0), page, limit)

    async def get(self, ticket_id: str) -> DsarSolicitacao:
        ticket = await self._session.get(DsarSolicitacao, ticket_id)
        if ticket is None:
            raise NotFoundError(f"DSAR {ticket_id} não encontrada")
        return ticket

    async def update_status(
        self,
        ticket: DsarSolicitacao,
        payload: UpdateDsarStatusRequest,
        responder: User,
    ) -> DsarSolicitacao:
        if ticket.status.is_terminal:
            raise BadRequestError("Esta solicitação já foi respondida ou arquivada")
        if payload.status is StatusDsar.INDEFERIDO and not (payload.motivo_indeferimento or "").strip():
            raise BadRequestError("Motivo do indeferimento é obrigatório quando status = INDEFERIDO")

        ticket_id = ticket.id
        answered_at = utcnow()
        result = await self._session.execute(
            update(DsarSolicitacao)
            .where(
                DsarSolicitacao.id == ticket_id,
                DsarSolicitacao.status.notin_(_TERMINAL_STATUSES),
            )
            .values(
                status=payload.status,
                resposta_dpo=payload.resposta_dpo,
                anexo_url=payload.anexo_url or None,
                anexo_path=payload.anexo_path or None,
                motivo_indeferimento=payload.motivo_indeferimento or None,
                respondido_por_id=responder.id,
                data_resposta=answered_at,
                updated_at=answered_at,
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            await self._session.rollback()
            raise BadRequestError("Esta solicitação já foi respondida ou arquivada")
        await self._session.commit()
        ticket = await self._session.get(DsarSolicitacao, ticket_id, populate_existing=True)
        logger.info(
            "dsar_updated",
            protocolo=ticket.protocolo,
            status=ticket.status.value,
            responder_id=responder.id,
        )
        return ticket

    @staticmethod
    def _resolve_attachment(anexo_path: str) -> Path | None:
        root = settings.dsar.attachments_dir.resolve()
        candidate = Path(anexo_path)
        if not candidate.is_absolute():
            candidate = root / candidate
        candidate = candidate.resolve()
        if not candidate.is_relative_to(root) or not candidate.is_file():
            return None
        return candidate

    def response_file(self, ticket: DsarSolicitacao) -> ResponseFile:
        if ticket.anexo_path:
            path = self._resolve_attachment(ticket.anexo_path)
            if path is not None:
                return ResponseFile(
                    path=path,
                    filename=path.name,
                    media_type=_CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream"),
                )
            logger.warning("dsar_attachment_unavailable", protocolo=ticket.protocolo)
        if ticket.anexo_url:
            return ResponseFile(url=ticket.anexo_url, filename=f"resposta-dsar-{ticket.protocolo}.pdf")
        raise NotFoundError("Nenhum anexo disponível")


def serialize_dsar(ticket: DsarSolicitacao) -> dict[str, Any]:
    now = utcnow()
    opened_at = ensure_aware(ticket.created_at) or now
    deadline = ensure_aware(ticket.data_prevista_resposta)
    answered_at = ensure_aware(ticket.data_resposta)
    if answered_at is not None:
        prazo_atendido = deadline is None or answered_at <= deadline
    else:
        prazo_atendido = deadline is None or now <= deadline
    return {
        "id": ticket.id,
        "protocolo": ticket.protocolo,
        "tipoDireito": ticket.tipo_direito.value,
        "status": ticket.status.value,
        "titularId": ticket.titular_id,
        "controladoraId": ticket.controladora_id,
        "titularNome": ticket.titular_nome,
        "titularCpf": ticket.titular_cpf,
        "titularEmail": ticket.titular_email,
        "titularTelefone": ticket.titular_telefone,
        "descricao": ticket.descricao,
        "formato": ticket.formato,
        "respostaDpo": ticket.resposta_dpo,
        "anexoUrl": ticket.anexo_url,
        "motivoIndeferimento": ticket.motivo_indeferimento,
        "respondidoPorId": ticket.respondido_por_id,
        "dataResposta": isoformat(answered_at),
        "dataPrevistaResposta": isoformat(deadline),
        "createdAt": isoformat(opened_at),
        "updatedAt": isoformat(ticket.updated_at),
        "diasDesdeAbertura": max((now - opened_at).days, 0),
        "prazoFinal": isoformat(deadline),
        "prazoAtendido": prazo_atendido,
    }


__all__ = [
    "DsarFilters",
    "DsarService",
    "PRAZO_LEGAL",
    "ResponseFile",
    "parse_tipo_direito",
    "serialize_dsar",
    "validate_by_type",
]
