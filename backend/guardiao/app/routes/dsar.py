"""Data subject request endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Security, status
from fastapi.responses import FileResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ...db.models import DsarSolicitacao, StatusDsar, User, UserRole
from ..audit import AuditAction, AuditRecorder
from ..dependencies import (
    RequireRoles,
    extract_client_ip,
    get_audit_recorder,
    get_current_user,
    get_email_dispatcher,
    get_optional_user,
    get_session,
)
from ..dsar import PRAZO_LEGAL, DsarFilters, DsarService, parse_tipo_direito, serialize_dsar
from ..email import EmailDispatcher
from ..policy import Caller, Operation, ensure_allowed
from ..schemas.dsar import CreateDsarRequest, UpdateDsarStatusRequest
from ..timeutils import isoformat

router = APIRouter(prefix="/dsar", tags=["dsar"])


def _audit_kwargs(request: Request, user_id: str | None) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "ip_address": extract_client_ip(request),
        "user_agent": request.headers.get("user-agent"),
        "table": "dsar_solicitacoes",
    }


async def _load_authorized(
    service: DsarService, ticket_id: str, operation: Operation, user: User
) -> DsarSolicitacao:
    ticket = await service.get(ticket_id)
    ensure_allowed(operation, Caller.from_user(user), service.ownership(ticket))
    return ticket


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_dsar(
    payload: CreateDsarRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    requester: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_session),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    # a protocol retry rolls the session back and expires the requester
    requester_id = requester.id if requester else None
    service = DsarService(db)
    ticket = await service.create(payload, requester)
    dpo_email = await service.notification_address(ticket)

    background_tasks.add_task(
        email_dispatcher.send_dsar_notification,
        email=dpo_email,
        protocolo=ticket.protocolo,
        tipo_direito=ticket.tipo_direito.value,
        titular_nome=ticket.titular_nome,
        prazo=ticket.data_prevista_resposta,
    )
    background_tasks.add_task(
        audit.record,
        AuditAction.DSAR_CREATED,
        detail={"protocolo": ticket.protocolo, "tipo": ticket.tipo_direito.value},
        **_audit_kwargs(request, requester_id),
    )
    return {
        "success": True,
        "message": "Solicitação registrada com sucesso",
        "protocolo": ticket.protocolo,
        "prazoLegal": PRAZO_LEGAL,
        "dataPrevistaResposta": isoformat(ticket.data_prevista_resposta),
    }


@router.get("/my")
async def list_my_dsars(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    tickets, meta = await DsarService(db).list_mine(current_user, page=page, limit=limit)
    return {"success": True, "data": [serialize_dsar(ticket) for ticket in tickets], "meta": meta}


@router.get("")
async def list_dsars(
    status_filter: StatusDsar | None = Query(default=None, alias="status"),
    tipo: str | None = Query(default=None),
    cpf: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(RequireRoles(UserRole.ROOT, UserRole.DPO)),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    filters = DsarFilters(
        status=status_filter,
        tipo=parse_tipo_direito(tipo) if tipo else None,
        cpf=cpf,
    )
    tickets, meta = await DsarService(db).list_all(current_user, filters, page=page, limit=limit)
    return {"success": True, "data": [serialize_dsar(ticket) for ticket in tickets], "meta": meta}


@router.get("/{ticket_id}")
async def get_dsar(
    ticket_id: str,
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    ticket = await _load_authorized(DsarService(db), ticket_id, Operation.READ, current_user)
    return {"success": True, "data": serialize_dsar(ticket)}


@router.patch("/{ticket_id}")
async def update_dsar(
    ticket_id: str,
    payload: UpdateDsarStatusRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(RequireRoles(UserRole.ROOT, UserRole.DPO)),
    db: AsyncSession = Depends(get_session),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    service = DsarService(db)
    ticket = await _load_authorized(service, ticket_id, Operation.UPDATE, current_user)
    ticket = await service.update_status(ticket, payload, current_user)

    background_tasks.add_task(
        email_dispatcher.send_dsar_response,
        email=ticket.titular_email,
        protocolo=ticket.protocolo,
        status=ticket.status.value,
        resposta=ticket.resposta_dpo or "",
    )
    background_tasks.add_task(
        audit.record,
        AuditAction.DSAR_UPDATED,
        detail={"protocolo": ticket.protocolo, "status": ticket.status.value},
        **_audit_kwargs(request, current_user.id),
    )
    return {
        "success": True,
        "message": "Solicitação atualizada com sucesso",
        "data": serialize_dsar(ticket),
    }


@router.get("/{ticket_id}/response")
async def download_dsar_response(
    ticket_id: str,
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    service = DsarService(db)
    ticket = await _load_authorized(service, ticket_id, Operation.READ, current_user)
    attachment = service.response_file(ticket)
    if attachment.path is not None:
        return FileResponse(attachment.path, media_type=attachment.media_type, filename=attachment.filename)
    return RedirectResponse(attachment.url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


__all__ = ["router"]
