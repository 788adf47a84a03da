"""Consent record endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query, Request, Response, Security, status
from sqlalchemy.ext.asyncio import AsyncSession

from ...db.models import User, UserRole
from ..audit import AuditAction, AuditRecorder
from ..consents import ConsentFilters, ConsentService, serialize_consent
from ..dependencies import RequireRoles, extract_client_ip, get_audit_recorder, get_current_user, get_session
from ..policy import Caller, Operation, ensure_allowed
from ..schemas.consentimentos import (
    CreateConsentimentoRequest,
    RevogarConsentimentoRequest,
    UpdateConsentimentoRequest,
)

router = APIRouter(prefix="/consentimentos", tags=["consentimentos"])


def _schedule_audit(
    background_tasks: BackgroundTasks,
    audit: AuditRecorder,
    request: Request,
    action: str,
    *,
    user: User,
    detail: dict[str, Any],
) -> None:
    background_tasks.add_task(
        audit.record,
        action,
        user_id=user.id,
        ip_address=extract_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        detail=detail,
        table="consentimentos",
    )


async def _load_authorized(
    service: ConsentService,
    consent_id: str,
    operation: Operation,
    user: User,
):
    consent = await service.get(consent_id)
    ensure_allowed(operation, Caller.from_user(user), service.ownership(consent))
    return consent


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_consentimento(
    payload: CreateConsentimentoRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    consent = await ConsentService(db).create(payload, current_user)
    _schedule_audit(
        background_tasks,
        audit,
        request,
        AuditAction.CONSENT_CREATED,
        user=current_user,
        detail={"consent_id": consent.id, "titular_id": consent.titular_id},
    )
    return {
        "success": True,
        "message": "Consentimento registrado com sucesso",
        "data": serialize_consent(consent),
    }


@router.get("")
async def list_consentimentos(
    titular_id: str | None = Query(default=None, alias="titularId"),
    tipo_consentimento_id: str | None = Query(default=None, alias="tipoConsentimentoId"),
    data_inicio: datetime | None = Query(default=None, alias="dataInicio"),
    data_fim: datetime | None = Query(default=None, alias="dataFim"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    filters = ConsentFilters(
        titular_id=titular_id,
        tipo_consentimento_id=tipo_consentimento_id,
        data_inicio=data_inicio,
        data_fim=data_fim,
    )
    consents, meta = await ConsentService(db).list_consents(current_user, filters, page=page, limit=limit)
    return {"success": True, "data": [serialize_consent(item) for item in consents], "meta": meta}


@router.get("/dashboard/count-ativos")
async def count_ativos(
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    total = await ConsentService(db).count_active(current_user)
    return {"success": True, "data": {"total": total}}


@router.get("/export/{formato}")
async def export_consentimentos(
    formato: Literal["csv", "json"],
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(RequireRoles(UserRole.ROOT, UserRole.DPO)),
    db: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> Response:
    exported = await ConsentService(db).export(current_user, formato)
    _schedule_audit(
        background_tasks,
        audit,
        request,
        AuditAction.CONSENT_EXPORTED,
        user=current_user,
        detail={"formato": formato, "filename": exported.filename},
    )
    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
        background=background_tasks,
    )


@router.get("/{consent_id}")
async def get_consentimento(
    consent_id: str,
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    consent = await _load_authorized(ConsentService(db), consent_id, Operation.READ, current_user)
    return {"success": True, "data": serialize_consent(consent)}


@router.patch("/{consent_id}")
async def update_consentimento(
    consent_id: str,
    payload: UpdateConsentimentoRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    service = ConsentService(db)
    consent = await _load_authorized(service, consent_id, Operation.UPDATE, current_user)
    consent = await service.update(consent, payload)
    _schedule_audit(
        background_tasks,
        audit,
        request,
        AuditAction.CONSENT_UPDATED,
        user=current_user,
        detail={"consent_id": consent.id, "fields": sorted(payload.model_fields_set)},
    )
    return {
        "success": True,
        "message": "Consentimento atualizado com sucesso",
        "data": serialize_consent(consent),
    }


@router.delete("/{consent_id}")
async def revogar_consentimento(
    consent_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    payload: RevogarConsentimentoRequest | None = Body(default=None),
    motivo: str | None = Query(default=None, max_length=500),
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    service = ConsentService(db)
    consent = await _load_authorized(service, consent_id, Operation.DELETE, current_user)
    reason = payload.motivo if payload else motivo
    consent = await service.revoke(consent, reason)
    _schedule_audit(
        background_tasks,
        audit,
        request,
        AuditAction.CONSENT_REVOKED,
        user=current_user,
        detail={"consent_id": consent.id, "motivo": consent.motivo_revogacao},
    )
    return {
        "success": True,
        "message": "Consentimento revogado com sucesso",
        "data": serialize_consent(consent),
    }


@router.delete("/{consent_id}/permanente")
async def remover_consentimento(
    consent_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(RequireRoles(UserRole.ROOT)),
    db: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> dict[str, Any]:
    service = ConsentService(db)
    consent = await service.get(consent_id)
    await service.remove(consent)
    _schedule_audit(
        background_tasks,
        audit,
        request,
        AuditAction.CONSENT_DELETED,
        user=current_user,
        detail={"consent_id": consent_id},
    )
    return {"success": True, "message": "Consentimento removido permanentemente"}


__all__ = ["router"]
