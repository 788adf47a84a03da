"""Authentication API endpoints."""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Mapping

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Request, Response, Security, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ...db.models import Controladora, User, UserRole
from ..audit import AuditAction, AuditRecorder
from ..bruteforce import LoginThrottle
from ..config import settings
from ..dependencies import (
    RequireRoles,
    ensure_account_policies,
    extract_client_ip,
    get_audit_recorder,
    get_current_user,
    get_email_dispatcher,
    get_login_throttle,
    get_refresh_token_store,
    get_session,
)
from ..email import EmailDispatcher
from ..errors import (
    ApiError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TooManyRequestsError,
    UnauthorizedError,
)
from ..logging import get_logger
from ..mfa import (
    build_otpauth_url,
    build_qr_code_data_url,
    generate_backup_codes,
    generate_totp_secret,
    hash_backup_codes,
    match_backup_code,
    verify_totp_code,
)
from ..refresh_tokens import INVALID_REFRESH_MESSAGE, RefreshTokenStore
from ..security import hash_password_async, issue_access_token, verify_password_async
from ..timeutils import isoformat, utcnow

router = APIRouter(prefix="/auth", tags=["auth"])

logger = get_logger("guardiao.auth")

INVALID_CREDENTIALS = "Credenciais inválidas"
_PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")
_PASSWORD_RULE = (
    "A senha deve ter no mínimo 8 caracteres, incluindo maiúscula, minúscula, número e "
    "caractere especial (@$!%*?&)"
)


def _validate_password_strength(value: str) -> str:
    if not _PASSWORD_PATTERN.match(value):
        raise ValueError(_PASSWORD_RULE)
    return value


class SessionUser(BaseModel):
    id: str
    nome: str
    email: str
    tipo: str
    controladora_id: str | None = Field(default=None, alias="controladoraId")
    mfa_enabled: bool = Field(alias="mfaEnabled")

    model_config = ConfigDict(populate_by_name=True)


class UserProfile(SessionUser):
    cpf: str | None = None
    departamento: str | None = None
    telefone: str | None = None
    ativo: bool
    termo_confid_assinado: bool = Field(alias="termoConfidAssinado")
    termo_validade: str | None = Field(default=None, alias="termoValidade")
    ultimo_login: str | None = Field(default=None, alias="ultimoLogin")
    created_at: str | None = Field(default=None, alias="createdAt")


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class LoginMfaRequest(LoginRequest):
    code: str = Field(min_length=6, max_length=32)


class RefreshRequest(BaseModel):
    refresh_token: str | None = Field(default=None, max_length=256)


class LoginResponse(BaseModel):
    success: bool = True
    message: str
    mfa_required: bool | None = Field(default=None, alias="mfaRequired")
    access_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    refresh_token: str | None = None
    user: SessionUser | None = None

    model_config = ConfigDict(populate_by_name=True)


class OperationStatus(BaseModel):
    success: bool = True
    message: str


class MfaCodeRequest(BaseModel):
    code: str = Field(min_length=6, max_length=32)


class MfaSetupResponse(BaseModel):
    qr_code_url: str = Field(alias="qrCodeUrl")
    secret: str
    otpauth: str
    backup_codes: list[str] = Field(alias="backupCodes")

    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(BaseModel):
    nome: str = Field(min_length=3, max_length=150)
    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    password_confirmation: str = Field(alias="passwordConfirmation", max_length=72)
    tipo: UserRole
    controladora_id: str | None = Field(default=None, alias="controladoraId")
    cpf: str | None = Field(default=None, pattern=r"^\d{11}$")
    departamento: str | None = Field(default=None, min_length=2, max_length=100)
    telefone: str | None = Field(default=None, max_length=20)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("nome", mode="before")
    @classmethod
    def _strip_nome(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RegisterResponse(OperationStatus):
    user: SessionUser


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(alias="currentPassword", min_length=1, max_length=128)
    new_password: str = Field(alias="newPassword", min_length=8, max_length=72)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _differs_from_current(self) -> "ChangePasswordRequest":
        if self.current_password == self.new_password:
            raise ValueError("A nova senha deve ser diferente da senha atual")
        return self


def _role_value(user: User) -> str:
    return getattr(user.tipo, "value", user.tipo)


def serialize_session_user(user: User) -> SessionUser:
    return SessionUser(
        id=user.id,
        nome=user.nome,
        email=user.email,
        tipo=_role_value(user),
        controladora_id=user.controladora_id,
        mfa_enabled=user.mfa_enabled,
    )


def serialize_profile(user: User) -> UserProfile:
    return UserProfile(
        id=user.id,
        nome=user.nome,
        email=user.email,
        tipo=_role_value(user),
        controladora_id=user.controladora_id,
        mfa_enabled=user.mfa_enabled,
        cpf=user.cpf,
        departamento=user.departamento,
        telefone=user.telefone,
        ativo=user.ativo,
        termo_confid_assinado=user.termo_confid_assinado,
        termo_validade=isoformat(user.termo_validade),
        ultimo_login=isoformat(user.ultimo_login),
        created_at=isoformat(user.created_at),
    )


def _audit_kwargs(
    request: Request,
    *,
    user_id: str | None = None,
    detail: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "ip_address": extract_client_ip(request),
        "user_agent": request.headers.get("user-agent"),
        "detail": dict(detail or {}),
        "table": "users",
    }


async def _fetch_user_by_email(db: AsyncSession, email: str) -> User | None:
    stmt = select(User).where(func.lower(User.email) == email.lower())
    result = await db.execute(stmt)
    return result.scalars().first()


async def _authenticate(
    db: AsyncSession,
    request: Request,
    *,
    email: str,
    password: str,
    throttle: LoginThrottle,
    audit: AuditRecorder,
) -> User:
    """Run the credential and account gates shared by both login steps.

    The throttle is left untouched here; it is cleared by ``_complete_login``
    only once every factor has been accepted.
    """

    client_ip = extract_client_ip(request)
    throttle_status = await throttle.evaluate(email=email, ip_address=client_ip)
    if throttle_status.blocked:
        await audit.record(
            AuditAction.LOGIN_FAILED,
            **_audit_kwargs(request, detail={"reason": "rate_limited", "email": email}),
        )
        raise TooManyRequestsError(
            "Muitas tentativas de login. Tente novamente mais tarde.",
            error="TOO_MANY_LOGIN_ATTEMPTS",
        )

    user = await _fetch_user_by_email(db, email)
    if user is None or not user.ativo or not await verify_password_async(user.password_hash, password):
        reason = "unknown_user" if user is None else ("inactive" if not user.ativo else "bad_password")
        logger.warning("login_failed", reason=reason, email=email)
        await throttle.register_failure(email=email, ip_address=client_ip)
        await audit.record(
            AuditAction.LOGIN_FAILED,
            **_audit_kwargs(
                request,
                user_id=user.id if user else None,
                detail={"reason": reason, "email": email},
            ),
        )
        raise UnauthorizedError(INVALID_CREDENTIALS, error="INVALID_CREDENTIALS")

    try:
        ensure_account_policies(user)
    except ApiError as exc:
        logger.warning("login_denied", reason=exc.error, user_id=user.id)
        await audit.record(
            AuditAction.LOGIN_FAILED,
            **_audit_kwargs(request, user_id=user.id, detail={"reason": exc.error}),
        )
        raise

    return user


async def _complete_login(
    db: AsyncSession, request: Request, user: User, *, email: str, throttle: LoginThrottle
) -> None:
    await throttle.reset(email=email, ip_address=extract_client_ip(request))
    user.ultimo_login = utcnow()
    await db.commit()


def _set_refresh_cookie(response: Response, token: str, expires_at: datetime) -> None:
    response.set_cookie(
        key=settings.auth.refresh_cookie_name,
        value=token,
        httponly=True,
        secure=settings.auth.cookie_secure,
        samesite="strict",
        max_age=settings.auth.refresh_token_ttl_seconds,
        expires=expires_at,
        path="/",
    )


async def _issue_tokens(
    *,
    user: User,
    response: Response,
    store: RefreshTokenStore,
    message: str,
    refresh_token: str | None = None,
    refresh_expires_at: datetime | None = None,
) -> LoginResponse:
    access_token, _ = issue_access_token(user)
    if refresh_token is None or refresh_expires_at is None:
        refresh_token, refresh_expires_at = await store.issue(user.id)
    _set_refresh_cookie(response, refresh_token, refresh_expires_at)
    return LoginResponse(
        message=message,
        access_token=access_token,
        token_type="Bearer",
        expires_in=settings.auth.access_token_ttl_seconds,
        refresh_token=refresh_token,
        user=serialize_session_user(user),
    )


def _check_second_factor(
    secret: str | None,
    backup_hashes: list[str] | None,
    code: str,
) -> tuple[bool, list[str] | None]:
    """Return ``(valid, remaining_backup_hashes)``; the list is ``None`` if unchanged."""

    if verify_totp_code(secret, code):
        return True, None
    matched = match_backup_code(backup_hashes, code)
    if matched is None:
        return False, None
    return True, [stored for stored in backup_hashes or [] if stored != matched]


@router.post("/login", response_model=LoginResponse, response_model_exclude_none=True)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_session),
    throttle: LoginThrottle = Depends(get_login_throttle),
    store: RefreshTokenStore = Depends(get_refresh_token_store),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> LoginResponse:
    email = str(payload.email).strip().lower()
    user = await _authenticate(
        db, request, email=email, password=payload.password, throttle=throttle, audit=audit
    )

    if user.mfa_enabled:
        background_tasks.add_task(
            audit.record, AuditAction.LOGIN_MFA_REQUIRED, **_audit_kwargs(request, user_id=user.id)
        )
        return LoginResponse(message="Código MFA necessário", mfa_required=True)

    await _complete_login(db, request, user, email=email, throttle=throttle)
    background_tasks.add_task(
        audit.record, AuditAction.LOGIN_SUCCESS, **_audit_kwargs(request, user_id=user.id)
    )
    logger.info("login_succeeded", user_id=user.id)
    return await _issue_tokens(
        user=user, response=response, store=store, message="Login realizado com sucesso"
    )


@router.post("/login/mfa", response_model=LoginResponse, response_model_exclude_none=True)
async def complete_login_mfa(
    payload: LoginMfaRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_session),
    throttle: LoginThrottle = Depends(get_login_throttle),
    store: RefreshTokenStore = Depends(get_refresh_token_store),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> LoginResponse:
    email = str(payload.email).strip().lower()
    user = await _authenticate(
        db, request, email=email, password=payload.password, throttle=throttle, audit=audit
    )
    if not user.mfa_enabled:
        raise BadRequestError("MFA não está ativo")

    valid, remaining = _check_second_factor(user.mfa_secret, user.mfa_backup_codes, payload.code)
    if not valid:
        await throttle.register_failure(email=email, ip_address=extract_client_ip(request))
        await audit.record(AuditAction.MFA_FAILED, **_audit_kwargs(request, user_id=user.id))
        raise UnauthorizedError("Código MFA ou backup inválido", error="INVALID_MFA_CODE")

    method = "totp"
    if remaining is not None:
        method = "backup_code"
        user.mfa_backup_codes = remaining
    await _complete_login(db, request, user, email=email, throttle=throttle)

    background_tasks.add_task(
        audit.record,
        AuditAction.MFA_VERIFIED,
        **_audit_kwargs(request, user_id=user.id, detail={"method": method, "step": "login"}),
    )
    return await _issue_tokens(
        user=user, response=response, store=store, message="Login realizado com sucesso"
    )


@router.post("/refresh", response_model=LoginResponse, response_model_exclude_none=True)
async def refresh_tokens(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    payload: RefreshRequest | None = Body(default=None),
    db: AsyncSession = Depends(get_session),
    store: RefreshTokenStore = Depends(get_refresh_token_store),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> LoginResponse:
    presented = (payload.refresh_token if payload else None) or request.cookies.get(
        settings.auth.refresh_cookie_name
    )
    if not presented:
        raise UnauthorizedError(INVALID_REFRESH_MESSAGE, error="INVALID_REFRESH_TOKEN")

    user_id, new_token, expires_at = await store.rotate(presented)
    user = await db.get(User, user_id)
    try:
        if user is None or not user.ativo:
            raise UnauthorizedError(INVALID_REFRESH_MESSAGE, error="INVALID_REFRESH_TOKEN")
        ensure_account_policies(user)
    except ApiError:
        await store.revoke(new_token)
        await store.revoke_for_user(user_id)
        raise

    background_tasks.add_task(
        audit.record, AuditAction.REFRESH_TOKEN, **_audit_kwargs(request, user_id=user.id)
    )
    return await _issue_tokens(
        user=user,
        response=response,
        store=store,
        message="Token renovado com sucesso",
        refresh_token=new_token,
        refresh_expires_at=expires_at,
    )


@router.post("/logout", response_model=OperationStatus)
async def logout(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    payload: RefreshRequest | None = Body(default=None),
    store: RefreshTokenStore = Depends(get_refresh_token_store),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> OperationStatus:
    presented = (payload.refresh_token if payload else None) or request.cookies.get(
        settings.auth.refresh_cookie_name
    )
    await store.revoke(presented)
    response.delete_cookie(
        key=settings.auth.refresh_cookie_name,
        path="/",
        httponly=True,
        secure=settings.auth.cookie_secure,
        samesite="strict",
    )
    background_tasks.add_task(
        audit.record,
        AuditAction.LOGOUT,
        **_audit_kwargs(request, detail={"token_presented": bool(presented)}),
    )
    return OperationStatus(message="Logout realizado com sucesso")


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(RequireRoles(UserRole.ROOT, UserRole.DPO)),
    db: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> RegisterResponse:
    if payload.password != payload.password_confirmation:
        raise BadRequestError("As senhas não coincidem", error="PASSWORD_MISMATCH")

    controladora_id = payload.controladora_id
    if current_user.tipo == UserRole.DPO:
        if payload.tipo == UserRole.ROOT:
            raise ForbiddenError("DPO não pode criar usuários ROOT")
        controladora_id = controladora_id or current_user.controladora_id
        if controladora_id != current_user.controladora_id:
            raise ForbiddenError("DPO só pode cadastrar usuários da própria controladora")
    if controladora_id and await db.get(Controladora, controladora_id) is None:
        raise NotFoundError("Controladora não encontrada")

    email = str(payload.email).strip().lower()
    if await _fetch_user_by_email(db, email) is not None:
        raise ConflictError("E-mail já cadastrado", error="EMAIL_ALREADY_REGISTERED")

    user = User(
        nome=payload.nome,
        email=email,
        password_hash=await hash_password_async(payload.password),
        tipo=payload.tipo,
        controladora_id=controladora_id,
        cpf=payload.cpf,
        departamento=payload.departamento,
        telefone=payload.telefone,
        termo_confid_assinado=False,
    )
    db.add(user)
    await db.commit()
    logger.info("user_registered", user_id=user.id, created_by=current_user.id)

    background_tasks.add_task(
        audit.record,
        AuditAction.USER_REGISTERED,
        **_audit_kwargs(
            request,
            user_id=current_user.id,
            detail={"registered_user_id": user.id, "tipo": _role_value(user)},
        ),
    )
    return RegisterResponse(message="Usuário criado com sucesso", user=serialize_session_user(user))


@router.get("/me", response_model=UserProfile)
async def get_me(current_user: User = Security(get_current_user)) -> UserProfile:
    return serialize_profile(current_user)


@router.patch("/me/password", response_model=OperationStatus)
async def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
    store: RefreshTokenStore = Depends(get_refresh_token_store),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> OperationStatus:
    if not await verify_password_async(current_user.password_hash, payload.current_password):
        await audit.record(
            AuditAction.PASSWORD_CHANGED,
            **_audit_kwargs(request, user_id=current_user.id, detail={"result": "failure"}),
        )
        raise UnauthorizedError("Senha atual incorreta", error="INVALID_CURRENT_PASSWORD")

    current_user.password_hash = await hash_password_async(payload.new_password)
    await db.commit()
    await store.revoke_for_user(current_user.id)
    background_tasks.add_task(
        audit.record,
        AuditAction.PASSWORD_CHANGED,
        **_audit_kwargs(request, user_id=current_user.id, detail={"result": "success"}),
    )
    return OperationStatus(message="Senha alterada com sucesso")


@router.post("/mfa/enable", response_model=MfaSetupResponse)
async def enable_mfa(
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> MfaSetupResponse:
    if current_user.mfa_enabled:
        raise BadRequestError("MFA já está ativo", error="MFA_ALREADY_ENABLED")

    secret = generate_totp_secret()
    otpauth = build_otpauth_url(email=current_user.email, nome=current_user.nome, secret=secret)
    qr_code_url = build_qr_code_data_url(otpauth)
    backup_codes = generate_backup_codes()

    current_user.mfa_secret_temp = secret
    current_user.mfa_backup_codes = hash_backup_codes(backup_codes)
    await db.commit()

    background_tasks.add_task(
        email_dispatcher.send_mfa_setup_email,
        email=current_user.email,
        nome=current_user.nome,
        qr_code_url=qr_code_url,
    )
    background_tasks.add_task(
        audit.record,
        AuditAction.MFA_ENABLED,
        **_audit_kwargs(request, user_id=current_user.id, detail={"stage": "pending"}),
    )
    return MfaSetupResponse(
        qr_code_url=qr_code_url,
        secret=secret,
        otpauth=otpauth,
        backup_codes=backup_codes,
    )


@router.post("/mfa/verify", response_model=OperationStatus)
async def verify_mfa(
    payload: MfaCodeRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> OperationStatus:
    pending = current_user.mfa_secret_temp
    if not pending:
        raise BadRequestError("MFA não foi iniciado", error="MFA_NOT_STARTED")

    valid, remaining = _check_second_factor(pending, current_user.mfa_backup_codes, payload.code)
    if not valid:
        await audit.record(
            AuditAction.MFA_FAILED,
            **_audit_kwargs(request, user_id=current_user.id, detail={"step": "activation"}),
        )
        raise UnauthorizedError("Código MFA ou backup inválido", error="INVALID_MFA_CODE")

    backup_hashes = remaining if remaining is not None else list(current_user.mfa_backup_codes or [])
    result = await db.execute(
        update(User)
        .where(User.id == current_user.id, User.mfa_secret_temp == pending)
        .values(mfa_secret=pending, mfa_secret_temp=None, mfa_backup_codes=backup_hashes)
    )
    if not result.rowcount:
        await db.rollback()
        raise ConflictError("MFA já foi ativado por outra requisição", error="MFA_ALREADY_ACTIVATED")
    await db.commit()

    background_tasks.add_task(
        audit.record,
        AuditAction.MFA_VERIFIED,
        **_audit_kwargs(request, user_id=current_user.id, detail={"step": "activation"}),
    )
    return OperationStatus(message="MFA ativado com sucesso")


@router.post("/mfa/disable", response_model=OperationStatus)
async def disable_mfa(
    payload: MfaCodeRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Security(get_current_user),
    db: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> OperationStatus:
    if not current_user.mfa_enabled:
        raise BadRequestError("MFA não está ativo", error="MFA_NOT_ENABLED")

    valid, _ = _check_second_factor(current_user.mfa_secret, current_user.mfa_backup_codes, payload.code)
    if not valid:
        await audit.record(
            AuditAction.MFA_FAILED,
            **_audit_kwargs(request, user_id=current_user.id, detail={"step": "disable"}),
        )
        raise UnauthorizedError("Código inválido", error="INVALID_MFA_CODE")

    current_user.mfa_secret = None
    current_user.mfa_secret_temp = None
    current_user.mfa_backup_codes = []
    await db.commit()

    background_tasks.add_task(
        audit.record, AuditAction.MFA_DISABLED, **_audit_kwargs(request, user_id=current_user.id)
    )
    return OperationStatus(message="MFA desativado com sucesso")


__all__ = ["router", "serialize_profile", "serialize_session_user"]
