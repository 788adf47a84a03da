"""Testing utilities for Guardião API tests."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from backend.guardiao.app.security import hash_password
from backend.guardiao.app.timeutils import utcnow
from backend.guardiao.db.models import (
    BaseLegal,
    Controladora,
    TipoConsentimento,
    Titular,
    User,
    UserRole,
)

DEFAULT_PASSWORD = "Senha@Forte1"

_UNSET: Any = object()


async def create_controladora(
    session: AsyncSession,
    *,
    nome: str = "Controladora Teste",
    cnpj: str | None = None,
    email_dpo: str | None = None,
) -> Controladora:
    controladora = Controladora(nome=nome, cnpj=cnpj, email_dpo=email_dpo)
    session.add(controladora)
    await session.commit()
    return controladora


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    tipo: UserRole,
    password: str = DEFAULT_PASSWORD,
    nome: str = "Usuário Teste",
    controladora_id: str | None = None,
    ativo: bool = True,
    bloqueado: bool = False,
    termo_confid_assinado: bool = True,
    termo_validade: datetime | None = _UNSET,
    mfa_secret: str | None = None,
    mfa_backup_codes: list[str] | None = None,
) -> User:
    """Create a user whose confidentiality term is signed and valid by default."""

    if termo_validade is _UNSET:
        termo_validade = utcnow() + timedelta(days=180)
    user = User(
        email=email.lower(),
        nome=nome,
        password_hash=hash_password(password),
        tipo=tipo,
        controladora_id=controladora_id,
        ativo=ativo,
        bloqueado=bloqueado,
        termo_confid_assinado=termo_confid_assinado,
        termo_validade=termo_validade,
        mfa_secret=mfa_secret,
        mfa_backup_codes=list(mfa_backup_codes or []),
    )
    session.add(user)
    await session.commit()
    return user


async def login(client: AsyncClient, email: str, password: str = DEFAULT_PASSWORD) -> dict[str, Any]:
    response = await client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def login_headers(client: AsyncClient, email: str, password: str = DEFAULT_PASSWORD) -> dict[str, str]:
    payload = await login(client, email, password)
    return auth_headers(payload["access_token"])


async def create_titular(
    session: AsyncSession,
    *,
    controladora_id: str,
    nome: str = "Maria da Silva",
    cpf: str | None = "12345678901",
    email: str | None = None,
    usuario_id: str | None = None,
) -> Titular:
    titular = Titular(
        controladora_id=controladora_id,
        nome=nome,
        cpf=cpf,
        email=email,
        usuario_id=usuario_id,
    )
    session.add(titular)
    await session.commit()
    return titular


async def create_legal_basis(
    session: AsyncSession,
    *,
    codigo: str = "CONSENTIMENTO",
    descricao: str | None = "Consentimento do titular",
) -> BaseLegal:
    base = BaseLegal(codigo=codigo, descricao=descricao)
    session.add(base)
    await session.commit()
    return base


async def create_consent_type(
    session: AsyncSession,
    *,
    controladora_id: str,
    nome: str = "Marketing",
    codigo: str | None = "MKT",
    ativo: bool = True,
    exige_prova_fisica: bool = False,
    base_legal_padrao_id: str | None = None,
) -> TipoConsentimento:
    tipo = TipoConsentimento(
        controladora_id=controladora_id,
        nome=nome,
        codigo=codigo,
        ativo=ativo,
        exige_prova_fisica=exige_prova_fisica,
        base_legal_padrao_id=base_legal_padrao_id,
    )
    session.add(tipo)
    await session.commit()
    return tipo
