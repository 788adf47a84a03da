#!/usr/bin/env python3
"""Seed script to create or update the ROOT account and its controladora."""

from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta
from getpass import getpass
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from backend.guardiao.app.config import settings
from backend.guardiao.app.security import hash_password
from backend.guardiao.app.timeutils import utcnow
from backend.guardiao.db.base import create_engine, create_schema, create_session, dispose_engine
from backend.guardiao.db.models import BaseLegal, Controladora, User, UserRole


# Legal bases of LGPD art. 7
_LEGAL_BASES = {
    "CONSENTIMENTO": "Mediante o fornecimento de consentimento pelo titular (art. 7º, I)",
    "OBRIGACAO_LEGAL": "Cumprimento de obrigação legal ou regulatória (art. 7º, II)",
    "POLITICAS_PUBLICAS": "Execução de políticas públicas (art. 7º, III)",
    "ESTUDOS_PESQUISA": "Realização de estudos por órgão de pesquisa (art. 7º, IV)",
    "EXECUCAO_CONTRATO": "Execução de contrato ou procedimentos preliminares (art. 7º, V)",
    "EXERCICIO_DIREITOS": "Exercício regular de direitos em processo (art. 7º, VI)",
    "PROTECAO_VIDA": "Proteção da vida ou da incolumidade física (art. 7º, VII)",
    "TUTELA_SAUDE": "Tutela da saúde (art. 7º, VIII)",
    "LEGITIMO_INTERESSE": "Interesses legítimos do controlador ou de terceiro (art. 7º, IX)",
    "PROTECAO_CREDITO": "Proteção do crédito (art. 7º, X)",
}


async def _seed_root(
    *,
    database_url: str,
    email: str,
    nome: str,
    password: str,
    controladora_nome: str,
    cnpj: Optional[str],
    term_days: int,
) -> None:
    create_engine(database_url, echo=False)
    await create_schema()

    session = create_session()
    try:
        result = await session.execute(select(BaseLegal.codigo))
        existing_codes = set(result.scalars())
        for codigo, descricao in _LEGAL_BASES.items():
            if codigo not in existing_codes:
                session.add(BaseLegal(codigo=codigo, descricao=descricao))

        result = await session.execute(
            select(Controladora).where(Controladora.nome == controladora_nome)
        )
        controladora = result.scalars().first()
        if controladora is None:
            controladora = Controladora(
                nome=controladora_nome,
                cnpj=cnpj,
                email_dpo=str(settings.dsar.default_dpo_email),
            )
            session.add(controladora)
            await session.flush()

        hashed = hash_password(password)
        term_validity = utcnow() + timedelta(days=term_days)

        result = await session.execute(select(User).where(func.lower(User.email) == email.lower()))
        user = result.scalars().first()
        if user is None:
            user = User(
                email=email.lower(),
                nome=nome,
                password_hash=hashed,
                tipo=UserRole.ROOT,
                controladora_id=controladora.id,
                termo_confid_assinado=True,
                termo_validade=term_validity,
            )
            session.add(user)
        else:
            user.nome = nome
            user.password_hash = hashed
            user.tipo = UserRole.ROOT
            user.ativo = True
            user.bloqueado = False
            user.termo_confid_assinado = True
            user.termo_validade = term_validity

        await session.commit()
    except IntegrityError as exc:  # pragma: no cover - interactive script guard
        await session.rollback()
        raise SystemExit(f"Failed to create ROOT user: {exc}") from exc
    finally:
        await session.close()
        await dispose_engine()

    print(f"ROOT account ready: {nome} <{email}> ({controladora_nome})")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed the ROOT user of the Guardião database")
    parser.add_argument("--email", required=True, help="ROOT e-mail address")
    parser.add_argument("--nome", default="Administrador", help="Display name for the ROOT user")
    parser.add_argument(
        "--password",
        default=None,
        help="ROOT password. If omitted, an interactive prompt is shown.",
    )
    parser.add_argument("--controladora", default="Controladora Principal", help="Controladora name")
    parser.add_argument("--cnpj", default=None, help="Controladora CNPJ (digits only)")
    parser.add_argument(
        "--term-days",
        type=int,
        default=365,
        help="Validity of the signed confidentiality term, in days.",
    )
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="Database URL to connect to (defaults to configured application URL).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    password = args.password or getpass("ROOT password: ")
    if not password:
        raise SystemExit("Password cannot be empty")

    asyncio.run(
        _seed_root(
            database_url=args.database_url,
            email=args.email,
            nome=args.nome,
            password=password,
            controladora_nome=args.controladora,
            cnpj=args.cnpj,
            term_days=args.term_days,
        )
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
