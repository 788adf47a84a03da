"""SQLAlchemy ORM models for the Guardião data store."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import CITEXT, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from .base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")


class UserRole(str, enum.Enum):
    """Closed set of roles a user account may carry."""

    ROOT = "ROOT"
    DPO = "DPO"
    COLABORADOR = "COLABORADOR"
    PRESTADOR = "PRESTADOR"
    TITULAR = "TITULAR"


class StatusConsentimento(str, enum.Enum):
    ATIVO = "ATIVO"
    REVOGADO = "REVOGADO"
    EXPIRADO = "EXPIRADO"


class TipoDireito(str, enum.Enum):
    """Data subject rights that can be requested through the DSAR portal."""

    CONFIRMACAO_EXISTENCIA = "CONFIRMACAO_EXISTENCIA"
    ACESSO_AOS_DADOS = "ACESSO_AOS_DADOS"
    CORRECAO_DE_DADOS = "CORRECAO_DE_DADOS"
    ANONIMIZACAO_BLOQUEIO_ELIMINACAO = "ANONIMIZACAO_BLOQUEIO_ELIMINACAO"
    PORTABILIDADE = "PORTABILIDADE"
    INFORMACAO_SOBRE_COMPARTILHAMENTO = "INFORMACAO_SOBRE_COMPARTILHAMENTO"
    REVOGACAO_CONSENTIMENTO = "REVOGACAO_CONSENTIMENTO"
    RECLAMACAO_ANPD = "RECLAMACAO_ANPD"
    OPOSICAO_TRATAMENTO_IRREGULAR = "OPOSICAO_TRATAMENTO_IRREGULAR"


class StatusDsar(str, enum.Enum):
    ABERTO = "ABERTO"
    EM_ANALISE = "EM_ANALISE"
    AGUARDANDO_COMPLEMENTO = "AGUARDANDO_COMPLEMENTO"
    RESPONDIDO = "RESPONDIDO"
    INDEFERIDO = "INDEFERIDO"
    CANCELADO = "CANCELADO"
    ARQUIVADO = "ARQUIVADO"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_DSAR_STATUSES


_TERMINAL_DSAR_STATUSES = frozenset(
    {
        StatusDsar.RESPONDIDO,
        StatusDsar.INDEFERIDO,
        StatusDsar.CANCELADO,
        StatusDsar.ARQUIVADO,
    }
)


class CaseInsensitiveText(TypeDecorator):
    """Case-insensitive text compatible with SQLite and PostgreSQL CITEXT."""

    impl = String
    cache_ok = True

    def __init__(self, length: int = 320) -> None:
        super().__init__(length)
        self.length = length

    def load_dialect_impl(self, dialect):  # type: ignore[override]
        if dialect.name == "postgresql":
            return dialect.type_descriptor(CITEXT())
        return dialect.type_descriptor(String(self.length))


class Controladora(Base):
    """Company (tenant) that owns users, consent types and data subjects."""

    __tablename__ = "controladoras"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    nome: Mapped[str] = mapped_column(String(200), nullable=False)
    cnpj: Mapped[Optional[str]] = mapped_column(String(14), unique=True)
    email_dpo: Mapped[Optional[str]] = mapped_column(CaseInsensitiveText())
    ativo: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )

    usuarios: Mapped[List["User"]] = relationship("User", back_populates="controladora")


class User(Base):
    """Platform account. Role, tenant and MFA state live here."""

    __tablename__ = "users"
    __table_args__ = (Index("ix_users_controladora_id", "controladora_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(CaseInsensitiveText(), unique=True, nullable=False)
    nome: Mapped[str] = mapped_column(String(150), nullable=False)
    password_hash: Mapped[str] = mapped_column("pwd_hash", String(255), nullable=False)
    tipo: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role"),
        nullable=False,
        default=UserRole.COLABORADOR,
    )
    controladora_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("controladoras.id", ondelete="SET NULL")
    )
    cpf: Mapped[Optional[str]] = mapped_column(String(11))
    departamento: Mapped[Optional[str]] = mapped_column(String(100))
    telefone: Mapped[Optional[str]] = mapped_column(String(20))
    ativo: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    bloqueado: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    termo_confid_assinado: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    termo_validade: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    mfa_secret: Mapped[Optional[str]] = mapped_column(String(64))
    mfa_secret_temp: Mapped[Optional[str]] = mapped_column(String(64))
    mfa_backup_codes: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    ultimo_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )

    controladora: Mapped[Optional[Controladora]] = relationship(
        "Controladora", back_populates="usuarios"
    )

    @property
    def mfa_enabled(self) -> bool:
        return bool(self.mfa_secret)


class BaseLegal(Base):
    """Legal basis for processing (LGPD art. 7 and art. 11)."""

    __tablename__ = "bases_legais"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    codigo: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    descricao: Mapped[Optional[str]] = mapped_column(Text)


class TipoConsentimento(Base):
    """Consent purpose defined by a controladora."""

    __tablename__ = "tipos_consentimento"
    __table_args__ = (Index("ix_tipos_consentimento_controladora_id", "controladora_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    controladora_id: Mapped[str] = mapped_column(
        ForeignKey("controladoras.id", ondelete="CASCADE"), nullable=False
    )
    nome: Mapped[str] = mapped_column(String(150), nullable=False)
    codigo: Mapped[Optional[str]] = mapped_column(String(64))
    descricao: Mapped[Optional[str]] = mapped_column(Text)
    ativo: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    exige_prova_fisica: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    base_legal_padrao_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("bases_legais.id", ondelete="SET NULL")
    )

    base_legal_padrao: Mapped[Optional[BaseLegal]] = relationship("BaseLegal")


class Titular(Base):
    """Data subject whose personal data a controladora processes."""

    __tablename__ = "titulares"
    __table_args__ = (
        Index("ix_titulares_controladora_id", "controladora_id"),
        Index("ix_titulares_usuario_id", "usuario_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    controladora_id: Mapped[str] = mapped_column(
        ForeignKey("controladoras.id", ondelete="CASCADE"), nullable=False
    )
    usuario_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    nome: Mapped[str] = mapped_column(String(150), nullable=False)
    cpf: Mapped[Optional[str]] = mapped_column(String(11))
    email: Mapped[Optional[str]] = mapped_column(CaseInsensitiveText())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )

    consentimentos: Mapped[List["Consentimento"]] = relationship(
        "Consentimento", back_populates="titular", cascade="all, delete-orphan"
    )


class Consentimento(Base):
    """Consent granted by a titular for a given purpose and legal basis."""

    __tablename__ = "consentimentos"
    __table_args__ = (
        Index("ix_consentimentos_titular_id", "titular_id"),
        Index("ix_consentimentos_data_coleta", "data_coleta"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    titular_id: Mapped[str] = mapped_column(
        ForeignKey("titulares.id", ondelete="CASCADE"), nullable=False
    )
    tipo_consentimento_id: Mapped[str] = mapped_column(
        ForeignKey("tipos_consentimento.id", ondelete="RESTRICT"), nullable=False
    )
    base_legal_id: Mapped[str] = mapped_column(
        ForeignKey("bases_legais.id", ondelete="RESTRICT"), nullable=False
    )
    colaborador_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL")
    )
    classificacao_dados: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    documentos_solicitados: Mapped[List[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    canal_coleta: Mapped[Optional[str]] = mapped_column(String(64))
    local_armazenamento: Mapped[Optional[str]] = mapped_column(String(255))
    anexo_prova: Mapped[Optional[str]] = mapped_column(String(500))
    comprovante_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    data_coleta: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    data_revogacao: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    motivo_revogacao: Mapped[Optional[str]] = mapped_column(Text)
    ativo: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    status: Mapped[StatusConsentimento] = mapped_column(
        Enum(StatusConsentimento, name="status_consentimento"),
        nullable=False,
        default=StatusConsentimento.ATIVO,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )

    titular: Mapped[Titular] = relationship("Titular", back_populates="consentimentos")
    tipo_consentimento: Mapped[TipoConsentimento] = relationship("TipoConsentimento")
    base_legal: Mapped[BaseLegal] = relationship("BaseLegal")
    colaborador: Mapped[Optional[User]] = relationship("User")


class DsarSolicitacao(Base):
    """Data subject request ticket opened through the DSAR portal."""

    __tablename__ = "dsar_solicitacoes"
    __table_args__ = (
        UniqueConstraint("ano", "sequencia", name="uq_dsar_solicitacoes_ano_sequencia"),
        Index("ix_dsar_solicitacoes_titular_id", "titular_id"),
        Index("ix_dsar_solicitacoes_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    protocolo: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    ano: Mapped[int] = mapped_column(Integer, nullable=False)
    sequencia: Mapped[int] = mapped_column(Integer, nullable=False)
    tipo_direito: Mapped[TipoDireito] = mapped_column(
        Enum(TipoDireito, name="tipo_direito"), nullable=False
    )
    status: Mapped[StatusDsar] = mapped_column(
        Enum(StatusDsar, name="status_dsar"),
        nullable=False,
        default=StatusDsar.ABERTO,
    )
    titular_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    controladora_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("controladoras.id", ondelete="SET NULL")
    )
    titular_nome: Mapped[str] = mapped_column(String(150), nullable=False)
    titular_cpf: Mapped[str] = mapped_column(String(11), nullable=False)
    titular_email: Mapped[str] = mapped_column(CaseInsensitiveText(), nullable=False)
    titular_telefone: Mapped[Optional[str]] = mapped_column(String(20))
    descricao: Mapped[Optional[str]] = mapped_column(Text)
    formato: Mapped[Optional[str]] = mapped_column(String(8))
    resposta_dpo: Mapped[Optional[str]] = mapped_column(Text)
    anexo_url: Mapped[Optional[str]] = mapped_column(String(500))
    anexo_path: Mapped[Optional[str]] = mapped_column(String(500))
    motivo_indeferimento: Mapped[Optional[str]] = mapped_column(Text)
    respondido_por_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL")
    )
    data_resposta: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    data_prevista_resposta: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )


class AuditLog(Base):
    """Append-only trail of security relevant events."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_usuario_id", "usuario_id"),
        Index("ix_audit_logs_acao", "acao"),
        Index("ix_audit_logs_timestamp", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    usuario_id: Mapped[Optional[str]] = mapped_column(String(36))
    acao: Mapped[str] = mapped_column(String(64), nullable=False)
    tabela_afetada: Mapped[str] = mapped_column(String(64), nullable=False)
    dados: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    user_agent: Mapped[Optional[str]] = mapped_column(String(255))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    hash_registro: Mapped[str] = mapped_column(String(64), nullable=False)


__all__ = [
    "AuditLog",
    "BaseLegal",
    "CaseInsensitiveText",
    "Consentimento",
    "Controladora",
    "DsarSolicitacao",
    "StatusConsentimento",
    "StatusDsar",
    "TipoConsentimento",
    "TipoDireito",
    "Titular",
    "User",
    "UserRole",
]
