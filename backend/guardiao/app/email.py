"""Simple helper for dispatching transactional e-mails."""
from __future__ import annotations

import logging
from datetime import datetime

from .config import settings

logger = logging.getLogger(__name__)


class EmailDispatcher:
    """Send MFA enrolment and DSAR notifications.

    Messages are emitted as structured log records; delivery is handled by
    the log shipping pipeline.
    """

    def __init__(self) -> None:
        self._config = settings.mail

    def dsar_url(self, protocolo: str) -> str:
        return f"{self._config.public_base_url}/dsar/consulta?protocolo={protocolo}"

    async def send_mfa_setup_email(self, *, email: str, nome: str, qr_code_url: str) -> None:
        """Send the QR code used to enrol an authenticator app."""

        logger.info(
            "Dispatching MFA setup email",
            extra={
                "email": email,
                "nome": nome,
                "sender": self._config.sender,
                "qr_code_bytes": len(qr_code_url),
            },
        )

    async def send_dsar_notification(
        self,
        *,
        email: str,
        protocolo: str,
        tipo_direito: str,
        titular_nome: str,
        prazo: datetime,
    ) -> None:
        """Notify the DPO that a new data subject request was opened."""

        logger.info(
            "Dispatching DSAR notification",
            extra={
                "email": email,
                "protocolo": protocolo,
                "tipo_direito": tipo_direito,
                "titular_nome": titular_nome,
                "prazo": prazo.isoformat(),
                "sender": self._config.sender,
            },
        )

    async def send_dsar_response(
        self,
        *,
        email: str,
        protocolo: str,
        status: str,
        resposta: str,
    ) -> None:
        """Tell the data subject their request was answered."""

        logger.info(
            "Dispatching DSAR response",
            extra={
                "email": email,
                "protocolo": protocolo,
                "status": status,
                "url": self.dsar_url(protocolo),
                "sender": self._config.sender,
                "resposta_chars": len(resposta),
            },
        )


__all__ = ["EmailDispatcher"]
