"""TOTP and backup code helpers used by the MFA endpoints."""
from __future__ import annotations

import base64
import io
import secrets
from typing import Iterable, Sequence

import pyotp
import qrcode
import qrcode.image.svg

from .config import settings
from .security import hash_token


_BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_BACKUP_CODE_GROUPS = 3
_BACKUP_CODE_GROUP_SIZE = 4


def build_totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(secret)


def generate_totp_secret() -> str:
    return pyotp.random_base32()


def issuer_for(nome: str) -> str:
    first_name = (nome or "").strip().split(" ", 1)[0]
    if not first_name:
        return settings.auth.mfa_issuer
    return f"{settings.auth.mfa_issuer} - {first_name}"


def build_otpauth_url(*, email: str, nome: str, secret: str) -> str:
    return build_totp(secret).provisioning_uri(name=email, issuer_name=issuer_for(nome))


def build_qr_code_data_url(otpauth_url: str) -> str:
    """Render ``otpauth_url`` as an SVG QR code embedded in a data URL."""

    image = qrcode.make(otpauth_url, image_factory=qrcode.image.svg.SvgPathImage)
    buffer = io.BytesIO()
    image.save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def clean_mfa_code(code: str) -> str:
    return "".join(ch for ch in code.strip() if ch.isalnum()).upper()


def verify_totp_code(secret: str | None, code: str) -> bool:
    if not secret:
        return False
    cleaned = clean_mfa_code(code)
    if len(cleaned) != 6 or not cleaned.isdigit():
        return False
    return bool(build_totp(secret).verify(cleaned, valid_window=1))


def generate_backup_code() -> str:
    groups = (
        "".join(secrets.choice(_BACKUP_CODE_ALPHABET) for _ in range(_BACKUP_CODE_GROUP_SIZE))
        for _ in range(_BACKUP_CODE_GROUPS)
    )
    return "-".join(groups)


def generate_backup_codes(count: int | None = None) -> list[str]:
    total = count or settings.auth.mfa_backup_code_count
    return [generate_backup_code() for _ in range(total)]


def hash_backup_code(code: str) -> str:
    return hash_token(clean_mfa_code(code))


def hash_backup_codes(codes: Iterable[str]) -> list[str]:
    return [hash_backup_code(code) for code in codes]


def match_backup_code(stored_hashes: Sequence[str] | None, code: str) -> str | None:
    """Return the stored hash matching ``code`` or ``None``."""

    cleaned = clean_mfa_code(code)
    if len(cleaned) != _BACKUP_CODE_GROUPS * _BACKUP_CODE_GROUP_SIZE:
        return None
    candidate = hash_token(cleaned)
    for stored in stored_hashes or ():
        if secrets.compare_digest(stored, candidate):
            return stored
    return None


__all__ = [
    "build_otpauth_url",
    "build_qr_code_data_url",
    "build_totp",
    "clean_mfa_code",
    "generate_backup_code",
    "generate_backup_codes",
    "generate_totp_secret",
    "hash_backup_code",
    "hash_backup_codes",
    "issuer_for",
    "match_backup_code",
    "verify_totp_code",
]
