"""
License key generation and verification.

Format: ``AUR-{tier}-V2-{8 random}-{8 signature}``. The signature is the first
eight hex digits of HMAC-SHA256 over ``"{base}:{customer_id}"`` where base is
the key without its signature segment.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import string

from ..config import settings

KEY_PREFIX = "AUR"
KEY_VERSION = "V2"
_ALPHABET = string.ascii_uppercase + string.digits


def _signature(base: str, customer_id: str, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{base}:{customer_id}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return digest[:8].upper()


def generate_license_key(tier_code: str, customer_id: str, secret: str | None = None) -> str:
    secret = secret or settings.license_signing_secret
    random_part = "".join(secrets.choice(_ALPHABET) for _ in range(8))
    base = f"{KEY_PREFIX}-{tier_code}-{KEY_VERSION}-{random_part}"
    return f"{base}-{_signature(base, customer_id, secret)}"


def verify_license_key(license_key: str, customer_id: str, secret: str | None = None) -> bool:
    secret = secret or settings.license_signing_secret
    parts = license_key.split("-")
    if len(parts) != 5 or parts[0] != KEY_PREFIX or parts[2] != KEY_VERSION:
        return False
    base = "-".join(parts[:4])
    return hmac.compare_digest(parts[4], _signature(base, customer_id, secret))


def tier_code_of(license_key: str) -> str | None:
    parts = license_key.split("-")
    return parts[1] if len(parts) == 5 else None


def mask_license_key(license_key: str) -> str:
    """Keep the prefix and tier visible: ``AUR-PRO-V2-****-****``."""
    return f"{license_key[:11]}****-****"
