from __future__ import annotations

import base64
import hashlib
import hmac
import os
import string
import time
from datetime import datetime
from typing import Callable, Optional, Protocol
from urllib.parse import quote, urlencode

from cryptography.fernet import Fernet, InvalidToken

from timekeeper.logging import get_logger
from timekeeper.service.errors import ConflictError, MfaInvalidError, NotFoundError, ValidationError
from timekeeper.storage.models import User, UserMFAConfig

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_SKEW_STEPS = 1
SECRET_BYTES = 20  # 160 bits
ENCRYPTED_PREFIX = "enc:v1:"
_ASCII_DIGITS = frozenset(string.digits)


def generate_secret() -> str:
    return base64.b32encode(os.urandom(SECRET_BYTES)).decode("utf-8").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = secret.strip().replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return None


def generate_totp(secret: str, timestamp: float, *, period: int = TOTP_PERIOD) -> str:
    key = _decode_secret(secret)
    if key is None:
        return ""
    counter = int(timestamp // period).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


def is_well_formed_code(code: Optional[str]) -> bool:
    if code is None:
        return False
    trimmed = code.strip()
    return len(trimmed) == TOTP_DIGITS and all(c in _ASCII_DIGITS for c in trimmed)


def verify_totp(
    secret: str,
    code: Optional[str],
    *,
    timestamp: Optional[float] = None,
    skew: int = TOTP_SKEW_STEPS,
) -> bool:
    """Accept ``code`` if it matches the current step or one within ``skew`` steps.

    Malformed codes are rejected before any HMAC is computed.
    """
    if not is_well_formed_code(code):
        return False
    candidate = code.strip()
    now = time.time() if timestamp is None else timestamp
    for offset in range(-skew, skew + 1):
        generated = generate_totp(secret, now + offset * TOTP_PERIOD)
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    account_name = account_name.strip()
    if ":" in issuer or ":" in account_name:
        raise ValidationError(
            "issuer and account name must not contain ':'",
            detail={"field": "issuer" if ":" in issuer else "account_name"},
        )
    label = f"{quote(issuer, safe='')}:{quote(account_name, safe='')}"
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{query}"


class SecretBox:
    """Fernet encryption for MFA secrets at rest.

    Values written before encryption was enabled have no prefix and are
    returned unchanged.
    """

    def __init__(self, key_material: str) -> None:
        key = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(key)

    def seal(self, secret: str) -> str:
        return ENCRYPTED_PREFIX + self._fernet.encrypt(secret.encode()).decode()

    def reveal(self, stored: str) -> Optional[str]:
        if not stored.startswith(ENCRYPTED_PREFIX):
            return stored
        try:
            return self._fernet.decrypt(stored[len(ENCRYPTED_PREFIX) :].encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            return None


class MfaStore(Protocol):
    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig: ...

    def enable_user_mfa(self, user_id: str, now: datetime) -> Optional[UserMFAConfig]: ...

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]: ...

    def clear_user_mfa_secret(self, user_id: str) -> bool: ...


class MfaChallenge:
    """TOTP enrollment lifecycle (pending, enabled, disabled) and code checks."""

    def __init__(
        self,
        store: MfaStore,
        box: SecretBox,
        *,
        issuer: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.box = box
        self.issuer = issuer
        self._clock = clock

    def enrolled_config(self, user_id: str) -> Optional[UserMFAConfig]:
        cfg = self.store.get_user_mfa_secret(user_id)
        if cfg and cfg.enabled:
            return cfg
        return None

    def check(self, cfg: UserMFAConfig, code: Optional[str]) -> bool:
        secret = self.box.reveal(cfg.secret)
        if secret is None:
            return False
        return verify_totp(secret, code, timestamp=self._clock())

    def begin_enrollment(self, user: User) -> dict:
        existing = self.store.get_user_mfa_secret(user.id)
        if existing and existing.enabled:
            raise ConflictError("MFA is already enabled")
        secret = generate_secret()
        uri = provisioning_uri(secret, user.username, self.issuer)
        self.store.set_user_mfa_secret(user.id, self.box.seal(secret), enabled=False)
        logger.info("mfa_enrollment_started", user_id=user.id)
        return {"secret": secret, "otpauth_uri": uri}

    def activate(self, user_id: str, code: str, now: datetime) -> UserMFAConfig:
        cfg = self.store.get_user_mfa_secret(user_id)
        if not cfg:
            raise NotFoundError("no MFA enrollment in progress")
        if cfg.enabled:
            raise ConflictError("MFA is already enabled")
        if not self.check(cfg, code):
            raise MfaInvalidError("invalid MFA code")
        enabled = self.store.enable_user_mfa(user_id, now)
        if not enabled:
            raise NotFoundError("no MFA enrollment in progress")
        logger.info("mfa_enabled", user_id=user_id)
        return enabled

    def disable(self, user_id: str, code: str) -> None:
        cfg = self.enrolled_config(user_id)
        if not cfg:
            raise NotFoundError("MFA is not enabled")
        if not self.check(cfg, code):
            raise MfaInvalidError("invalid MFA code")
        self.store.clear_user_mfa_secret(user_id)
        logger.info("mfa_disabled", user_id=user_id)
