from __future__ import annotations

import hashlib
import secrets
import string
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from timekeeper.config import Settings
from timekeeper.logging import get_logger
from timekeeper.service.errors import ValidationError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
_SYMBOLS = frozenset(string.punctuation)


def generate_token(nbytes: int = 32) -> str:
    """Opaque, URL-safe secret handed to the client exactly once."""
    return secrets.token_urlsafe(nbytes)


def hash_token(token: str) -> str:
    """Digest under which opaque tokens are stored and looked up.

    Tokens carry 256 bits of entropy, so a fast digest is enough and lets the
    store index the value directly.
    """
    return hashlib.sha256(token.encode()).hexdigest()


class CredentialStore(Protocol):
    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        history_limit: int = 0,
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_password_history(self, user_id: str, limit: int) -> List[str]: ...


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 12
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_symbols: bool = True
    history_count: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_numbers=settings.password_require_numbers,
            require_symbols=settings.password_require_symbols,
            history_count=settings.password_history_count,
        )

    def violations(self, password: str) -> List[str]:
        problems: List[str] = []
        if len(password) < self.min_length:
            problems.append(f"must be at least {self.min_length} characters")
        if self.require_uppercase and not any(c.isupper() for c in password):
            problems.append("must contain an uppercase letter")
        if self.require_lowercase and not any(c.islower() for c in password):
            problems.append("must contain a lowercase letter")
        if self.require_numbers and not any(c.isdigit() for c in password):
            problems.append("must contain a number")
        if self.require_symbols and not any(c in _SYMBOLS for c in password):
            problems.append("must contain a symbol")
        return problems


class PasswordManager:
    """argon2id hashing plus policy and reuse checks for stored passwords."""

    def __init__(self, store: CredentialStore, policy: PasswordPolicy) -> None:
        self.store = store
        self.policy = policy
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the username is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _matches(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            self.burn_verification(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        return self._matches(stored_hash, password)

    def burn_verification(self, password: str) -> None:
        """Spend one argon2 verification so a missing account takes as long as a real one."""
        self._matches(self._dummy_hash, password)

    def validate_new_password(self, user_id: Optional[str], password: str) -> None:
        problems = self.policy.violations(password)
        if problems:
            raise ValidationError(
                "password does not meet the password policy",
                detail={"field": "password", "violations": problems},
            )
        if not user_id or self.policy.history_count <= 0:
            return
        current = self.store.get_password_record(user_id)
        previous = self.store.get_password_history(user_id, self.policy.history_count)
        candidates = ([current[0]] if current else []) + previous
        if any(self._matches(h, password) for h in candidates):
            raise ValidationError(
                "password was used recently",
                detail={"field": "password", "history_count": self.policy.history_count},
            )

    def set_password(self, user_id: str, password: str, *, enforce_policy: bool = True) -> None:
        if enforce_policy:
            self.validate_new_password(user_id, password)
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(
            user_id, pwd_hash, algo, history_limit=self.policy.history_count
        )
