from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional, Protocol

from timekeeper.logging import get_logger
from timekeeper.service.errors import InvalidTokenError

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    username: str
    role: str
    sid: str
    jti: str
    iat: int
    exp: int
    token_type: str = "access"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessClaims":
        try:
            return cls(
                sub=str(payload["sub"]),
                username=str(payload["username"]),
                role=str(payload["role"]),
                sid=str(payload["sid"]),
                jti=str(payload["jti"]),
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
                token_type=str(payload.get("token_type", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError("invalid access token") from exc


class TokenSigner(Protocol):
    """Sign/verify capability so the algorithm and key can change without touching callers."""

    def sign(self, claims: AccessClaims) -> str: ...

    def verify(self, token: str) -> AccessClaims: ...


class HmacTokenSigner:
    """Compact JWS (HS256) signer bound to one issuer/audience pair."""

    algorithm = "HS256"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, claims: AccessClaims) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        payload = {**asdict(claims), "iss": self.issuer, "aud": self.audience}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but our own algorithm before checking the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != self.algorithm:
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return None

        expected = self._signature(f"{header_b64}.{payload_b64}").encode()
        # Non-ASCII input has to fail the comparison rather than raise
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        return payload

    def verify(self, token: str) -> AccessClaims:
        payload = self._decode(token)
        if payload is None:
            raise InvalidTokenError("invalid access token")
        claims = AccessClaims.from_payload(payload)
        if claims.token_type != "access":
            raise InvalidTokenError("invalid access token")
        if claims.exp <= self._clock():
            raise InvalidTokenError("access token expired")
        return claims
