"""Compact HS256 access tokens.

Tokens are ``base64url(header).base64url(payload).base64url(signature)`` with
payload fields ``sub``, ``email``, ``roles`` (comma-joined role names),
``iat`` and ``exp`` (epoch seconds), plus ``iss`` and a random ``jti`` so two
tokens minted in the same second for the same principal never collide.
Verification performs no I/O.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Tuple

from authbase.clock import Clock, SystemClock, from_epoch_seconds
from authbase.logging import get_logger
from authbase.service.errors import BadSignature, MalformedToken, TokenExpired
from authbase.storage.models import Principal

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}
_REQUIRED_CLAIMS = ("sub", "email", "roles", "iat", "exp")


@dataclass(frozen=True)
class TokenConfig:
    secret: str
    ttl: timedelta = timedelta(minutes=15)
    issuer: str = "authbase"


@dataclass(frozen=True)
class Claims:
    subject: str
    email: str
    roles: Tuple[str, ...]
    issued_at: int
    expires_at: int
    issuer: str | None = None
    token_id: str | None = None

    @property
    def principal_id(self) -> str:
        return self.subject

    @property
    def expires_at_ms(self) -> int:
        return self.expires_at * 1000

    @property
    def expires_at_datetime(self) -> datetime:
        return from_epoch_seconds(self.expires_at)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def encode_roles(role_names: Iterable[str]) -> str:
    return ",".join(sorted(set(role_names)))


def decode_roles(value: str) -> Tuple[str, ...]:
    return tuple(part for part in value.split(",") if part)


class TokenCodec:
    """Signs and verifies access tokens; holds no state besides its config."""

    def __init__(self, config: TokenConfig, clock: Clock | None = None) -> None:
        if not config.secret:
            raise ValueError("token secret must be set")
        self.config = config
        self.clock = clock or SystemClock()
        self._key = config.secret.encode()

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, principal: Principal) -> str:
        issued_at = int(self.clock.now().timestamp())
        payload: dict[str, Any] = {
            "sub": str(principal.id),
            "email": principal.email,
            "roles": encode_roles(principal.role_names),
            "iat": issued_at,
            "exp": issued_at + int(self.config.ttl.total_seconds()),
            "iss": self.config.issuer,
            "jti": uuid.uuid4().hex,
        }
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, *, verify_expiry: bool = True) -> Claims:
        """Return the token's claims or raise MalformedToken/BadSignature/TokenExpired.

        ``verify_expiry=False`` still checks the signature; logout uses it to
        learn the natural expiry of a token it is about to blacklist.
        """
        if not token or not isinstance(token, str) or not token.isascii():
            raise MalformedToken()
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedToken()
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise MalformedToken()
        # Reject anything but HS256, including "none"
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedToken("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise BadSignature()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise MalformedToken()
        if not isinstance(payload, dict) or any(c not in payload for c in _REQUIRED_CLAIMS):
            raise MalformedToken("token is missing required claims")
        if not isinstance(payload["iat"], int) or not isinstance(payload["exp"], int):
            raise MalformedToken("token timestamps must be integers")
        if not isinstance(payload["roles"], str):
            raise MalformedToken("token roles must be a string")
        if payload.get("iss") != self.config.issuer:
            logger.warning("jwt_issuer_mismatch", issuer=payload.get("iss"))
            raise MalformedToken("unexpected token issuer")

        claims = Claims(
            subject=str(payload["sub"]),
            email=str(payload["email"]),
            roles=decode_roles(payload["roles"]),
            issued_at=payload["iat"],
            expires_at=payload["exp"],
            issuer=payload.get("iss"),
            token_id=payload.get("jti"),
        )
        if verify_expiry and self.clock.now().timestamp() >= claims.expires_at:
            raise TokenExpired()
        return claims
