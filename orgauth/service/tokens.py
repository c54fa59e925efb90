from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional, Protocol, Tuple

from orgauth.config import Settings
from orgauth.logging import get_logger
from orgauth.service.errors import (
    InvalidSignature,
    MalformedToken,
    MissingToken,
    RevokedOrUnknownToken,
    SigningError,
    StoreError,
)
from orgauth.storage.errors import CacheUnavailable

logger = get_logger(__name__)


class SessionStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    organization_id: str
    issued_at: int
    expires_at: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def session_key(user_id: str, organization_id: str) -> str:
    return f"{user_id}|{organization_id}"


class SessionTokenService:
    """Issues and validates organization-scoped bearer tokens.

    The ephemeral store holds exactly one token per (user, organization)
    pair. A token is valid only while its signature checks out AND it is
    byte-for-byte the value stored for its pair, so issuing a new token
    for a pair revokes the previous one.
    """

    def __init__(
        self,
        cache: SessionStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self._clock = clock or time.time

    @property
    def ttl_seconds(self) -> int:
        return self.settings.session_ttl_days * 86400

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        secret = self.settings.jwt_secret
        if not secret:
            raise SigningError("signing secret is not configured")
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        try:
            header_enc = self._encode_segment(
                json.dumps(header, separators=(",", ":")).encode()
            )
            payload_enc = self._encode_segment(
                json.dumps(payload, separators=(",", ":")).encode()
            )
        except (TypeError, ValueError) as exc:
            raise SigningError("unable to encode token claims") from exc
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> SessionClaims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidSignature("segments")

        # Only HS256 is accepted, whatever the header claims
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            raise InvalidSignature("header")
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidSignature("algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignature("signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
            claims = SessionClaims(
                user_id=str(payload["user_id"]),
                organization_id=str(payload["organization_id"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (ValueError, KeyError, TypeError):
            raise InvalidSignature("claims")
        if not claims.user_id:
            raise InvalidSignature("claims")
        if claims.expires_at <= self._clock():
            raise InvalidSignature("expired")
        return claims

    async def issue(self, user_id: str, organization_id: str) -> Tuple[str, SessionClaims]:
        """Mint a token for the pair and register it as the pair's only valid token.

        Any token previously issued for the same (user, organization) pair
        stops validating once this returns. ``organization_id`` may be empty
        for users without a membership.
        """
        now = int(self._clock())
        claims = SessionClaims(
            user_id=user_id,
            organization_id=organization_id,
            issued_at=now,
            expires_at=now + self.ttl_seconds,
        )
        token = self._encode_jwt(
            {
                "user_id": user_id,
                "organization_id": organization_id,
                "iat": claims.issued_at,
                "exp": claims.expires_at,
                # Keeps tokens minted within the same second distinct
                "jti": secrets.token_urlsafe(8),
            }
        )
        try:
            await self.cache.set(
                session_key(user_id, organization_id), token, self.ttl_seconds
            )
        except CacheUnavailable as exc:
            raise StoreError("unable to register session token") from exc
        logger.info(
            "session_token_issued", user_id=user_id, organization_id=organization_id
        )
        return token, claims

    async def validate(self, raw_header: Optional[str]) -> SessionClaims:
        if not raw_header:
            raise MissingToken()
        parts = raw_header.split(" ")
        if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
            raise MalformedToken()
        token = parts[1]
        claims = self._decode_jwt(token)
        try:
            stored = await self.cache.get(
                session_key(claims.user_id, claims.organization_id)
            )
        except CacheUnavailable as exc:
            raise StoreError("unable to read session registry") from exc
        if stored is None or not hmac.compare_digest(stored.encode(), token.encode()):
            raise RevokedOrUnknownToken()
        return claims

    async def revoke(self, user_id: str, organization_id: str) -> None:
        try:
            await self.cache.delete(session_key(user_id, organization_id))
        except CacheUnavailable as exc:
            raise StoreError("unable to revoke session token") from exc
        logger.info(
            "session_token_revoked", user_id=user_id, organization_id=organization_id
        )
