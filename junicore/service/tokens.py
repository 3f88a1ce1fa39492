from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from junicore.config import Settings
from junicore.logging import get_logger
from junicore.service.errors import AuthenticationFailure
from junicore.service.result import Err, Ok, Result
from junicore.storage.models import Principal, Role

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_GENERIC_FAILURE = "invalid or expired token"


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    role: Role
    email: str
    iat: int
    exp: int


@dataclass(frozen=True)
class RefreshClaims:
    sub: str
    jti: str
    iat: int
    exp: int


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Compact HS256 JWTs for access and refresh tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``typ`` claim, so a token of one kind never verifies as the other.
    Verification returns ``Ok``/``Err`` rather than raising; the reason for a
    rejection is logged but never returned to the caller.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        leeway_seconds: float = 0.0,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._leeway = leeway_seconds
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self._secrets = {
            ACCESS: settings.jwt_access_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }

    def sign_access(self, principal: Principal) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal.id,
            "role": Role(principal.role).value,
            "email": principal.email,
            "typ": ACCESS,
            "iat": now,
            "exp": now + int(self.access_ttl.total_seconds()),
        }
        return self._encode_jwt(payload, ACCESS)

    def sign_refresh(self, principal_id: str, jti: str, expires_at: datetime) -> str:
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal_id,
            "jti": jti,
            "typ": REFRESH,
            "iat": int(self._clock()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload, REFRESH)

    def verify_access(self, token: str) -> Result[AccessClaims, AuthenticationFailure]:
        payload = self._decode_jwt(token, ACCESS)
        if payload is None:
            return Err(AuthenticationFailure(_GENERIC_FAILURE))
        try:
            claims = AccessClaims(
                sub=str(payload["sub"]),
                role=Role(payload["role"]),
                email=str(payload.get("email", "")),
                iat=int(payload.get("iat", 0)),
                exp=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("jwt_claims_invalid", token_type=ACCESS)
            return Err(AuthenticationFailure(_GENERIC_FAILURE))
        return Ok(claims)

    def verify_refresh(self, token: str) -> Result[RefreshClaims, AuthenticationFailure]:
        payload = self._decode_jwt(token, REFRESH)
        if payload is None:
            return Err(AuthenticationFailure(_GENERIC_FAILURE))
        try:
            claims = RefreshClaims(
                sub=str(payload["sub"]),
                jti=str(payload["jti"]),
                iat=int(payload.get("iat", 0)),
                exp=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("jwt_claims_invalid", token_type=REFRESH)
            return Err(AuthenticationFailure(_GENERIC_FAILURE))
        return Ok(claims)

    def _sign(self, signing_input: str, kind: str) -> str:
        digest = hmac.new(
            self._secrets[kind], signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], kind: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _decode_jwt(self, token: str, kind: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.warning("jwt_malformed", token_type=kind)
            return None

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", token_type=kind)
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", token_type=kind)
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            logger.info("jwt_signature_mismatch", token_type=kind)
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", token_type=kind, error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("typ") != kind:
            logger.warning("jwt_wrong_kind", token_type=kind)
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            logger.warning("jwt_issuer_mismatch", token_type=kind)
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            logger.warning("jwt_audience_mismatch", token_type=kind)
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self._leeway:
            logger.info("jwt_expired", token_type=kind)
            return None
        return payload
