from __future__ import annotations

import hashlib
import hmac
import time
from typing import Callable, Optional

from junicore.logging import get_logger

logger = get_logger(__name__)


def _hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class WebhookVerifier:
    """Checks a provider signature over the exact bytes received.

    ``verify`` answers True or False and never raises; a missing header,
    a malformed header and an unset secret all verify as False.
    """

    provider: str = ""
    header_name: str = ""

    def verify(
        self, raw_body: bytes, signature_header: Optional[str], secret: Optional[str]
    ) -> bool:
        if not secret:
            logger.warning("webhook_secret_unset", provider=self.provider)
            return False
        if not signature_header:
            return False
        try:
            return self._verify(raw_body, signature_header.strip(), secret)
        except (TypeError, ValueError) as exc:
            logger.info("webhook_signature_unparseable", provider=self.provider, error=str(exc))
            return False

    def _verify(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        raise NotImplementedError


class CheckrSignatureVerifier(WebhookVerifier):
    """Hex HMAC-SHA256 of the raw body, sent in ``X-Checkr-Signature``."""

    provider = "checkr"
    header_name = "X-Checkr-Signature"

    def _verify(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        expected = _hmac_sha256_hex(secret, raw_body)
        return hmac.compare_digest(expected, signature_header.lower())


class StripeSignatureVerifier(WebhookVerifier):
    """Stripe's ``t=<unix>,v1=<hex>`` scheme.

    The signed message is ``"{t}." + raw_body``. Any of several ``v1``
    entries may match (Stripe sends more than one during secret rolls), and
    the timestamp must fall within ``tolerance_seconds`` of now.
    """

    provider = "stripe"
    header_name = "Stripe-Signature"
    scheme = "v1"

    def __init__(
        self, tolerance_seconds: int = 300, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    @classmethod
    def parse_header(cls, signature_header: str) -> tuple[int, list[str]]:
        timestamp: Optional[int] = None
        signatures: list[str] = []
        for item in signature_header.split(","):
            key, sep, value = item.strip().partition("=")
            if not sep:
                raise ValueError("malformed signature element")
            if key == "t":
                timestamp = int(value)
            elif key == cls.scheme:
                signatures.append(value.strip().lower())
        if timestamp is None or not signatures:
            raise ValueError("signature header missing timestamp or v1 entry")
        return timestamp, signatures

    def _verify(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        timestamp, signatures = self.parse_header(signature_header)
        if abs(self._clock() - timestamp) > self.tolerance_seconds:
            logger.info(
                "webhook_timestamp_outside_tolerance",
                provider=self.provider,
                skew_seconds=int(self._clock() - timestamp),
            )
            return False
        expected = _hmac_sha256_hex(secret, f"{timestamp}.".encode("utf-8") + raw_body)
        matched = False
        for candidate in signatures:
            # no early exit
            if hmac.compare_digest(expected, candidate):
                matched = True
        return matched

    @staticmethod
    def sign(raw_body: bytes, secret: str, timestamp: int) -> str:
        """Build a header value; used by tests and local webhook replay tooling."""
        return f"t={timestamp},v1={_hmac_sha256_hex(secret, f'{timestamp}.'.encode() + raw_body)}"
