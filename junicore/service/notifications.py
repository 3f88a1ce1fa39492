from __future__ import annotations

from typing import Protocol

from junicore.logging import get_logger
from junicore.storage.models import Principal, TokenPurpose

logger = get_logger(__name__)


class Notifier(Protocol):
    """Out-of-band delivery of single-use tokens (email, SMS, ...)."""

    def deliver(self, principal: Principal, purpose: TokenPurpose, raw_token: str) -> None: ...


class LogNotifier:
    """Records that a delivery was requested; the token value is never logged."""

    def deliver(self, principal: Principal, purpose: TokenPurpose, raw_token: str) -> None:
        logger.info(
            "single_use_token_delivery_requested",
            user_id=principal.id,
            purpose=TokenPurpose(purpose).value,
        )


class RecordingNotifier:
    """Keeps delivered tokens in memory; used by tests and local tooling."""

    def __init__(self) -> None:
        self.deliveries: list[tuple[str, TokenPurpose, str]] = []

    def deliver(self, principal: Principal, purpose: TokenPurpose, raw_token: str) -> None:
        self.deliveries.append((principal.id, TokenPurpose(purpose), raw_token))

    def last_token(self, user_id: str, purpose: TokenPurpose) -> str | None:
        for delivered_to, delivered_purpose, raw in reversed(self.deliveries):
            if delivered_to == user_id and delivered_purpose == purpose:
                return raw
        return None
