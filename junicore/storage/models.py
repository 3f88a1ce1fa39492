from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    FAMILY = "FAMILY"
    COMPANION = "COMPANION"
    ADMIN = "ADMIN"


class SessionState(str, Enum):
    """Refresh session lifecycle. EXPIRED is derived from ``expires_at``."""

    ISSUED = "ISSUED"
    ROTATED = "ROTATED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class TokenPurpose(str, Enum):
    EMAIL_VERIFY = "email_verify"
    PASSWORD_RESET = "password_reset"


class EventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass
class Principal:
    id: str
    email: str
    role: Role = Role.FAMILY
    email_verified: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class RefreshSession:
    id: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    state: SessionState = SessionState.ISSUED
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(cls, user_id: str, ttl: timedelta, *, jti: str | None = None) -> "RefreshSession":
        now = utcnow()
        return cls(
            id=jti or str(uuid.uuid4()),
            user_id=user_id,
            issued_at=now,
            expires_at=now + ttl,
        )

    def status(self, now: datetime | None = None) -> SessionState:
        now = now or utcnow()
        if self.state == SessionState.ISSUED and self.expires_at <= now:
            return SessionState.EXPIRED
        return self.state

    def is_active(self, now: datetime | None = None) -> bool:
        return self.status(now) == SessionState.ISSUED


@dataclass
class SingleUseToken:
    token_hash: str
    user_id: str
    purpose: TokenPurpose
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    consumed_at: Optional[datetime] = None

    def is_redeemable(self, purpose: TokenPurpose, now: datetime) -> bool:
        return (
            self.consumed_at is None
            and self.purpose == purpose
            and self.expires_at > now
        )


@dataclass
class WebhookEvent:
    id: str
    provider: str
    external_id: str
    event_type: str
    payload_hash: str
    payload: Dict[str, Any]
    received_at: datetime = field(default_factory=utcnow)
    status: EventStatus = EventStatus.RECEIVED
    attempts: int = 0
    processed_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def new(
        cls,
        provider: str,
        external_id: str,
        event_type: str,
        payload_hash: str,
        payload: Dict[str, Any],
    ) -> "WebhookEvent":
        return cls(
            id=str(uuid.uuid4()),
            provider=provider,
            external_id=external_id,
            event_type=event_type,
            payload_hash=payload_hash,
            payload=payload,
        )
