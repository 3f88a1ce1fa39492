"""Row conversion shared between the memory and postgres stores.

Postgres hands back ``dict_row`` mappings with native datetimes; the memory
store's JSON snapshot holds ISO strings.  Both go through the same helpers so
the two backends build identical model objects.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from junicore.storage.models import (
    EventStatus,
    Principal,
    RefreshSession,
    Role,
    SessionState,
    SingleUseToken,
    TokenPurpose,
    WebhookEvent,
)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


def as_json(value: Any) -> Optional[dict]:
    if value is None or isinstance(value, dict):
        return value
    return json.loads(value)


def principal_from_row(row: Mapping[str, Any]) -> Principal:
    return Principal(
        id=str(row["id"]),
        email=row["email"],
        role=Role(row.get("role", Role.FAMILY.value)),
        email_verified=bool(row.get("email_verified", False)),
        is_active=bool(row.get("is_active", True)),
        created_at=as_datetime(row.get("created_at")) or datetime.now(timezone.utc),
        meta=as_json(row.get("meta")),
    )


def session_from_row(row: Mapping[str, Any]) -> RefreshSession:
    return RefreshSession(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        issued_at=as_datetime(row["issued_at"]),
        expires_at=as_datetime(row["expires_at"]),
        state=SessionState(row.get("state", SessionState.ISSUED.value)),
        revoked_at=as_datetime(row.get("revoked_at")),
        replaced_by=row.get("replaced_by"),
    )


def single_use_from_row(row: Mapping[str, Any]) -> SingleUseToken:
    return SingleUseToken(
        token_hash=row["token_hash"],
        user_id=str(row["user_id"]),
        purpose=TokenPurpose(row["purpose"]),
        expires_at=as_datetime(row["expires_at"]),
        created_at=as_datetime(row.get("created_at")) or datetime.now(timezone.utc),
        consumed_at=as_datetime(row.get("consumed_at")),
    )


def webhook_event_from_row(row: Mapping[str, Any]) -> WebhookEvent:
    return WebhookEvent(
        id=str(row["id"]),
        provider=row["provider"],
        external_id=row["external_id"],
        event_type=row["event_type"],
        payload_hash=row["payload_hash"],
        payload=as_json(row.get("payload")) or {},
        received_at=as_datetime(row.get("received_at")) or datetime.now(timezone.utc),
        status=EventStatus(row.get("status", EventStatus.RECEIVED.value)),
        attempts=int(row.get("attempts") or 0),
        processed_at=as_datetime(row.get("processed_at")),
        error=row.get("error"),
    )


def to_row(obj: Any) -> Dict[str, Any]:
    """Serialize a model dataclass into a JSON-safe dict."""
    row = asdict(obj)
    for key, value in row.items():
        if isinstance(value, datetime):
            row[key] = ensure_utc(value).isoformat()
        elif isinstance(value, Enum):
            row[key] = value.value
    return row
