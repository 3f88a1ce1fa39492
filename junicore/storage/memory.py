from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from junicore.logging import get_logger
from junicore.storage.common import (
    principal_from_row,
    session_from_row,
    single_use_from_row,
    to_row,
    webhook_event_from_row,
)
from junicore.storage.errors import ConstraintViolation
from junicore.storage.models import (
    EventStatus,
    Principal,
    RefreshSession,
    Role,
    SessionState,
    SingleUseToken,
    TokenPurpose,
    WebhookEvent,
    utcnow,
)


class MemoryStore:
    """In-process backing store for development and tests.

    Every mutation runs under one ``RLock`` so the conditional updates
    (rotate, revoke, consume, claim) are atomic with respect to concurrent
    threads.  When ``fs_root`` is given, state is snapshotted to JSON after
    each mutation and reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Principal] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, RefreshSession] = {}
        self.single_use_tokens: Dict[str, SingleUseToken] = {}
        self.webhook_events: Dict[str, WebhookEvent] = {}
        self._webhook_keys: Dict[Tuple[str, str], str] = {}
        # RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # principals
    def create_user(
        self,
        email: str,
        role: Role = Role.FAMILY,
        *,
        email_verified: bool = False,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> Principal:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = Principal(
                id=str(uuid.uuid4()),
                email=normalized,
                role=Role(role),
                email_verified=email_verified,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[Principal]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def mark_email_verified(self, user_id: str) -> Optional[Principal]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[Principal]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh sessions
    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"session_id": session.id})
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def rotate_refresh_session(
        self, old_session_id: str, new_session: RefreshSession, now: datetime
    ) -> bool:
        """Mark ``old_session_id`` ROTATED and insert ``new_session`` in one step.

        Returns False, leaving both untouched, unless the old session is
        ISSUED and unexpired at ``now``.
        """
        with self._data_lock:
            old = self.sessions.get(old_session_id)
            if not old or not old.is_active(now):
                return False
            if new_session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"session_id": new_session.id})
            old.state = SessionState.ROTATED
            old.revoked_at = now
            old.replaced_by = new_session.id
            self.sessions[new_session.id] = new_session
            self._persist_state()
            return True

    def revoke_refresh_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.state != SessionState.ISSUED:
                return False
            sess.state = SessionState.REVOKED
            sess.revoked_at = now
            self._persist_state()
            return True

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.state == SessionState.ISSUED:
                    sess.state = SessionState.REVOKED
                    sess.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # single-use tokens
    def create_single_use_token(self, token: SingleUseToken) -> SingleUseToken:
        """Store ``token`` and retire the owner's outstanding tokens of the same purpose."""
        with self._data_lock:
            if token.token_hash in self.single_use_tokens:
                raise ConstraintViolation("token already exists", {"field": "token_hash"})
            for existing in self.single_use_tokens.values():
                if (
                    existing.user_id == token.user_id
                    and existing.purpose == token.purpose
                    and existing.consumed_at is None
                ):
                    existing.consumed_at = token.created_at
            self.single_use_tokens[token.token_hash] = token
            self._persist_state()
            return token

    def get_single_use_token(self, token_hash: str) -> Optional[SingleUseToken]:
        with self._data_lock:
            return self.single_use_tokens.get(token_hash)

    def consume_single_use_token(
        self, token_hash: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[SingleUseToken]:
        with self._data_lock:
            token = self.single_use_tokens.get(token_hash)
            if not token or not token.is_redeemable(purpose, now):
                return None
            token.consumed_at = now
            self._persist_state()
            return token

    # webhook ledger
    def record_webhook_event(self, event: WebhookEvent) -> tuple[WebhookEvent, bool]:
        key = (event.provider, event.external_id)
        with self._data_lock:
            existing_id = self._webhook_keys.get(key)
            if existing_id:
                return self.webhook_events[existing_id], False
            self.webhook_events[event.id] = event
            self._webhook_keys[key] = event.id
            self._persist_state()
            return event, True

    def get_webhook_event(self, provider: str, external_id: str) -> Optional[WebhookEvent]:
        with self._data_lock:
            event_id = self._webhook_keys.get((provider, external_id))
            return self.webhook_events.get(event_id) if event_id else None

    def claim_webhook_event(
        self, event_id: str, expected_status: EventStatus
    ) -> Optional[WebhookEvent]:
        with self._data_lock:
            event = self.webhook_events.get(event_id)
            if not event or event.status != expected_status:
                return None
            event.status = EventStatus.PROCESSING
            event.attempts += 1
            event.error = None
            self._persist_state()
            return event

    def mark_webhook_processed(self, event_id: str) -> None:
        with self._data_lock:
            event = self.webhook_events.get(event_id)
            if not event:
                return
            event.status = EventStatus.PROCESSED
            event.processed_at = utcnow()
            event.error = None
            self._persist_state()

    def mark_webhook_failed(self, event_id: str, error: str) -> None:
        with self._data_lock:
            event = self.webhook_events.get(event_id)
            if not event:
                return
            event.status = EventStatus.FAILED
            event.error = error
            self._persist_state()

    def release_webhook_event(self, event_id: str) -> bool:
        with self._data_lock:
            event = self.webhook_events.get(event_id)
            if not event or event.status != EventStatus.PROCESSING:
                return False
            event.status = EventStatus.RECEIVED
            self._persist_state()
            return True

    def list_webhook_events(
        self,
        status: Optional[EventStatus] = None,
        *,
        provider: Optional[str] = None,
        limit: int = 100,
    ) -> List[WebhookEvent]:
        with self._data_lock:
            results = [
                evt
                for evt in self.webhook_events.values()
                if (status is None or evt.status == status)
                and (provider is None or evt.provider == provider)
            ]
            return sorted(results, key=lambda e: e.received_at)[:limit]

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [to_row(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [to_row(s) for s in self.sessions.values()],
            "single_use_tokens": [to_row(t) for t in self.single_use_tokens.values()],
            "webhook_events": [to_row(e) for e in self.webhook_events.values()],
        }
        path = self._state_path()
        tmp_path = Path(f"{path}.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: principal_from_row(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: session_from_row(s) for s in data.get("sessions", [])
        }
        self.single_use_tokens = {
            t["token_hash"]: single_use_from_row(t)
            for t in data.get("single_use_tokens", [])
        }
        self.webhook_events = {
            e["id"]: webhook_event_from_row(e) for e in data.get("webhook_events", [])
        }
        self._webhook_keys = {
            (e.provider, e.external_id): e.id for e in self.webhook_events.values()
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            webhook_events=len(self.webhook_events),
        )
        return True
