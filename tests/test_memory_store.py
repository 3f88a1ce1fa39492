from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from junicore.storage.errors import ConstraintViolation
from junicore.storage.memory import MemoryStore
from junicore.storage.models import (
    EventStatus,
    RefreshSession,
    Role,
    SessionState,
    SingleUseToken,
    TokenPurpose,
    WebhookEvent,
    utcnow,
)


def _session(user_id, ttl=timedelta(days=30)):
    return RefreshSession.new(user_id, ttl)


def test_email_uniqueness_is_case_insensitive():
    store = MemoryStore()
    store.create_user("Someone@Example.com")
    with pytest.raises(ConstraintViolation):
        store.create_user("someone@example.COM")
    assert store.get_user_by_email(" SOMEONE@example.com ").email == "someone@example.com"


def test_password_requires_existing_user():
    store = MemoryStore()
    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash", "argon2id")


def test_rotation_chain_and_terminal_states():
    store = MemoryStore()
    user = store.create_user("a@example.com")
    first = store.create_refresh_session(_session(user.id))
    second = _session(user.id)
    now = utcnow()

    assert store.rotate_refresh_session(first.id, second, now) is True
    assert store.get_refresh_session(first.id).replaced_by == second.id
    # rotated sessions cannot rotate or be revoked again
    assert store.rotate_refresh_session(first.id, _session(user.id), now) is False
    assert store.revoke_refresh_session(first.id, now) is False
    assert store.get_refresh_session(first.id).state == SessionState.ROTATED


def test_rotation_refuses_expired_session():
    store = MemoryStore()
    user = store.create_user("a@example.com")
    expired = store.create_refresh_session(_session(user.id, ttl=timedelta(seconds=-1)))

    assert store.rotate_refresh_session(expired.id, _session(user.id), utcnow()) is False
    assert expired.status() == SessionState.EXPIRED


def test_concurrent_rotation_single_winner():
    store = MemoryStore()
    user = store.create_user("a@example.com")
    session = store.create_refresh_session(_session(user.id))
    now = utcnow()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(
            pool.map(
                lambda _: store.rotate_refresh_session(session.id, _session(user.id), now),
                range(8),
            )
        )
    assert results.count(True) == 1
    assert len(store.sessions) == 2


def test_revoke_user_sessions_counts_only_issued():
    store = MemoryStore()
    user = store.create_user("a@example.com")
    other = store.create_user("b@example.com")
    keep = store.create_refresh_session(_session(other.id))
    one = store.create_refresh_session(_session(user.id))
    store.create_refresh_session(_session(user.id))
    store.revoke_refresh_session(one.id, utcnow())

    assert store.revoke_user_sessions(user.id, utcnow()) == 1
    assert store.get_refresh_session(keep.id).state == SessionState.ISSUED


def test_single_use_consume_and_supersede():
    store = MemoryStore()
    user = store.create_user("a@example.com")
    now = utcnow()
    first = store.create_single_use_token(
        SingleUseToken("h1", user.id, TokenPurpose.PASSWORD_RESET, now + timedelta(hours=1))
    )
    store.create_single_use_token(
        SingleUseToken("h2", user.id, TokenPurpose.PASSWORD_RESET, now + timedelta(hours=1))
    )

    assert first.consumed_at is not None
    assert store.consume_single_use_token("h1", TokenPurpose.PASSWORD_RESET, now) is None
    assert store.consume_single_use_token("h2", TokenPurpose.EMAIL_VERIFY, now) is None
    assert store.consume_single_use_token("h2", TokenPurpose.PASSWORD_RESET, now) is not None
    assert store.consume_single_use_token("h2", TokenPurpose.PASSWORD_RESET, now) is None


def test_webhook_dedupe_and_claim():
    store = MemoryStore()
    event = WebhookEvent.new("checkr", "chk_1", "report.completed", "hash", {"id": "chk_1"})
    again = WebhookEvent.new("checkr", "chk_1", "report.completed", "hash", {"id": "chk_1"})
    other_provider = WebhookEvent.new("stripe", "chk_1", "report.completed", "hash", {})

    assert store.record_webhook_event(event) == (event, True)
    stored, created = store.record_webhook_event(again)
    assert created is False and stored.id == event.id
    assert store.record_webhook_event(other_provider)[1] is True

    assert store.claim_webhook_event(event.id, EventStatus.RECEIVED).attempts == 1
    assert store.claim_webhook_event(event.id, EventStatus.RECEIVED) is None
    store.mark_webhook_failed(event.id, "boom")
    assert store.list_webhook_events(EventStatus.FAILED)[0].error == "boom"
    assert store.claim_webhook_event(event.id, EventStatus.FAILED).error is None


def test_snapshot_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com", Role.COMPANION, email_verified=True)
    store.save_password(user.id, "hash", "argon2id")
    session = store.create_refresh_session(_session(user.id))
    store.create_single_use_token(
        SingleUseToken("h1", user.id, TokenPurpose.EMAIL_VERIFY, utcnow() + timedelta(hours=1))
    )
    event = WebhookEvent.new("stripe", "evt_1", "account.updated", "hash", {"id": "evt_1"})
    store.record_webhook_event(event)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    principal = reloaded.get_user_by_email("persist@example.com")
    assert principal.role == Role.COMPANION and principal.email_verified
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert reloaded.get_refresh_session(session.id).expires_at == session.expires_at
    assert reloaded.get_single_use_token("h1").purpose == TokenPurpose.EMAIL_VERIFY
    assert reloaded.get_webhook_event("stripe", "evt_1").payload == {"id": "evt_1"}
    # dedupe index is rebuilt
    assert reloaded.record_webhook_event(
        WebhookEvent.new("stripe", "evt_1", "account.updated", "hash", {})
    )[1] is False


def test_release_returns_only_processing_rows_to_received():
    store = MemoryStore()
    event, _ = store.record_webhook_event(
        WebhookEvent.new("checkr", "chk_1", "report.completed", "hash", {})
    )
    assert store.release_webhook_event(event.id) is False
    store.claim_webhook_event(event.id, EventStatus.RECEIVED)
    assert store.release_webhook_event(event.id) is True
    released = store.get_webhook_event("checkr", "chk_1")
    assert released.status == EventStatus.RECEIVED
    assert released.attempts == 1
    assert store.release_webhook_event("missing") is False


def test_snapshot_is_replaced_not_rewritten_in_place(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("first@example.com")
    state_file = tmp_path / "state" / "memory_store.json"
    before = state_file.read_text()

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("junicore.storage.memory.os.replace", fail_replace)
    with pytest.raises(RuntimeError):
        store.create_user("second@example.com")
    # the previous snapshot is still intact and loadable
    assert state_file.read_text() == before
    monkeypatch.undo()

    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_user_by_email("first@example.com") is not None
    assert reloaded.get_user_by_email("second@example.com") is None

    reloaded.create_user("third@example.com")
    assert not (tmp_path / "state" / "memory_store.json.tmp").exists()
