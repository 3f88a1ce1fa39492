from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import PASSWORD
from junicore.service.errors import (
    AuthenticationFailure,
    ConflictFailure,
    ValidationFailure,
)
from junicore.service.secure_tokens import hash_token
from junicore.storage.models import Role, SessionState, TokenPurpose, utcnow


@pytest.fixture
def single_use(runtime):
    return runtime.single_use


@pytest.fixture
def pending_user(runtime):
    return runtime.auth.register("pending@example.com", PASSWORD, Role.COMPANION)


def test_issue_stores_only_the_digest(single_use, pending_user, memory_store):
    raw = single_use.issue(pending_user, TokenPurpose.PASSWORD_RESET)

    assert len(raw) == 64
    assert raw not in memory_store.single_use_tokens
    stored = memory_store.single_use_tokens[hash_token(raw)]
    assert stored.user_id == pending_user.id
    assert stored.purpose == TokenPurpose.PASSWORD_RESET


def test_ttl_depends_on_purpose(single_use, pending_user, memory_store):
    verify_raw = single_use.issue(pending_user, TokenPurpose.EMAIL_VERIFY)
    reset_raw = single_use.issue(pending_user, TokenPurpose.PASSWORD_RESET)

    verify = memory_store.single_use_tokens[hash_token(verify_raw)]
    reset = memory_store.single_use_tokens[hash_token(reset_raw)]
    assert verify.expires_at - verify.created_at == timedelta(hours=24)
    assert reset.expires_at - reset.created_at == timedelta(minutes=60)


def test_redeem_succeeds_once(single_use, pending_user):
    raw = single_use.issue(pending_user, TokenPurpose.PASSWORD_RESET)

    first = single_use.redeem(raw, TokenPurpose.PASSWORD_RESET)
    second = single_use.redeem(raw, TokenPurpose.PASSWORD_RESET)

    assert first.ok and first.value.id == pending_user.id
    assert not second.ok
    assert isinstance(second.error, ConflictFailure)
    assert second.error.message == "token already used"


def test_unknown_and_empty_tokens_are_invalid(single_use):
    for raw in ("", "f" * 64):
        result = single_use.redeem(raw, TokenPurpose.EMAIL_VERIFY)
        assert isinstance(result.error, ValidationFailure)
        assert result.error.message == "invalid or expired token"


def test_expired_token_is_invalid(single_use, pending_user, memory_store):
    raw = single_use.issue(pending_user, TokenPurpose.PASSWORD_RESET)
    memory_store.single_use_tokens[hash_token(raw)].expires_at = utcnow() - timedelta(seconds=1)

    result = single_use.redeem(raw, TokenPurpose.PASSWORD_RESET)
    assert isinstance(result.error, ValidationFailure)


def test_wrong_purpose_does_not_consume(single_use, pending_user):
    raw = single_use.issue(pending_user, TokenPurpose.EMAIL_VERIFY)

    wrong = single_use.redeem(raw, TokenPurpose.PASSWORD_RESET)
    assert isinstance(wrong.error, ValidationFailure)
    assert single_use.redeem(raw, TokenPurpose.EMAIL_VERIFY).ok


def test_new_token_supersedes_outstanding_one(single_use, pending_user):
    old = single_use.issue(pending_user, TokenPurpose.PASSWORD_RESET)
    new = single_use.issue(pending_user, TokenPurpose.PASSWORD_RESET)

    assert not single_use.redeem(old, TokenPurpose.PASSWORD_RESET).ok
    assert single_use.redeem(new, TokenPurpose.PASSWORD_RESET).ok


def test_supersede_is_scoped_to_purpose(single_use, pending_user, notifier):
    verify_raw = notifier.last_token(pending_user.id, TokenPurpose.EMAIL_VERIFY)
    single_use.issue(pending_user, TokenPurpose.PASSWORD_RESET)

    assert single_use.redeem(verify_raw, TokenPurpose.EMAIL_VERIFY).ok


def test_concurrent_redeem_has_single_winner(single_use, pending_user):
    raw = single_use.issue(pending_user, TokenPurpose.PASSWORD_RESET)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(
            pool.map(lambda _: single_use.redeem(raw, TokenPurpose.PASSWORD_RESET), range(8))
        )

    winners = [r for r in results if r.ok]
    assert len(winners) == 1
    assert all(isinstance(r.error, ConflictFailure) for r in results if not r.ok)


def test_deactivated_owner_cannot_redeem(single_use, pending_user, memory_store):
    raw = single_use.issue(pending_user, TokenPurpose.PASSWORD_RESET)
    memory_store.set_user_active(pending_user.id, False)

    result = single_use.redeem(raw, TokenPurpose.PASSWORD_RESET)
    assert isinstance(result.error, ValidationFailure)


def test_verify_email_marks_principal_verified(single_use, pending_user, notifier):
    raw = notifier.last_token(pending_user.id, TokenPurpose.EMAIL_VERIFY)

    principal = single_use.verify_email(raw)

    assert principal.email_verified is True
    with pytest.raises(ConflictFailure):
        single_use.verify_email(raw)


def test_password_reset_flow_revokes_sessions(runtime, verified_user, notifier, memory_store):
    _, pair = runtime.auth.login("family@example.com", PASSWORD)

    runtime.single_use.request_password_reset("FAMILY@example.com")
    raw = notifier.last_token(verified_user.id, TokenPurpose.PASSWORD_RESET)
    runtime.single_use.reset_password(raw, "BrandNewPass7")

    assert memory_store.get_refresh_session(pair.session_id).state == SessionState.REVOKED
    with pytest.raises(AuthenticationFailure):
        runtime.auth.login("family@example.com", PASSWORD)
    principal, _ = runtime.auth.login("family@example.com", "BrandNewPass7")
    assert principal.id == verified_user.id


def test_reset_token_cannot_be_replayed(runtime, verified_user, notifier):
    runtime.single_use.request_password_reset("family@example.com")
    raw = notifier.last_token(verified_user.id, TokenPurpose.PASSWORD_RESET)
    runtime.single_use.reset_password(raw, "BrandNewPass7")

    with pytest.raises(ConflictFailure):
        runtime.single_use.reset_password(raw, "AnotherPass8")


def test_reset_request_for_unknown_email_is_silent(single_use, notifier):
    before = len(notifier.deliveries)
    with patch("junicore.service.single_use.logger") as mock_logger:
        assert single_use.request_password_reset("ghost@example.com") is None

    assert len(notifier.deliveries) == before
    event, kwargs = mock_logger.info.call_args.args[0], mock_logger.info.call_args.kwargs
    assert event == "password_reset_unknown_email"
    assert "ghost@example.com" not in str(kwargs)
