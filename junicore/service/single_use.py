from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from junicore.config import Settings
from junicore.logging import email_fingerprint, get_logger
from junicore.service.errors import ConflictFailure, ServiceError, ValidationFailure
from junicore.service.notifications import LogNotifier, Notifier
from junicore.service.passwords import ALGO, CredentialStore
from junicore.service.result import Err, Ok, Result
from junicore.service.secure_tokens import generate_secure_token, hash_token
from junicore.storage.models import Principal, SingleUseToken, TokenPurpose

logger = get_logger(__name__)

_INVALID = "invalid or expired token"


class SingleUseStore(Protocol):
    def get_user(self, user_id: str) -> Optional[Principal]: ...

    def get_user_by_email(self, email: str) -> Optional[Principal]: ...

    def mark_email_verified(self, user_id: str) -> Optional[Principal]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int: ...

    def create_single_use_token(self, token: SingleUseToken) -> SingleUseToken: ...

    def get_single_use_token(self, token_hash: str) -> Optional[SingleUseToken]: ...

    def consume_single_use_token(
        self, token_hash: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[SingleUseToken]: ...


class SingleUseTokenService:
    """Email-verification and password-reset tokens.

    Only the SHA-256 of a token is stored. Redemption is a single conditional
    consume in the store, so of any number of concurrent redeemers exactly
    one succeeds.
    """

    def __init__(
        self,
        store: SingleUseStore,
        settings: Settings,
        credentials: CredentialStore,
        *,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.notifier: Notifier = notifier or LogNotifier()
        self._ttls = {
            TokenPurpose.EMAIL_VERIFY: timedelta(hours=settings.email_verify_ttl_hours),
            TokenPurpose.PASSWORD_RESET: timedelta(
                minutes=settings.password_reset_ttl_minutes
            ),
        }

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue(self, principal: Principal, purpose: TokenPurpose) -> str:
        """Create a token for ``purpose``, superseding earlier unused ones."""
        purpose = TokenPurpose(purpose)
        raw = generate_secure_token(32)
        now = self._now()
        self.store.create_single_use_token(
            SingleUseToken(
                token_hash=hash_token(raw),
                user_id=principal.id,
                purpose=purpose,
                created_at=now,
                expires_at=now + self._ttls[purpose],
            )
        )
        logger.info("single_use_token_issued", user_id=principal.id, purpose=purpose.value)
        return raw

    def issue_and_notify(self, principal: Principal, purpose: TokenPurpose) -> str:
        raw = self.issue(principal, purpose)
        self.notifier.deliver(principal, purpose, raw)
        return raw

    def redeem(
        self, raw_token: str, purpose: TokenPurpose
    ) -> Result[Principal, ServiceError]:
        purpose = TokenPurpose(purpose)
        if not raw_token:
            return Err(ValidationFailure(_INVALID))
        token_hash = hash_token(raw_token)
        now = self._now()
        consumed = self.store.consume_single_use_token(token_hash, purpose, now)
        if consumed is None:
            return Err(self._classify_miss(token_hash, purpose))
        principal = self.store.get_user(consumed.user_id)
        if principal is None or not principal.is_active:
            logger.warning(
                "single_use_token_owner_unavailable",
                user_id=consumed.user_id,
                purpose=purpose.value,
            )
            return Err(ValidationFailure(_INVALID))
        logger.info("single_use_token_redeemed", user_id=principal.id, purpose=purpose.value)
        return Ok(principal)

    def _classify_miss(self, token_hash: str, purpose: TokenPurpose) -> ServiceError:
        existing = self.store.get_single_use_token(token_hash)
        if existing is not None and existing.purpose == purpose and existing.consumed_at:
            logger.info("single_use_token_reused", user_id=existing.user_id, purpose=purpose.value)
            return ConflictFailure("token already used")
        logger.info("single_use_token_rejected", purpose=purpose.value, known=existing is not None)
        return ValidationFailure(_INVALID)

    def verify_email(self, raw_token: str) -> Principal:
        principal = self.redeem(raw_token, TokenPurpose.EMAIL_VERIFY).unwrap()
        updated = self.store.mark_email_verified(principal.id)
        logger.info("email_verified", user_id=principal.id)
        return updated or principal

    def request_password_reset(self, email: str) -> None:
        """Issue and deliver a reset token when the address is known.

        Returns the same way whether or not the principal exists.
        """
        principal = self.store.get_user_by_email(email)
        if principal is None or not principal.is_active:
            logger.info("password_reset_unknown_email", email_hash=email_fingerprint(email))
            return
        self.issue_and_notify(principal, TokenPurpose.PASSWORD_RESET)
        logger.info("password_reset_requested", user_id=principal.id)

    def reset_password(self, raw_token: str, new_password: str) -> Principal:
        principal = self.redeem(raw_token, TokenPurpose.PASSWORD_RESET).unwrap()
        self.store.save_password(principal.id, self.credentials.hash(new_password), ALGO)
        revoked = self.store.revoke_user_sessions(principal.id, self._now())
        logger.info("password_reset_completed", user_id=principal.id, sessions_revoked=revoked)
        return principal
