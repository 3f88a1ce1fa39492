from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Protocol

from junicore.config import Settings
from junicore.logging import email_fingerprint, get_logger
from junicore.service.errors import (
    AuthenticationFailure,
    AuthorizationFailure,
    ConflictFailure,
    ValidationFailure,
)
from junicore.service.passwords import ALGO, CredentialStore
from junicore.service.result import Err, Ok, Result
from junicore.service.secure_tokens import generate_jti
from junicore.service.single_use import SingleUseTokenService
from junicore.service.tokens import TokenCodec
from junicore.storage.errors import ConstraintViolation
from junicore.storage.models import (
    Principal,
    RefreshSession,
    Role,
    SessionState,
    TokenPurpose,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid email or password"
UNVERIFIED_EMAIL = "email address not verified"
INVALID_REFRESH = "invalid or expired refresh token"

SELF_SERVICE_ROLES = frozenset({Role.FAMILY, Role.COMPANION})


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        role: Role = Role.FAMILY,
        *,
        email_verified: bool = False,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> Principal: ...

    def get_user(self, user_id: str) -> Optional[Principal]: ...

    def get_user_by_email(self, email: str) -> Optional[Principal]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession: ...

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]: ...

    def rotate_refresh_session(
        self, old_session_id: str, new_session: RefreshSession, now: datetime
    ) -> bool: ...

    def revoke_refresh_session(self, session_id: str, now: datetime) -> bool: ...

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    role: Role
    email: str
    session_id: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    access_expires_in: int
    refresh_expires_at: datetime
    token_type: str = "bearer"


class AuthService:
    """Password login, refresh-token rotation, logout and role guards.

    Refresh tokens are tracked in the store by jti; rotation marks the old
    session ROTATED and creates its successor in one conditional step so a
    refresh token authorizes at most one refresh. Access tokens are
    stateless and stay valid until their own expiry.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        credentials: CredentialStore,
        codec: TokenCodec,
        single_use: SingleUseTokenService,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.credentials = credentials
        self.codec = codec
        self.single_use = single_use
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def register(
        self, email: str, password: str, role: Role = Role.FAMILY
    ) -> Principal:
        """Create an unverified principal and send its email-verification token."""
        try:
            role = Role(role)
        except ValueError:
            raise ValidationFailure("unsupported role", detail={"field": "role"})
        if role not in SELF_SERVICE_ROLES:
            raise ValidationFailure("role cannot be self-assigned", detail={"field": "role"})
        try:
            principal = self.store.create_user(email, role)
        except ConstraintViolation:
            raise ConflictFailure("email already registered", detail={"field": "email"})
        self.store.save_password(principal.id, self.credentials.hash(password), ALGO)
        self.single_use.issue_and_notify(principal, TokenPurpose.EMAIL_VERIFY)
        self.logger.info("principal_registered", user_id=principal.id, role=role.value)
        return principal

    def login(self, email: str, password: str) -> tuple[Principal, TokenPair]:
        principal = self.store.get_user_by_email(email)
        if principal is None:
            self.credentials.dummy_verify(password)
            self.logger.info("login_failed", reason="unknown_email", email_hash=email_fingerprint(email))
            raise AuthenticationFailure(INVALID_CREDENTIALS)
        record = self.store.get_password_record(principal.id)
        stored_hash, algo = record if record else ("", "")
        if algo != ALGO or not self.credentials.verify(password, stored_hash):
            if not record:
                self.credentials.dummy_verify(password)
            self.logger.info("login_failed", reason="bad_password", user_id=principal.id)
            raise AuthenticationFailure(INVALID_CREDENTIALS)
        if not principal.is_active:
            self.logger.info("login_failed", reason="inactive", user_id=principal.id)
            raise AuthenticationFailure(INVALID_CREDENTIALS)
        if not principal.email_verified:
            self.logger.info("login_failed", reason="unverified", user_id=principal.id)
            raise AuthenticationFailure(UNVERIFIED_EMAIL, detail={"reason": "email_unverified"})
        if self.credentials.needs_rehash(stored_hash):
            self.store.save_password(principal.id, self.credentials.hash(password), ALGO)
            self.logger.info("password_rehashed", user_id=principal.id)

        session = self.store.create_refresh_session(
            RefreshSession.new(principal.id, self.refresh_ttl, jti=generate_jti())
        )
        self.logger.info("login_succeeded", user_id=principal.id, session_id=session.id)
        return principal, self._issue_tokens(principal, session)

    def refresh(self, refresh_token: str) -> tuple[Principal, TokenPair]:
        """Exchange a refresh token for a new pair, retiring the presented one."""
        verified = self.codec.verify_refresh(refresh_token)
        if not verified.ok:
            raise AuthenticationFailure(INVALID_REFRESH)
        claims = verified.value
        now = self._now()
        session = self.store.get_refresh_session(claims.jti)
        if session is None or session.user_id != claims.sub:
            self.logger.warning("refresh_session_unknown", session_id=claims.jti)
            raise AuthenticationFailure(INVALID_REFRESH)
        status = session.status(now)
        if status != SessionState.ISSUED:
            if status == SessionState.ROTATED:
                self.logger.warning(
                    "refresh_token_reuse_detected",
                    user_id=session.user_id,
                    session_id=session.id,
                    replaced_by=session.replaced_by,
                )
            else:
                self.logger.info(
                    "refresh_rejected", session_id=session.id, state=status.value
                )
            raise AuthenticationFailure(INVALID_REFRESH)

        principal = self.store.get_user(session.user_id)
        if principal is None or not principal.is_active:
            self.store.revoke_refresh_session(session.id, now)
            raise AuthenticationFailure(INVALID_REFRESH)

        successor = RefreshSession.new(principal.id, self.refresh_ttl, jti=generate_jti())
        if not self.store.rotate_refresh_session(session.id, successor, now):
            # Another request rotated or revoked this session first
            self.logger.warning("refresh_rotation_lost", session_id=session.id)
            raise AuthenticationFailure(INVALID_REFRESH)
        self.logger.info(
            "refresh_rotated", user_id=principal.id, session_id=successor.id, previous=session.id
        )
        return principal, self._issue_tokens(principal, successor)

    def logout(self, session_id: str) -> bool:
        """Revoke one session. Unknown or already-terminal sessions are a no-op."""
        revoked = self.store.revoke_refresh_session(session_id, self._now())
        self.logger.info("logout", session_id=session_id, revoked=revoked)
        return revoked

    def logout_token(self, refresh_token: str) -> bool:
        verified = self.codec.verify_refresh(refresh_token)
        if not verified.ok:
            return False
        return self.logout(verified.value.jti)

    def revoke_all_sessions(self, user_id: str) -> int:
        revoked = self.store.revoke_user_sessions(user_id, self._now())
        self.logger.info("sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    def verify_access(self, token: str) -> Result[AuthContext, AuthenticationFailure]:
        verified = self.codec.verify_access(token)
        if not verified.ok:
            return verified
        claims = verified.value
        return Ok(AuthContext(user_id=claims.sub, role=claims.role, email=claims.email))

    def authenticate(
        self, authorization: Optional[str]
    ) -> Result[AuthContext, AuthenticationFailure]:
        token = self._extract_bearer(authorization)
        if not token:
            return Err(AuthenticationFailure("missing bearer token"))
        return self.verify_access(token)

    def require_role(self, ctx: AuthContext, *roles: Role) -> AuthContext:
        if self._role_allows(ctx.role, roles):
            return ctx
        self.logger.info(
            "authorization_denied",
            user_id=ctx.user_id,
            role=Role(ctx.role).value,
            required=[Role(r).value for r in roles],
        )
        raise AuthorizationFailure("insufficient role")

    def _role_allows(self, role: Role, required: Iterable[Role]) -> bool:
        required = {Role(r) for r in required}
        if not required or role == Role.ADMIN:
            return True
        return Role(role) in required

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    def _issue_tokens(self, principal: Principal, session: RefreshSession) -> TokenPair:
        return TokenPair(
            access_token=self.codec.sign_access(principal),
            refresh_token=self.codec.sign_refresh(principal.id, session.id, session.expires_at),
            session_id=session.id,
            access_expires_in=int(self.codec.access_ttl.total_seconds()),
            refresh_expires_at=session.expires_at,
        )
