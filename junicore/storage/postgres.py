from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from junicore.logging import get_logger
from junicore.storage.common import (
    principal_from_row,
    session_from_row,
    single_use_from_row,
    webhook_event_from_row,
)
from junicore.storage.errors import ConstraintViolation, StoreUnavailable, UnstorableValue
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


class PostgresStore:
    """Postgres-backed store; every state transition is a guarded UPDATE or INSERT."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def _verify_required_schema(self) -> None:
        """Ensure the core tables exist before serving requests."""

        required_tables = [
            "app_user",
            "user_auth_credential",
            "refresh_session",
            "single_use_token",
            "webhook_event",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, email_verified, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        Role(role).value,
                        email_verified,
                        is_active,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return principal_from_row(row)

    def get_user(self, user_id: str) -> Optional[Principal]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return principal_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return principal_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET email_verified = TRUE, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return principal_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return principal_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # refresh sessions
    def _insert_session(self, conn: psycopg.Connection, session: RefreshSession) -> None:
        conn.execute(
            """
            INSERT INTO refresh_session (id, user_id, issued_at, expires_at, state)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.issued_at,
                session.expires_at,
                SessionState.ISSUED.value,
            ),
        )

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        try:
            with self._connect() as conn:
                self._insert_session(conn, session)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session id already exists", {"session_id": session.id})
        return session

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE id = %s", (session_id,)
            ).fetchone()
        return session_from_row(row) if row else None

    def rotate_refresh_session(
        self, old_session_id: str, new_session: RefreshSession, now: datetime
    ) -> bool:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE refresh_session
                        SET state = 'ROTATED', revoked_at = %s, replaced_by = %s
                        WHERE id = %s AND state = 'ISSUED' AND expires_at > %s
                        RETURNING id
                        """,
                        (now, new_session.id, old_session_id, now),
                    ).fetchone()
                    if not row:
                        return False
                    self._insert_session(conn, new_session)
        except errors.UniqueViolation:
            raise ConstraintViolation("session id already exists", {"session_id": new_session.id})
        return True

    def revoke_refresh_session(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_session SET state = 'REVOKED', revoked_at = %s
                WHERE id = %s AND state = 'ISSUED'
                RETURNING id
                """,
                (now, session_id),
            ).fetchone()
        return row is not None

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_session SET state = 'REVOKED', revoked_at = %s
                WHERE user_id = %s AND state = 'ISSUED'
                """,
                (now, user_id),
            )
            return result.rowcount

    # single-use tokens
    def create_single_use_token(self, token: SingleUseToken) -> SingleUseToken:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        UPDATE single_use_token SET consumed_at = %s
                        WHERE user_id = %s AND purpose = %s AND consumed_at IS NULL
                        """,
                        (token.created_at, token.user_id, token.purpose.value),
                    )
                    conn.execute(
                        """
                        INSERT INTO single_use_token (token_hash, user_id, purpose, created_at, expires_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (
                            token.token_hash,
                            token.user_id,
                            token.purpose.value,
                            token.created_at,
                            token.expires_at,
                        ),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        return token

    def get_single_use_token(self, token_hash: str) -> Optional[SingleUseToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM single_use_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return single_use_from_row(row) if row else None

    def consume_single_use_token(
        self, token_hash: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[SingleUseToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE single_use_token SET consumed_at = %s
                WHERE token_hash = %s
                  AND purpose = %s
                  AND consumed_at IS NULL
                  AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, TokenPurpose(purpose).value, now),
            ).fetchone()
        return single_use_from_row(row) if row else None

    # webhook ledger
    def record_webhook_event(self, event: WebhookEvent) -> tuple[WebhookEvent, bool]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO webhook_event
                        (id, provider, external_id, event_type, payload_hash, payload, received_at, status)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (provider, external_id) DO NOTHING
                    RETURNING *
                    """,
                    (
                        event.id,
                        event.provider,
                        event.external_id,
                        event.event_type,
                        event.payload_hash,
                        json.dumps(event.payload),
                        event.received_at,
                        EventStatus.RECEIVED.value,
                    ),
                ).fetchone()
                if row:
                    return webhook_event_from_row(row), True
                existing = conn.execute(
                    "SELECT * FROM webhook_event WHERE provider = %s AND external_id = %s",
                    (event.provider, event.external_id),
                ).fetchone()
        except psycopg.DataError as exc:
            # e.g. jsonb rejects \u0000 with UntranslatableCharacter
            self.logger.warning(
                "webhook_event_unstorable",
                provider=event.provider,
                error_type=type(exc).__name__,
            )
            raise UnstorableValue(str(exc)) from exc
        return webhook_event_from_row(existing), False

    def get_webhook_event(self, provider: str, external_id: str) -> Optional[WebhookEvent]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM webhook_event WHERE provider = %s AND external_id = %s",
                (provider, external_id),
            ).fetchone()
        return webhook_event_from_row(row) if row else None

    def claim_webhook_event(
        self, event_id: str, expected_status: EventStatus
    ) -> Optional[WebhookEvent]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE webhook_event
                SET status = 'processing', attempts = attempts + 1, error = NULL
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (event_id, EventStatus(expected_status).value),
            ).fetchone()
        return webhook_event_from_row(row) if row else None

    def mark_webhook_processed(self, event_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE webhook_event SET status = 'processed', processed_at = %s, error = NULL
                WHERE id = %s
                """,
                (utcnow(), event_id),
            )

    def mark_webhook_failed(self, event_id: str, error: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE webhook_event SET status = 'failed', error = %s WHERE id = %s",
                (error[:2000], event_id),
            )

    def release_webhook_event(self, event_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE webhook_event SET status = 'received'
                WHERE id = %s AND status = 'processing'
                RETURNING id
                """,
                (event_id,),
            ).fetchone()
        return row is not None

    def list_webhook_events(
        self,
        status: Optional[EventStatus] = None,
        *,
        provider: Optional[str] = None,
        limit: int = 100,
    ) -> List[WebhookEvent]:
        clauses = []
        params: list = []
        if status is not None:
            clauses.append("status = %s")
            params.append(EventStatus(status).value)
        if provider is not None:
            clauses.append("provider = %s")
            params.append(provider)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM webhook_event {where} ORDER BY received_at ASC LIMIT %s",
                params,
            ).fetchall()
        return [webhook_event_from_row(row) for row in rows]
