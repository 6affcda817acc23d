from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from psycopg import OperationalError, errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from timekeeper.logging import get_logger
from timekeeper.storage.errors import ConstraintViolation, StoreUnavailable
from timekeeper.storage.models import (
    ActiveSession,
    LockoutState,
    PasswordResetToken,
    RateLimitWindow,
    RefreshToken,
    User,
    UserMFAConfig,
    new_id,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT,
        role TEXT NOT NULL DEFAULT 'employee',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email)) WHERE email IS NOT NULL",
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_history (
        id BIGSERIAL PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_history_user_idx ON password_history (user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS user_mfa_secret (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        enabled_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS active_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token_id UUID NOT NULL UNIQUE REFERENCES refresh_token(id) ON DELETE CASCADE,
        access_jti TEXT NOT NULL UNIQUE,
        device_label TEXT,
        ip_addr TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_seen_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS active_session_user_idx ON active_session (user_id, last_seen_at DESC)",
    "CREATE INDEX IF NOT EXISTS active_session_expires_idx ON active_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS account_lockout (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        lockout_level INTEGER NOT NULL DEFAULT 0,
        last_failure_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_reset_expires_idx ON password_reset_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS rate_limit_counter (
        key TEXT NOT NULL,
        window_start TIMESTAMPTZ NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        expires_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (key, window_start)
    )
    """,
)

# Tables the maintenance command may VACUUM
VACUUM_TABLES = frozenset(
    {"refresh_token", "active_session", "password_reset_token", "rate_limit_counter"}
)


class PostgresStore:
    """psycopg-backed store; every token state change is a conditional UPDATE."""

    def __init__(
        self,
        dsn: str,
        *,
        read_dsn: Optional[str] = None,
        min_size: int = 2,
        max_size: int = 10,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.read_pool: Optional[ConnectionPool] = None
        if read_dsn:
            self.read_pool = ConnectionPool(
                read_dsn,
                min_size=1,
                max_size=max_size,
                kwargs={"row_factory": dict_row, "autocommit": True},
            )
        if ensure_schema:
            self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self, *, read_only: bool = False):
        pool = self.read_pool if read_only and self.read_pool is not None else self.pool
        try:
            with pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error_type=type(exc).__name__)
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()
        if self.read_pool is not None:
            self.read_pool.close()

    # -- row mapping -----------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row.get("email"),
            role=row.get("role", "employee"),
            created_at=row["created_at"],
            is_active=row.get("is_active", True),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            used_at=row.get("used_at"),
        )

    @staticmethod
    def _session_from_row(row: dict) -> ActiveSession:
        return ActiveSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_id=str(row["refresh_token_id"]),
            access_jti=row["access_jti"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            last_seen_at=row.get("last_seen_at"),
            device_label=row.get("device_label"),
            ip_addr=row.get("ip_addr"),
        )

    @staticmethod
    def _lockout_from_row(user_id: str, row: Optional[dict]) -> LockoutState:
        if not row:
            return LockoutState(user_id=user_id)
        return LockoutState(
            user_id=user_id,
            failed_attempts=row["failed_attempts"],
            locked_until=row.get("locked_until"),
            lockout_level=row["lockout_level"],
            last_failure_at=row.get("last_failure_at"),
        )

    @staticmethod
    def _reset_from_row(row: dict) -> PasswordResetToken:
        return PasswordResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            used_at=row.get("used_at"),
        )

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        role: str = "employee",
        is_active: bool = True,
    ) -> User:
        user_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, role, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, email, role, is_active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "email" if "email" in str(exc.diag.constraint_name or "") else "username"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = lower(%s)", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *", (role, user_id)
            ).fetchone()
        return self._user_from_row(row) if row else None

    # -- credentials -----------------------------------------------------

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        history_limit: int = 0,
    ) -> None:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    previous = conn.execute(
                        "SELECT password_hash FROM user_credential WHERE user_id = %s FOR UPDATE",
                        (user_id,),
                    ).fetchone()
                    conn.execute(
                        """
                        INSERT INTO user_credential (user_id, password_hash, password_algo, last_updated_at)
                        VALUES (%s, %s, %s, now())
                        ON CONFLICT (user_id) DO UPDATE
                        SET password_hash = EXCLUDED.password_hash,
                            password_algo = EXCLUDED.password_algo,
                            last_updated_at = now()
                        """,
                        (user_id, password_hash, password_algo),
                    )
                    if previous and history_limit > 0:
                        conn.execute(
                            "INSERT INTO password_history (user_id, password_hash) VALUES (%s, %s)",
                            (user_id, previous["password_hash"]),
                        )
                        conn.execute(
                            """
                            DELETE FROM password_history
                            WHERE user_id = %s AND id NOT IN (
                                SELECT id FROM password_history WHERE user_id = %s
                                ORDER BY created_at DESC, id DESC LIMIT %s
                            )
                            """,
                            (user_id, user_id, history_limit),
                        )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def get_password_history(self, user_id: str, limit: int) -> List[str]:
        if limit <= 0:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT password_hash FROM password_history WHERE user_id = %s
                ORDER BY created_at DESC, id DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [r["password_hash"] for r in rows]

    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_mfa_secret (user_id, secret, enabled, created_at, enabled_at)
                    VALUES (%s, %s, %s, now(), CASE WHEN %s THEN now() END)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret,
                        enabled = EXCLUDED.enabled,
                        created_at = EXCLUDED.created_at,
                        enabled_at = EXCLUDED.enabled_at
                    RETURNING *
                    """,
                    (user_id, secret, enabled, enabled),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return self._mfa_from_row(row)

    @staticmethod
    def _mfa_from_row(row: dict) -> UserMFAConfig:
        return UserMFAConfig(
            user_id=str(row["user_id"]),
            secret=row["secret"],
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            enabled_at=row.get("enabled_at"),
        )

    def enable_user_mfa(self, user_id: str, now: datetime) -> Optional[UserMFAConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE user_mfa_secret SET enabled = TRUE, enabled_at = %s WHERE user_id = %s RETURNING *",
                (now, user_id),
            ).fetchone()
        return self._mfa_from_row(row) if row else None

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_mfa_secret WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._mfa_from_row(row) if row else None

    def clear_user_mfa_secret(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM user_mfa_secret WHERE user_id = %s", (user_id,))
        return cur.rowcount > 0

    # -- refresh tokens and sessions -------------------------------------

    def _insert_pair(self, conn, refresh_token: RefreshToken, session: ActiveSession) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token_hash, expires_at, created_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (
                refresh_token.id,
                refresh_token.user_id,
                refresh_token.token_hash,
                refresh_token.expires_at,
                refresh_token.created_at,
            ),
        )
        conn.execute(
            """
            INSERT INTO active_session (id, user_id, refresh_token_id, access_jti, device_label,
                                        ip_addr, created_at, last_seen_at, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.refresh_token_id,
                session.access_jti,
                session.device_label,
                session.ip_addr,
                session.created_at,
                session.last_seen_at,
                session.expires_at,
            ),
        )

    @staticmethod
    def _drop_sessions(conn, rows: Iterable[dict], now: datetime) -> List[ActiveSession]:
        dropped: List[ActiveSession] = []
        for row in rows:
            conn.execute("DELETE FROM active_session WHERE id = %s", (row["id"],))
            conn.execute(
                "UPDATE refresh_token SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (now, row["refresh_token_id"]),
            )
            dropped.append(PostgresStore._session_from_row(row))
        return dropped

    def create_session_bundle(
        self,
        refresh_token: RefreshToken,
        session: ActiveSession,
        *,
        max_sessions: int,
        now: datetime,
    ) -> List[ActiveSession]:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    # Serialize concurrent logins for the same user so the cap holds
                    owner = conn.execute(
                        "SELECT id FROM app_user WHERE id = %s FOR UPDATE",
                        (refresh_token.user_id,),
                    ).fetchone()
                    if not owner:
                        raise ConstraintViolation(
                            "user does not exist", {"user_id": refresh_token.user_id}
                        )
                    rows = conn.execute(
                        """
                        SELECT * FROM active_session WHERE user_id = %s
                        ORDER BY last_seen_at ASC NULLS FIRST, created_at ASC, id ASC
                        """,
                        (session.user_id,),
                    ).fetchall()
                    overflow = max(0, len(rows) - max_sessions + 1)
                    evicted = self._drop_sessions(conn, rows[:overflow], now)
                    self._insert_pair(conn, refresh_token, session)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session already exists for refresh token",
                {"refresh_token_id": refresh_token.id},
            )
        return evicted

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        old_token_id: str,
        *,
        now: datetime,
        new_refresh_token: RefreshToken,
        new_session: ActiveSession,
    ) -> Tuple[bool, Optional[ActiveSession]]:
        with self._connect() as conn:
            with conn.transaction():
                won = conn.execute(
                    """
                    UPDATE refresh_token SET used_at = %s
                    WHERE id = %s AND used_at IS NULL AND expires_at > %s
                    RETURNING id
                    """,
                    (now, old_token_id, now),
                ).fetchone()
                if not won:
                    return False, None
                replaced_row = conn.execute(
                    "DELETE FROM active_session WHERE refresh_token_id = %s RETURNING *",
                    (old_token_id,),
                ).fetchone()
                self._insert_pair(conn, new_refresh_token, new_session)
        replaced = self._session_from_row(replaced_row) if replaced_row else None
        return True, replaced

    def get_session(self, session_id: str) -> Optional[ActiveSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM active_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_access_jti(self, jti: str) -> Optional[ActiveSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM active_session WHERE access_jti = %s", (jti,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions_for_user(self, user_id: str) -> List[ActiveSession]:
        with self._connect(read_only=True) as conn:
            rows = conn.execute(
                """
                SELECT * FROM active_session WHERE user_id = %s
                ORDER BY last_seen_at DESC NULLS LAST, created_at DESC, id DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE active_session SET last_seen_at = %s WHERE id = %s",
                (now, session_id),
            )

    def revoke_session(self, session_id: str, now: datetime) -> Optional[ActiveSession]:
        with self._connect() as conn:
            with conn.transaction():
                rows = conn.execute(
                    "SELECT * FROM active_session WHERE id = %s FOR UPDATE", (session_id,)
                ).fetchall()
                dropped = self._drop_sessions(conn, rows, now)
        return dropped[0] if dropped else None

    def revoke_session_by_refresh_token_id(
        self, refresh_token_id: str, now: datetime
    ) -> Optional[ActiveSession]:
        with self._connect() as conn:
            with conn.transaction():
                rows = conn.execute(
                    "SELECT * FROM active_session WHERE refresh_token_id = %s FOR UPDATE",
                    (refresh_token_id,),
                ).fetchall()
                dropped = self._drop_sessions(conn, rows, now)
                conn.execute(
                    "UPDATE refresh_token SET used_at = %s WHERE id = %s AND used_at IS NULL",
                    (now, refresh_token_id),
                )
        return dropped[0] if dropped else None

    def revoke_user_sessions(self, user_id: str, now: datetime) -> List[ActiveSession]:
        with self._connect() as conn:
            with conn.transaction():
                rows = conn.execute(
                    "DELETE FROM active_session WHERE user_id = %s RETURNING *", (user_id,)
                ).fetchall()
                conn.execute(
                    "UPDATE refresh_token SET used_at = %s WHERE user_id = %s AND used_at IS NULL",
                    (now, user_id),
                )
        return [self._session_from_row(r) for r in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM active_session WHERE expires_at <= %s", (now,))
        return cur.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_token r WHERE r.expires_at <= %s
                AND NOT EXISTS (SELECT 1 FROM active_session s WHERE s.refresh_token_id = r.id)
                """,
                (now,),
            )
        return cur.rowcount

    # -- lockout ---------------------------------------------------------

    def get_lockout_state(self, user_id: str) -> LockoutState:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_lockout WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._lockout_from_row(user_id, row)

    def update_lockout_state(
        self, user_id: str, mutate: Callable[[LockoutState], LockoutState]
    ) -> Tuple[LockoutState, LockoutState]:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "INSERT INTO account_lockout (user_id) VALUES (%s) ON CONFLICT (user_id) DO NOTHING",
                    (user_id,),
                )
                row = conn.execute(
                    "SELECT * FROM account_lockout WHERE user_id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                before = self._lockout_from_row(user_id, row)
                after = mutate(self._lockout_from_row(user_id, row))
                conn.execute(
                    """
                    UPDATE account_lockout
                    SET failed_attempts = %s, locked_until = %s, lockout_level = %s,
                        last_failure_at = %s
                    WHERE user_id = %s
                    """,
                    (
                        after.failed_attempts,
                        after.locked_until,
                        after.lockout_level,
                        after.last_failure_at,
                        user_id,
                    ),
                )
        return before, after

    # -- password reset --------------------------------------------------

    def create_password_reset(self, token: PasswordResetToken) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (id, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (token.id, token.user_id, token.token_hash, token.expires_at, token.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("reset token hash already exists")
        return token

    def get_password_reset_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def consume_password_reset(self, token_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used_at = %s
                WHERE id = %s AND used_at IS NULL AND expires_at > %s
                RETURNING id
                """,
                (now, token_id, now),
            ).fetchone()
        return row is not None

    def delete_expired_password_resets(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM password_reset_token WHERE expires_at <= %s", (now,)
            )
        return cur.rowcount

    # -- rate limit counters ---------------------------------------------

    def hit_rate_limits(
        self, windows: Sequence[RateLimitWindow]
    ) -> Optional[RateLimitWindow]:
        # Lock rows in key order so concurrent requests cannot deadlock
        ordered = sorted(windows, key=lambda w: (w.key, w.window_start))
        with self._connect() as conn:
            with conn.transaction():
                for window in ordered:
                    conn.execute(
                        """
                        INSERT INTO rate_limit_counter (key, window_start, count, expires_at)
                        VALUES (%s, %s, 0, %s)
                        ON CONFLICT (key, window_start) DO NOTHING
                        """,
                        (window.key, window.window_start, window.expires_at),
                    )
                counts = {}
                for window in ordered:
                    row = conn.execute(
                        """
                        SELECT count FROM rate_limit_counter
                        WHERE key = %s AND window_start = %s FOR UPDATE
                        """,
                        (window.key, window.window_start),
                    ).fetchone()
                    counts[(window.key, window.window_start)] = row["count"] if row else 0
                for window in windows:
                    if counts[(window.key, window.window_start)] >= window.limit:
                        return window
                for window in ordered:
                    conn.execute(
                        """
                        UPDATE rate_limit_counter SET count = count + 1
                        WHERE key = %s AND window_start = %s
                        """,
                        (window.key, window.window_start),
                    )
        return None

    def delete_expired_rate_limits(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM rate_limit_counter WHERE expires_at <= %s", (now,))
        return cur.rowcount

    def vacuum(self, tables: Iterable[str]) -> List[str]:
        """Run VACUUM (ANALYZE) on known tables; VACUUM cannot run inside a transaction."""
        selected = [t for t in tables if t in VACUUM_TABLES]
        if not selected:
            return []
        with self._connect() as conn:
            conn.autocommit = True
            try:
                for table in selected:
                    conn.execute(
                        sql.SQL("VACUUM (ANALYZE) {}").format(sql.Identifier(table))
                    )
            finally:
                conn.autocommit = False
        return selected