from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, StorageUnavailable
from warden.storage.models import (
    RefreshTokenRecord,
    SingleUseToken,
    TokenKind,
    User,
    utcnow,
)

_TOKEN_TABLES = {
    TokenKind.EMAIL_VERIFICATION: "email_verification_token",
    TokenKind.PASSWORD_RESET: "password_reset_token",
}

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        hashed_token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_lookup_idx ON refresh_token (user_id, hashed_token)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expiry_idx ON refresh_token (expires_at)",
]

for _table in _TOKEN_TABLES.values():
    _SCHEMA.extend(
        [
            f"""
            CREATE TABLE IF NOT EXISTS {_table} (
                id UUID PRIMARY KEY,
                token TEXT NOT NULL UNIQUE,
                user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
                expires_at TIMESTAMPTZ NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                used_at TIMESTAMPTZ
            )
            """,
            f"CREATE INDEX IF NOT EXISTS {_table}_user_idx ON {_table} (user_id)",
            f"CREATE INDEX IF NOT EXISTS {_table}_expiry_idx ON {_table} (expires_at)",
        ]
    )


class PostgresStore:
    """Postgres-backed credential store; each public method is one transaction."""

    def __init__(self, dsn: str, *, pool: Any = None, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database unavailable", {"error": str(exc)}) from exc

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            email_verified=bool(row.get("email_verified", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _token_from_row(kind: TokenKind, row: Dict[str, Any]) -> SingleUseToken:
        return SingleUseToken(
            id=str(row["id"]),
            kind=kind,
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            used_at=row.get("used_at"),
        )

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        password_algo: str,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, email_verified)
                    VALUES (%s, %s, %s, false)
                    RETURNING *
                    """,
                    (user_id, email, username),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_users_by_email_or_username(self, email: str, username: str) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM app_user
                WHERE lower(email) = lower(%s) OR lower(username) = lower(%s)
                """,
                (email, username),
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    @staticmethod
    def _write_password(conn: Any, user_id: str, password_hash: str, password_algo: str) -> None:
        conn.execute(
            """
            INSERT INTO user_auth_credential (user_id, password_hash, password_algo, updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (user_id) DO UPDATE
            SET password_hash = EXCLUDED.password_hash,
                password_algo = EXCLUDED.password_algo,
                updated_at = now()
            """,
            (user_id, password_hash, password_algo),
        )
        conn.execute("UPDATE app_user SET updated_at = now() WHERE id = %s", (user_id,))

    def replace_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> int:
        """Revoke every refresh token for the user, then store the new hash."""

        with self._connect() as conn:
            locked = conn.execute(
                "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not locked:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            revoked = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
            ).rowcount
            self._write_password(conn, user_id, password_hash, password_algo)
        return revoked

    # refresh tokens
    def add_refresh_token(
        self, user_id: str, hashed_token: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        record_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, hashed_token, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING created_at
                    """,
                    (record_id, user_id, hashed_token, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for refresh token", {"user_id": user_id}
            )
        return RefreshTokenRecord(
            id=record_id,
            user_id=user_id,
            hashed_token=hashed_token,
            expires_at=expires_at,
            created_at=row["created_at"] if row else utcnow(),
        )

    def consume_refresh_token(
        self, user_id: str, hashed_token: str, now: Optional[datetime] = None
    ) -> bool:
        now = now or utcnow()
        # Concurrent deletes of the same row serialize on its row lock; the loser
        # re-evaluates the predicate, finds nothing and returns no row.
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE user_id = %s AND hashed_token = %s
                RETURNING expires_at
                """,
                (user_id, hashed_token),
            ).fetchone()
        if not row:
            return False
        return row["expires_at"] > now

    def delete_refresh_token(self, user_id: str, hashed_token: str) -> bool:
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s AND hashed_token = %s",
                (user_id, hashed_token),
            ).rowcount
        return bool(deleted)

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
            ).rowcount

    def count_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM refresh_token WHERE user_id = %s", (user_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            return conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now,)
            ).rowcount

    def count_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM refresh_token WHERE expires_at <= %s", (now,)
            ).fetchone()
        return int(row["n"]) if row else 0

    # single-use tokens
    def issue_single_use_token(
        self,
        kind: TokenKind,
        user_id: str,
        token: str,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> SingleUseToken:
        kind = TokenKind(kind)
        table = _TOKEN_TABLES[kind]
        now = now or utcnow()
        try:
            with self._connect() as conn:
                # Locking the owner row serializes concurrent issuance for one user.
                locked = conn.execute(
                    "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                if not locked:
                    raise ConstraintViolation(
                        "user not found for token", {"user_id": user_id}
                    )
                conn.execute(
                    f"""
                    UPDATE {table} SET used_at = %s
                    WHERE user_id = %s AND used_at IS NULL AND expires_at > %s
                    """,
                    (now, user_id, now),
                )
                row = conn.execute(
                    f"""
                    INSERT INTO {table} (id, token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), token, user_id, expires_at, now),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"kind": kind.value})
        return self._token_from_row(kind, row)

    def get_single_use_token(self, kind: TokenKind, token: str) -> Optional[SingleUseToken]:
        kind = TokenKind(kind)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {_TOKEN_TABLES[kind]} WHERE token = %s", (token,)
            ).fetchone()
        return self._token_from_row(kind, row) if row else None

    def list_active_tokens(
        self, kind: TokenKind, user_id: str, now: Optional[datetime] = None
    ) -> List[SingleUseToken]:
        kind = TokenKind(kind)
        now = now or utcnow()
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM {_TOKEN_TABLES[kind]}
                WHERE user_id = %s AND used_at IS NULL AND expires_at > %s
                ORDER BY created_at
                """,
                (user_id, now),
            ).fetchall()
        return [self._token_from_row(kind, row) for row in rows]

    def delete_expired_tokens(
        self, kind: TokenKind, now: Optional[datetime] = None
    ) -> int:
        kind = TokenKind(kind)
        now = now or utcnow()
        with self._connect() as conn:
            return conn.execute(
                f"DELETE FROM {_TOKEN_TABLES[kind]} WHERE expires_at <= %s", (now,)
            ).rowcount

    def count_expired_tokens(
        self, kind: TokenKind, now: Optional[datetime] = None
    ) -> int:
        kind = TokenKind(kind)
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS n FROM {_TOKEN_TABLES[kind]} WHERE expires_at <= %s",
                (now,),
            ).fetchone()
        return int(row["n"]) if row else 0

    # composite transitions
    @staticmethod
    def _claim_token(conn: Any, table: str, token_id: str, user_id: str, used_at: datetime) -> bool:
        row = conn.execute(
            f"""
            UPDATE {table} SET used_at = %s
            WHERE id = %s AND user_id = %s AND used_at IS NULL AND expires_at > %s
            RETURNING id
            """,
            (used_at, token_id, user_id, used_at),
        ).fetchone()
        return row is not None

    def complete_email_verification(
        self, token_id: str, user_id: str, used_at: Optional[datetime] = None
    ) -> bool:
        used_at = used_at or utcnow()
        table = _TOKEN_TABLES[TokenKind.EMAIL_VERIFICATION]
        with self._connect() as conn:
            if not self._claim_token(conn, table, token_id, user_id, used_at):
                return False
            conn.execute(
                "UPDATE app_user SET email_verified = true, updated_at = %s WHERE id = %s",
                (used_at, user_id),
            )
        return True

    def complete_password_reset(
        self,
        token_id: str,
        user_id: str,
        password_hash: str,
        password_algo: str,
        used_at: Optional[datetime] = None,
    ) -> bool:
        used_at = used_at or utcnow()
        table = _TOKEN_TABLES[TokenKind.PASSWORD_RESET]
        with self._connect() as conn:
            if not self._claim_token(conn, table, token_id, user_id, used_at):
                return False
            conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            self._write_password(conn, user_id, password_hash, password_algo)
        return True
