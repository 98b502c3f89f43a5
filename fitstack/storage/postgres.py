from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from fitstack.logging import get_logger
from fitstack.storage.errors import ConstraintViolation
from fitstack.storage.models import (
    DOMAIN_TABLES,
    RefreshRotation,
    RefreshToken,
    User,
    utcnow,
)

# Child rows hang off their parent's id rather than a user_id column.
_DOMAIN_DELETE_SQL: Dict[str, str] = {
    "workout_set": (
        "DELETE FROM workout_set WHERE session_id IN "
        "(SELECT id FROM workout_session WHERE user_id = %s)"
    ),
    "workout_template_exercise": (
        "DELETE FROM workout_template_exercise WHERE template_id IN "
        "(SELECT id FROM workout_template WHERE user_id = %s)"
    ),
    "workout_plan_day": (
        "DELETE FROM workout_plan_day WHERE workout_plan_id IN "
        "(SELECT id FROM workout_plan WHERE user_id = %s)"
    ),
    "meal_food": (
        "DELETE FROM meal_food WHERE meal_id IN "
        "(SELECT id FROM meal WHERE user_id = %s)"
    ),
}


class PostgresStore:
    """Postgres-backed user directory and refresh-token table."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_auth_tables()
        self._domain_tables = self._detect_domain_tables()

    def _connect(self):
        return self.pool.connection()

    def _ensure_auth_tables(self) -> None:
        """Create ``app_user`` and ``refresh_token`` if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id BIGSERIAL PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT,
                    provider_subject_id TEXT UNIQUE,
                    first_name TEXT,
                    last_name TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS refresh_token (
                    token TEXT PRIMARY KEY,
                    user_id BIGINT NOT NULL REFERENCES app_user(id),
                    expiry_date TIMESTAMPTZ NOT NULL,
                    revoked BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)"
            )
            conn.commit()

    def _detect_domain_tables(self) -> List[str]:
        """Domain tables are owned by other services; only touch those that exist."""

        present: List[str] = []
        with self._connect() as conn:
            for table in DOMAIN_TABLES:
                row = conn.execute("SELECT to_regclass(%s) AS oid", (table,)).fetchone()
                if row and row.get("oid"):
                    present.append(table)
        missing = [t for t in DOMAIN_TABLES if t not in present]
        if missing:
            self.logger.info("domain_tables_missing", tables=missing)
        return present

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    # Users -----------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            password_hash=row.get("password_hash"),
            provider_subject_id=row.get("provider_subject_id"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            created_at=row.get("created_at") or utcnow(),
        )

    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        provider_subject_id: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, password_hash, provider_subject_id, first_name, last_name)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id, email, password_hash, provider_subject_id, first_name, last_name, created_at
                    """,
                    (
                        email.strip().lower(),
                        password_hash,
                        provider_subject_id,
                        first_name,
                        last_name,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM app_user WHERE email = %s",
                (email.strip().lower(),),
            ).fetchone()
        return row is not None

    def get_user_by_provider_subject(self, subject_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE provider_subject_id = %s", (subject_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def link_provider_subject(
        self,
        user_id: int,
        subject_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET provider_subject_id = %s,
                        first_name = COALESCE(NULLIF(first_name, ''), %s),
                        last_name = COALESCE(NULLIF(last_name, ''), %s)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (subject_id, first_name, last_name, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "provider subject already linked", {"field": "provider_subject_id"}
            )
        return self._row_to_user(row) if row else None

    @staticmethod
    def _delete_user(conn, user_id: int) -> bool:
        try:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("rows still reference user", {"user_id": user_id})
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            return self._delete_user(conn, user_id)

    @contextmanager
    def account_deletion(self, user_id: int) -> Iterator["_AccountDeletion"]:
        """Run an account deletion in one transaction holding the user row.

        Token issuers lock the same row first, so none can interleave.
        """
        with self._connect() as conn, conn.transaction():
            conn.execute("SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,))
            yield _AccountDeletion(self, conn)

    # Refresh tokens ----------------------------------------------------------

    @staticmethod
    def _row_to_refresh(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            user_id=row["user_id"],
            expiry_date=row["expiry_date"],
            revoked=bool(row["revoked"]),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _insert_refresh(conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (token, user_id, expiry_date, revoked, created_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (token.token, token.user_id, token.expiry_date, token.revoked, token.created_at),
        )

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        """Revoke every live token of the user, then store ``token``."""
        with self._connect() as conn, conn.transaction():
            # Serialize issuers for the same user on the parent row
            owner = conn.execute(
                "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (token.user_id,)
            ).fetchone()
            if owner is None:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE",
                (token.user_id,),
            )
            self._insert_refresh(conn, token)
        return token

    def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s AND revoked = FALSE",
                (token_value,),
            ).fetchone()
        return self._row_to_refresh(row) if row else None

    def delete_refresh_token(self, token_value: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token_value,))
            return result.rowcount > 0

    def rotate_refresh_token(
        self, token_value: str, ttl_minutes: int, *, now: Optional[datetime] = None
    ) -> RefreshRotation:
        current = now or utcnow()
        with self._connect() as conn, conn.transaction():
            owner = conn.execute(
                "SELECT user_id FROM refresh_token WHERE token = %s AND revoked = FALSE",
                (token_value,),
            ).fetchone()
            if not owner:
                return RefreshRotation("not_found")
            # Same lock order as save_refresh_token: user row, then token rows
            conn.execute("SELECT id FROM app_user WHERE id = %s FOR UPDATE", (owner["user_id"],))
            # A concurrent replay blocks above and then sees revoked = TRUE
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s FOR UPDATE",
                (token_value,),
            ).fetchone()
            if not row or row["revoked"]:
                return RefreshRotation("not_found")
            previous = self._row_to_refresh(row)
            if previous.is_expired(current):
                conn.execute("DELETE FROM refresh_token WHERE token = %s", (token_value,))
                return RefreshRotation("expired", previous=previous)
            conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE",
                (previous.user_id,),
            )
            issued = RefreshToken.new(previous.user_id, ttl_minutes, now=current)
            self._insert_refresh(conn, issued)
        return RefreshRotation("rotated", previous=previous, issued=issued)

    def revoke_refresh_tokens(self, user_id: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE",
                (user_id,),
            )
            return result.rowcount

    @staticmethod
    def _delete_refresh_tokens(conn, user_id: int) -> int:
        return conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,)).rowcount

    def delete_refresh_tokens(self, user_id: int) -> int:
        with self._connect() as conn:
            return self._delete_refresh_tokens(conn, user_id)

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh(row) for row in rows]

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expiry_date < %s", (now or utcnow(),)
            )
            purged = result.rowcount
        if purged:
            self.logger.info("refresh_tokens_purged", count=purged)
        return purged

    # Domain data -------------------------------------------------------------

    def _delete_domain_rows(self, conn, table: str, user_id: int) -> int:
        if table not in DOMAIN_TABLES:
            raise ValueError(f"unknown domain table {table}")
        if table not in self._domain_tables:
            return 0
        statement = _DOMAIN_DELETE_SQL.get(table, f"DELETE FROM {table} WHERE user_id = %s")
        return conn.execute(statement, (user_id,)).rowcount

    def delete_domain_rows(self, table: str, user_id: int) -> int:
        with self._connect() as conn:
            return self._delete_domain_rows(conn, table, user_id)


class _AccountDeletion:
    """Deletion steps bound to the transaction opened by ``account_deletion``."""

    def __init__(self, store: PostgresStore, conn) -> None:
        self._store = store
        self._conn = conn

    def delete_domain_rows(self, table: str, user_id: int) -> int:
        return self._store._delete_domain_rows(self._conn, table, user_id)

    def delete_refresh_tokens(self, user_id: int) -> int:
        return self._store._delete_refresh_tokens(self._conn, user_id)

    def delete_user(self, user_id: int) -> bool:
        return self._store._delete_user(self._conn, user_id)
