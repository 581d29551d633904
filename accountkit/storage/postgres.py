from __future__ import annotations

from datetime import date, datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from accountkit.logging import get_logger
from accountkit.storage.errors import ConstraintViolation
from accountkit.storage.models import Account, Session, utcnow


# Unique constraint name -> field reported in ConstraintViolation.detail
_CONSTRAINT_FIELDS = {
    "account_username_key": "username",
    "account_email_key": "email",
    "auth_session_refresh_token_key": "refresh_token",
}


def _violation_from(exc: errors.UniqueViolation, default_field: str) -> ConstraintViolation:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None) if diag is not None else None
    field = _CONSTRAINT_FIELDS.get(constraint or "", default_field)
    return ConstraintViolation(f"{field} already exists", {"field": field})


class PostgresStore:
    """Postgres-backed account and session store.

    Uniqueness of username, email and refresh token is enforced by the
    schema, so concurrent inserts from several workers can never produce two
    accounts with the same identity.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the ``account`` and ``auth_session`` tables if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account (
                    id UUID PRIMARY KEY,
                    name TEXT NOT NULL,
                    username TEXT NOT NULL,
                    email TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    date_of_birth DATE,
                    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ,
                    CONSTRAINT account_username_key UNIQUE (username),
                    CONSTRAINT account_email_key UNIQUE (email)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_session (
                    id UUID PRIMARY KEY,
                    username TEXT NOT NULL
                        REFERENCES account(username) ON UPDATE CASCADE ON DELETE CASCADE,
                    refresh_token TEXT NOT NULL,
                    jti TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    expires_at TIMESTAMPTZ NOT NULL,
                    CONSTRAINT auth_session_refresh_token_key UNIQUE (refresh_token)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS auth_session_username_idx ON auth_session (username)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS auth_session_jti_idx ON auth_session (jti)"
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    @staticmethod
    def _parse_ts(value: Optional[Any]) -> Optional[datetime]:
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                return None
        return None

    @staticmethod
    def _parse_date(value: Optional[Any]) -> Optional[date]:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str) and value:
            return date.fromisoformat(value)
        return None

    def _account_from_row(self, row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            name=row["name"],
            username=row["username"],
            email=row["email"],
            password_hash=row.get("password_hash") or "",
            date_of_birth=self._parse_date(row.get("date_of_birth")),
            email_verified=bool(row.get("email_verified", False)),
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
            updated_at=self._parse_ts(row.get("updated_at")),
        )

    def _session_from_row(self, row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            username=row["username"],
            refresh_token=row["refresh_token"],
            jti=row["jti"],
            created_at=self._parse_ts(row.get("created_at")) or utcnow(),
            expires_at=self._parse_ts(row.get("expires_at")) or utcnow(),
        )

    # accounts
    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, name, username, email, password_hash, date_of_birth, email_verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.name,
                        account.username,
                        account.email,
                        account.password_hash,
                        account.date_of_birth,
                        account.email_verified,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _violation_from(exc, "username") from exc
        return account

    def _fetch_account(self, where: str, value: Any) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM account WHERE {where} = %s", (value,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id", account_id)

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_account("username", username)

    def find_account(
        self, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE username = %s OR email = %s LIMIT 1",
                (username, email),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def replace_account(self, account: Account) -> Account:
        updated_at = utcnow()
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE account
                       SET name = %s, username = %s, email = %s, password_hash = %s,
                           date_of_birth = %s, email_verified = %s, updated_at = %s
                     WHERE id = %s
                    """,
                    (
                        account.name,
                        account.username,
                        account.email,
                        account.password_hash,
                        account.date_of_birth,
                        account.email_verified,
                        updated_at,
                        account.id,
                    ),
                )
                if result.rowcount == 0:
                    raise ConstraintViolation("account does not exist", {"id": account.id})
        except errors.UniqueViolation as exc:
            raise _violation_from(exc, "username") from exc
        account.updated_at = updated_at
        return account

    def delete_account(self, username: str) -> bool:
        # auth_session rows go with it via ON DELETE CASCADE
        with self._connect() as conn:
            result = conn.execute("DELETE FROM account WHERE username = %s", (username,))
            deleted = result.rowcount > 0
        if deleted:
            self.logger.info("account_deleted")
        return deleted

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, username, refresh_token, jti, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.username,
                        session.refresh_token,
                        session.jti,
                        session.created_at,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _violation_from(exc, "refresh_token") from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session user missing", {"field": "username"}
            ) from exc
        return session

    def _fetch_session(self, where: str, value: Any) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM auth_session WHERE {where} = %s", (value,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        return self._fetch_session("refresh_token", refresh_token)

    def get_session_by_jti(self, jti: str) -> Optional[Session]:
        return self._fetch_session("jti", jti)

    def list_user_sessions(self, username: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE username = %s ORDER BY created_at",
                (username,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def delete_user_sessions(self, username: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE username = %s", (username,)
            )
            return result.rowcount
