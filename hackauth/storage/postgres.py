from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from hackauth.logging import get_logger
from hackauth.service.errors import UnavailableError
from hackauth.storage.errors import ConstraintViolation
from hackauth.storage.models import (
    CREDENTIAL_PROVIDER,
    Account,
    ExternalIdentity,
    RefreshToken,
    Role,
    Session,
    SessionStatus,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        name TEXT NOT NULL,
        password_hash TEXT,
        role TEXT NOT NULL DEFAULT 'USER',
        banned BOOLEAN NOT NULL DEFAULT FALSE,
        avatar_url TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        disabled_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_email_key UNIQUE (email),
        CONSTRAINT account_username_key UNIQUE (username)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_identity (
        provider TEXT NOT NULL,
        external_id TEXT NOT NULL,
        account_id TEXT NOT NULL REFERENCES account(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_identity_pkey PRIMARY KEY (provider, external_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id),
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        provider TEXT NOT NULL DEFAULT 'credential',
        created_at TIMESTAMPTZ NOT NULL,
        last_renewed_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        revoke_reason TEXT,
        ip_address TEXT,
        user_agent TEXT,
        device_type TEXT,
        browser TEXT,
        os TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES auth_session(id),
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_session_idx ON refresh_token (session_id)",
)

# Unique constraint name -> offending field
_UNIQUE_FIELDS = {
    "account_email_key": "email",
    "account_username_key": "username",
    "account_identity_pkey": "identity",
}


def _unique_field(exc: errors.UniqueViolation) -> str:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None) or ""
    return _UNIQUE_FIELDS.get(constraint, "email")


def _connection_kwargs(timeout: float) -> Dict[str, Any]:
    """Per-connection settings; every statement is bounded by ``timeout``."""
    return {
        "row_factory": dict_row,
        "autocommit": False,
        "connect_timeout": max(1, int(timeout)),
        "options": f"-c statement_timeout={int(timeout * 1000)}",
    }


class PostgresStore:
    """Postgres-backed account, session and refresh-token persistence."""

    def __init__(
        self,
        dsn: str,
        *,
        timeout: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            open=True,
            kwargs=_connection_kwargs(timeout),
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise UnavailableError("store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping --------------------------------------------------------

    def _identities(self, conn, account_id: str) -> List[ExternalIdentity]:
        rows = conn.execute(
            "SELECT provider, external_id FROM account_identity WHERE account_id = %s ORDER BY created_at",
            (account_id,),
        ).fetchall()
        return [ExternalIdentity(row["provider"], row["external_id"]) for row in rows]

    @staticmethod
    def _account_from_row(
        row: Dict[str, Any], identities: Optional[List[ExternalIdentity]] = None
    ) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            name=row["name"],
            password_hash=row.get("password_hash"),
            role=Role(row.get("role") or Role.USER.value),
            identities=list(identities or []),
            created_at=row.get("created_at") or utcnow(),
            banned=bool(row.get("banned", False)),
            avatar_url=row.get("avatar_url"),
            email_verified=bool(row.get("email_verified", False)),
            email_verified_at=row.get("email_verified_at"),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            disabled_at=row.get("disabled_at"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            created_at=row["created_at"],
            last_renewed_at=row.get("last_renewed_at") or row["created_at"],
            expires_at=row["expires_at"],
            status=SessionStatus(row.get("status") or SessionStatus.ACTIVE.value),
            provider=row.get("provider") or CREDENTIAL_PROVIDER,
            revoked_at=row.get("revoked_at"),
            revoke_reason=row.get("revoke_reason"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_type=row.get("device_type"),
            browser=row.get("browser"),
            os=row.get("os"),
        )

    @staticmethod
    def _refresh_token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            used=bool(row.get("used", False)),
            used_at=row.get("used_at"),
        )

    def _fetch_account(self, where: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM account WHERE {where}", params).fetchone()
            if not row:
                return None
            return self._account_from_row(row, self._identities(conn, str(row["id"])))

    # -- accounts -----------------------------------------------------------

    def count_accounts(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM account").fetchone()
        return int(row["n"]) if row else 0

    def create_account(
        self,
        email: str,
        username: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        role: Optional[Role] = Role.USER,
        avatar_url: Optional[str] = None,
        email_verified: bool = False,
        identity: Optional[ExternalIdentity] = None,
    ) -> Account:
        account_id = str(uuid.uuid4())
        now = utcnow()
        verified_at = now if email_verified else None
        try:
            with self._connect() as conn:
                if role is None:
                    # Serializes first-account inserts; plain reads are unaffected
                    conn.execute("LOCK TABLE account IN SHARE ROW EXCLUSIVE MODE")
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, username, name, password_hash, role, avatar_url,
                                         email_verified, email_verified_at, created_at)
                    SELECT %s, %s, %s, %s, %s,
                           COALESCE(%s::text, CASE WHEN EXISTS (SELECT 1 FROM account)
                                             THEN 'USER' ELSE 'ADMIN' END),
                           %s, %s, %s, %s
                    RETURNING *
                    """,
                    (
                        account_id,
                        email,
                        username,
                        name,
                        password_hash,
                        role.value if role is not None else None,
                        avatar_url,
                        email_verified,
                        verified_at,
                        now,
                    ),
                ).fetchone()
                if identity:
                    conn.execute(
                        "INSERT INTO account_identity (provider, external_id, account_id) VALUES (%s, %s, %s)",
                        (identity.provider, identity.external_id, account_id),
                    )
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            if field == "identity":
                raise ConstraintViolation(
                    "identity already linked",
                    {"field": "identity", "provider": identity.provider if identity else None},
                ) from exc
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._account_from_row(row, [identity] if identity else [])

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("email = %s", (email,))

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_account("username = %s", (username,))

    def get_account_by_identity(
        self, provider: str, external_id: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT a.* FROM account_identity i JOIN account a ON a.id = i.account_id
                WHERE i.provider = %s AND i.external_id = %s
                """,
                (provider, external_id),
            ).fetchone()
            if not row:
                return None
            return self._account_from_row(row, self._identities(conn, str(row["id"])))

    def link_identity(self, account_id: str, identity: ExternalIdentity) -> Account:
        try:
            with self._connect() as conn:
                owner = conn.execute(
                    "SELECT account_id FROM account_identity WHERE provider = %s AND external_id = %s",
                    (identity.provider, identity.external_id),
                ).fetchone()
                if owner and str(owner["account_id"]) != account_id:
                    raise ConstraintViolation(
                        "identity already linked",
                        {"field": "identity", "provider": identity.provider},
                    )
                if not owner:
                    conn.execute(
                        "INSERT INTO account_identity (provider, external_id, account_id) VALUES (%s, %s, %s)",
                        (identity.provider, identity.external_id, account_id),
                    )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "identity already linked", {"field": "identity", "provider": identity.provider}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("account not found", {"account_id": account_id}) from exc
        account = self.get_account(account_id)
        if account is None:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return account

    def _update_account(self, account_id: str, assignments: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {assignments} WHERE id = %s RETURNING *",
                (*params, account_id),
            ).fetchone()
            if not row:
                return None
            return self._account_from_row(row, self._identities(conn, account_id))

    def set_password_hash(self, account_id: str, password_hash: str) -> Optional[Account]:
        return self._update_account(account_id, "password_hash = %s", (password_hash,))

    def mark_email_verified(self, account_id: str, verified_at: datetime) -> Optional[Account]:
        return self._update_account(
            account_id, "email_verified = TRUE, email_verified_at = %s", (verified_at,)
        )

    def set_two_factor_enabled(self, account_id: str, enabled: bool) -> Optional[Account]:
        return self._update_account(account_id, "two_factor_enabled = %s", (enabled,))

    def set_account_disabled(
        self, account_id: str, disabled_at: Optional[datetime]
    ) -> Optional[Account]:
        return self._update_account(account_id, "disabled_at = %s", (disabled_at,))

    def set_account_banned(self, account_id: str, banned: bool) -> Optional[Account]:
        return self._update_account(account_id, "banned = %s", (banned,))

    # -- sessions -----------------------------------------------------------

    def create_session(
        self,
        account_id: str,
        refresh_token_hash: str,
        *,
        ttl_seconds: int,
        now: datetime,
        provider: str = CREDENTIAL_PROVIDER,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: Optional[str] = None,
        browser: Optional[str] = None,
        os: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            account_id,
            ttl_seconds,
            provider=provider,
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device_type,
            browser=browser,
            os=os,
            now=now,
        )
        token = RefreshToken.new(session.id, refresh_token_hash, session.expires_at, now)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, account_id, status, provider, created_at, last_renewed_at,
                                              expires_at, ip_address, user_agent, device_type, browser, os)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.status.value,
                        session.provider,
                        session.created_at,
                        session.last_renewed_at,
                        session.expires_at,
                        ip_address,
                        user_agent,
                        device_type,
                        browser,
                        os,
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, session_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (token.id, token.session_id, token.token_hash, token.expires_at, now),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("account does not exist", {"account_id": account_id}) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(
        self, account_id: str, *, include_revoked: bool = False
    ) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE account_id = %s"
        if not include_revoked:
            query += " AND status <> 'REVOKED'"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (account_id,)).fetchall()
        return [self._session_from_row(row) for row in rows]

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        session_id: str,
        presented_hash: str,
        new_hash: str,
        *,
        ttl_seconds: int,
        now: datetime,
    ) -> Optional[Session]:
        """Compare-and-swap the session's refresh token in one transaction.

        The conditional UPDATE takes the row lock, so of several concurrent
        callers presenting the same token exactly one sees a returned row.
        """
        expires_at = now + timedelta(seconds=ttl_seconds)
        renewed: Optional[Session] = None
        with self._connect() as conn:
            with conn.transaction() as tx:
                spent = conn.execute(
                    """
                    UPDATE refresh_token SET used = TRUE, used_at = %s
                    WHERE token_hash = %s AND session_id = %s AND used = FALSE AND expires_at > %s
                    RETURNING id
                    """,
                    (now, presented_hash, session_id, now),
                ).fetchone()
                if not spent:
                    raise psycopg.Rollback(tx)
                row = conn.execute(
                    """
                    UPDATE auth_session
                    SET last_renewed_at = %s, expires_at = %s, status = 'ROTATED'
                    WHERE id = %s AND status <> 'REVOKED' AND expires_at > %s
                    RETURNING *
                    """,
                    (now, expires_at, session_id, now),
                ).fetchone()
                if not row:
                    raise psycopg.Rollback(tx)
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, session_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (str(uuid.uuid4()), session_id, new_hash, expires_at, now),
                )
                renewed = self._session_from_row(row)
        return renewed

    def revoke_session(self, session_id: str, reason: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET status = 'REVOKED', revoked_at = %s, revoke_reason = %s
                WHERE id = %s AND status <> 'REVOKED'
                """,
                (now, reason, session_id),
            )
            return result.rowcount > 0

    def revoke_account_sessions(
        self,
        account_id: str,
        reason: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        query = """
            UPDATE auth_session SET status = 'REVOKED', revoked_at = %s, revoke_reason = %s
            WHERE account_id = %s AND status <> 'REVOKED'
        """
        params: tuple = (now, reason, account_id)
        if except_session_id:
            query += " AND id <> %s"
            params = (*params, except_session_id)
        with self._connect() as conn:
            result = conn.execute(query, params)
            return result.rowcount
