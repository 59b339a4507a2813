import contextlib
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from hackauth.logging import get_logger
from hackauth.service.errors import UnavailableError
from hackauth.storage.errors import ConstraintViolation
from hackauth.storage.models import ExternalIdentity, Role, SessionStatus
from hackauth.storage.postgres import PostgresStore, _connection_kwargs


class TimeoutPool:
    def connection(self):
        raise PoolTimeout("couldn't get a connection after 5.00 sec")


class FakeConnection:
    def __init__(self, exc):
        self.exc = exc

    def execute(self, *args, **kwargs):
        raise self.exc

    def transaction(self):
        return contextlib.nullcontext(self)


class RecordingConnection:
    """Answers every statement with one account row and keeps the SQL."""

    def __init__(self):
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self

    def fetchone(self):
        return {
            "id": "a1",
            "email": "ada@example.com",
            "username": "ada",
            "name": "Ada",
            "role": "ADMIN",
        }


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return contextlib.nullcontext(self.conn)


class UsernameTaken(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="account_username_key")


class IdentityTaken(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="account_identity_pkey")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger(__name__)
    return store


class TestPostgresStoreUnavailable:
    def test_pool_timeout_is_unavailable(self):
        store = _store(TimeoutPool())

        with pytest.raises(UnavailableError) as excinfo:
            store.count_accounts()
        assert excinfo.value.status_code == 503

    def test_operational_error_is_unavailable(self):
        store = _store(FakePool(FakeConnection(errors.OperationalError("server closed the connection"))))

        with pytest.raises(UnavailableError):
            store.get_account_by_email("ada@example.com")

    def test_statement_timeout_is_unavailable(self):
        canceled = errors.QueryCanceled("canceling statement due to statement timeout")
        store = _store(FakePool(FakeConnection(canceled)))

        with pytest.raises(UnavailableError):
            store.rotate_refresh_token(
                "s1", "old", "new", ttl_seconds=60, now=datetime.now(timezone.utc)
            )

    def test_connections_carry_statement_timeout(self):
        kwargs = _connection_kwargs(2.5)

        assert kwargs["options"] == "-c statement_timeout=2500"
        assert kwargs["connect_timeout"] == 2


class TestFirstAccountRole:
    def test_undecided_role_locks_and_decides_in_sql(self):
        conn = RecordingConnection()
        account = _store(FakePool(conn)).create_account(
            "ada@example.com", "ada", "Ada", password_hash="x", role=None
        )

        lock_sql, _ = conn.statements[0]
        insert_sql, params = conn.statements[1]
        assert lock_sql == "LOCK TABLE account IN SHARE ROW EXCLUSIVE MODE"
        assert "CASE WHEN EXISTS (SELECT 1 FROM account)" in insert_sql
        assert params[5] is None
        assert account.role == Role.ADMIN

    def test_explicit_role_skips_lock(self):
        conn = RecordingConnection()
        _store(FakePool(conn)).create_account("ada@example.com", "ada", "Ada", role=Role.USER)

        assert len(conn.statements) == 1
        assert conn.statements[0][1][5] == "USER"


class TestUniqueViolationMapping:
    def test_username_constraint(self):
        store = _store(FakePool(FakeConnection(UsernameTaken("duplicate key"))))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_account("ada@example.com", "ada", "Ada", password_hash="x")
        assert excinfo.value.field == "username"

    def test_identity_constraint(self):
        store = _store(FakePool(FakeConnection(IdentityTaken("duplicate key"))))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_account(
                "ada@example.com",
                "ada",
                "Ada",
                identity=ExternalIdentity("google", "g-1"),
            )
        assert excinfo.value.field == "identity"
        assert excinfo.value.detail["provider"] == "google"

    def test_unnamed_constraint_defaults_to_email(self):
        store = _store(FakePool(FakeConnection(errors.UniqueViolation("duplicate key"))))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_account("ada@example.com", "ada", "Ada")
        assert excinfo.value.field == "email"


class TestRowMapping:
    def test_account_from_row(self):
        now = datetime.now(timezone.utc)
        account = PostgresStore._account_from_row(
            {
                "id": "a1",
                "email": "ada@example.com",
                "username": "ada",
                "name": "Ada",
                "password_hash": None,
                "role": "ADMIN",
                "created_at": now,
                "banned": False,
                "email_verified": True,
                "two_factor_enabled": True,
                "disabled_at": None,
            },
            [ExternalIdentity("github", "42")],
        )

        assert account.role == Role.ADMIN
        assert account.has_password is False
        assert account.is_active is True
        assert account.identities == [ExternalIdentity("github", "42")]

    def test_session_from_row(self):
        now = datetime.now(timezone.utc)
        session = PostgresStore._session_from_row(
            {
                "id": "s1",
                "account_id": "a1",
                "created_at": now,
                "last_renewed_at": now,
                "expires_at": now,
                "status": "ROTATED",
                "provider": "google",
                "device_type": "mobile",
            }
        )

        assert session.status == SessionStatus.ROTATED
        assert session.provider == "google"
        assert session.device_type == "mobile"
        assert session.ip_address is None
