from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from authkeep.logging import get_logger
from authkeep.storage.errors import ConstraintViolation, StorageUnavailable
from authkeep.storage.models import AuditEvent, AuditEventType
from authkeep.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConn:
    def __init__(self, responses):
        self.responses = list(responses)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, *responses):
        self.conn = FakeConn(responses)

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unused"
    store.logger = get_logger("test")
    return store


def _token_row(**overrides):
    row = {
        "id": "0b0e8d8e-3f2a-4a53-9f0e-111111111111",
        "token": "tok",
        "user_id": "0b0e8d8e-3f2a-4a53-9f0e-222222222222",
        "expires_at": datetime(2030, 1, 1),
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "revoked": False,
    }
    row.update(overrides)
    return row


class TestRefreshTokens:
    def test_claim_is_conditional_update(self):
        pool = FakePool(FakeCursor(rows=[{"id": "x"}]))
        store = _store(pool)

        assert store.claim_refresh_token("tok") is True
        sql, params = pool.conn.executed[0]
        assert sql == "UPDATE refresh_token SET revoked = TRUE WHERE token = %s AND revoked = FALSE RETURNING id"
        assert params == ("tok",)

    def test_claim_lost_when_no_row_returned(self):
        store = _store(FakePool(FakeCursor(rows=[])))

        assert store.claim_refresh_token("tok") is False

    def test_revoke_user_tokens_returns_rowcount(self):
        pool = FakePool(FakeCursor(rowcount=3))
        store = _store(pool)

        assert store.revoke_user_refresh_tokens("u1") == 3
        assert "AND revoked = FALSE" in pool.conn.executed[0][0]

    def test_duplicate_token_maps_to_constraint_violation(self):
        store = _store(FakePool(errors.UniqueViolation("duplicate key")))

        with pytest.raises(ConstraintViolation):
            store.create_refresh_token(
                "tok",
                "0b0e8d8e-3f2a-4a53-9f0e-222222222222",
                datetime.now(timezone.utc) + timedelta(days=7),
            )

    def test_naive_timestamps_become_utc(self):
        store = _store(FakePool(FakeCursor(rows=[_token_row()])))

        record = store.get_refresh_token("tok")

        assert record.expires_at.tzinfo is timezone.utc
        assert record.is_active(datetime(2029, 1, 1, tzinfo=timezone.utc))

    def test_non_uuid_id_skips_database(self):
        store = _store(DummyPool())

        assert store.get_refresh_token_by_id("not-a-uuid") is None
        assert store.get_user("not-a-uuid") is None

    def test_list_active_filters_in_sql(self):
        pool = FakePool(FakeCursor(rows=[_token_row()]))
        store = _store(pool)

        records = store.list_user_refresh_tokens("u1")

        sql = pool.conn.executed[0][0]
        assert "revoked = FALSE AND expires_at > now()" in sql
        assert sql.endswith("ORDER BY created_at DESC")
        assert records[0].token == "tok"


class TestAuditLog:
    def test_append_uses_database_timestamp(self):
        stamped = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)
        pool = FakePool(FakeCursor(rows=[{"timestamp": stamped}]))
        store = _store(pool)

        event = store.append_audit_event(
            AuditEvent.new(AuditEventType.FAILED_LOGIN, metadata={"email": "a@b.co"})
        )

        assert event.timestamp == stamped
        sql, params = pool.conn.executed[0]
        assert sql.startswith("INSERT INTO audit_log")
        assert params[2] == "failed_login"

    def test_list_orders_newest_first_with_limit(self):
        pool = FakePool(FakeCursor(rows=[]))
        store = _store(pool)

        store.list_audit_events(user_id="u1", limit=5)

        sql, params = pool.conn.executed[0]
        assert "WHERE user_id = %s ORDER BY timestamp DESC, seq DESC LIMIT %s" in sql
        assert params == ("u1", 5)

    def test_full_log_breaks_timestamp_ties_by_insert_order(self):
        pool = FakePool(FakeCursor(rows=[]))
        store = _store(pool)

        store.list_audit_events(limit=10)

        sql, params = pool.conn.executed[0]
        assert sql.endswith("ORDER BY timestamp DESC, seq DESC LIMIT %s")
        assert params == (10,)

    def test_schema_adds_sequence_to_existing_tables(self):
        pool = FakePool()
        store = _store(pool)

        store._ensure_schema()

        executed = [sql for sql, _ in pool.conn.executed]
        assert "ALTER TABLE audit_log ADD COLUMN IF NOT EXISTS seq BIGSERIAL" in executed
        assert any("(timestamp DESC, seq DESC)" in sql for sql in executed)


class TestFailures:
    def test_unreachable_database_raises_storage_unavailable(self):
        class BrokenPool:
            @contextmanager
            def connection(self):
                raise errors.OperationalError("connection refused")
                yield  # pragma: no cover

        store = _store(BrokenPool())

        with pytest.raises(StorageUnavailable) as exc_info:
            store.get_refresh_token("tok")
        assert isinstance(exc_info.value.cause, errors.OperationalError)
