from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from fitstack.storage.errors import ConstraintViolation
from fitstack.storage.models import RefreshToken
from fitstack.storage.postgres import PostgresStore

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements and replays scripted cursors in order."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []
        self.transactions = 0
        self.rolled_back = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def transaction(self):
        self.transactions += 1
        try:
            yield
        except Exception:
            self.rolled_back = True
            raise

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else FakeCursor()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(conn, domain_tables=()):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store._domain_tables = list(domain_tables)
    store.logger = None
    return store


def _token_row(**overrides):
    row = {
        "token": "tok",
        "user_id": 7,
        "expiry_date": NOW + timedelta(days=1),
        "revoked": False,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def _rotation_results(row):
    """Owner lookup, user-row lock, then the locked token row."""
    return [FakeCursor([{"user_id": 7}]), FakeCursor([{"id": 7}]), FakeCursor([row])]


class TestRotation:
    def test_rotation_locks_user_then_token_and_reissues(self):
        conn = FakeConnection(_rotation_results(_token_row()))
        rotation = _store(conn).rotate_refresh_token("tok", 60, now=NOW)
        assert rotation.outcome == "rotated"
        assert rotation.issued.user_id == 7
        assert rotation.issued.expiry_date == NOW + timedelta(minutes=60)
        assert conn.transactions == 1
        assert conn.statements[1] == ("SELECT id FROM app_user WHERE id = %s FOR UPDATE", (7,))
        select_sql, params = conn.statements[2]
        assert select_sql.startswith("SELECT * FROM refresh_token")
        assert select_sql.endswith("FOR UPDATE")
        assert params == ("tok",)
        assert conn.statements[3][0].startswith("UPDATE refresh_token SET revoked = TRUE")
        assert conn.statements[4][0].startswith("INSERT INTO refresh_token")

    def test_rotation_and_issue_take_user_row_lock_first(self):
        rotate_conn = FakeConnection(_rotation_results(_token_row()))
        _store(rotate_conn).rotate_refresh_token("tok", 60, now=NOW)
        save_conn = FakeConnection([FakeCursor([{"id": 7}])])
        _store(save_conn).save_refresh_token(RefreshToken.new(7, 60, now=NOW))

        def first_lock(conn):
            return next(s for s in conn.statements if s[0].endswith("FOR UPDATE"))

        assert first_lock(rotate_conn) == first_lock(save_conn)

    def test_missing_token(self):
        conn = FakeConnection([FakeCursor([])])
        assert _store(conn).rotate_refresh_token("tok", 60, now=NOW).outcome == "not_found"
        assert len(conn.statements) == 1

    def test_token_revoked_while_waiting_for_lock(self):
        conn = FakeConnection(_rotation_results(_token_row(revoked=True)))
        assert _store(conn).rotate_refresh_token("tok", 60, now=NOW).outcome == "not_found"
        assert len(conn.statements) == 3

    def test_expired_token_deleted(self):
        conn = FakeConnection(_rotation_results(_token_row(expiry_date=NOW - timedelta(seconds=1))))
        rotation = _store(conn).rotate_refresh_token("tok", 60, now=NOW)
        assert rotation.outcome == "expired"
        assert conn.statements[3] == ("DELETE FROM refresh_token WHERE token = %s", ("tok",))



class TestUsers:
    def test_email_lookup_is_normalized(self):
        conn = FakeConnection([FakeCursor([])])
        assert _store(conn).get_user_by_email("  Ada@Example.COM ") is None
        assert conn.statements[0][1] == ("ada@example.com",)

    def test_link_only_fills_empty_names(self):
        row = {
            "id": 3,
            "email": "a@x.com",
            "password_hash": "h",
            "provider_subject_id": "sub",
            "first_name": "Ann",
            "last_name": "Lee",
            "created_at": NOW,
        }
        conn = FakeConnection([FakeCursor([row])])
        user = _store(conn).link_provider_subject(3, "sub", first_name="X", last_name="Lee")
        assert user.provider_subject_id == "sub"
        assert "COALESCE(NULLIF(first_name, ''), %s)" in conn.statements[0][0]

    def test_save_refresh_token_serializes_on_user_row(self):
        conn = FakeConnection([FakeCursor([{"id": 7}])])
        token = RefreshToken.new(7, 60, now=NOW)
        _store(conn).save_refresh_token(token)
        assert conn.statements[0][0] == "SELECT id FROM app_user WHERE id = %s FOR UPDATE"
        assert conn.transactions == 1


class TestDomainRows:
    def test_absent_tables_skipped(self):
        conn = FakeConnection([])
        assert _store(conn, domain_tables=["goal"]).delete_domain_rows("meal", 5) == 0
        assert conn.statements == []

    def test_child_table_deleted_via_parent(self):
        conn = FakeConnection([FakeCursor(rowcount=4)])
        store = _store(conn, domain_tables=["workout_set"])
        assert store.delete_domain_rows("workout_set", 5) == 4
        sql, params = conn.statements[0]
        assert "SELECT id FROM workout_session WHERE user_id = %s" in sql
        assert params == (5,)

    def test_owned_table_deleted_by_user_id(self):
        conn = FakeConnection([FakeCursor(rowcount=2)])
        assert _store(conn, domain_tables=["goal"]).delete_domain_rows("goal", 5) == 2
        assert conn.statements[0][0] == "DELETE FROM goal WHERE user_id = %s"

    def test_unknown_table_rejected(self):
        with pytest.raises(ValueError):
            _store(FakeConnection([])).delete_domain_rows("app_user", 5)


class TestAccountDeletion:
    def test_steps_share_one_transaction_holding_the_user_row(self):
        conn = FakeConnection(
            [
                FakeCursor([{"id": 5}]),
                FakeCursor(rowcount=3),
                FakeCursor(rowcount=2),
                FakeCursor(rowcount=1),
            ]
        )
        store = _store(conn, domain_tables=["goal"])
        with store.account_deletion(5) as scope:
            assert scope.delete_domain_rows("goal", 5) == 3
            assert scope.delete_domain_rows("meal", 5) == 0
            assert scope.delete_refresh_tokens(5) == 2
            assert scope.delete_user(5) is True
        assert conn.transactions == 1
        assert [sql for sql, _ in conn.statements] == [
            "SELECT id FROM app_user WHERE id = %s FOR UPDATE",
            "DELETE FROM goal WHERE user_id = %s",
            "DELETE FROM refresh_token WHERE user_id = %s",
            "DELETE FROM app_user WHERE id = %s",
        ]
        assert not conn.rolled_back

    def test_failure_rolls_back(self):
        conn = FakeConnection([FakeCursor([{"id": 5}])])
        with pytest.raises(RuntimeError):
            with _store(conn).account_deletion(5):
                raise RuntimeError("boom")
        assert conn.rolled_back


class TestIssueForMissingUser:
    def test_save_refresh_token_rejects_deleted_user(self):
        conn = FakeConnection([FakeCursor([])])
        with pytest.raises(ConstraintViolation):
            _store(conn).save_refresh_token(RefreshToken.new(7, 60, now=NOW))
        assert conn.rolled_back
        assert len(conn.statements) == 1
