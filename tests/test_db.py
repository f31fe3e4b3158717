"""Tests for the SQLite layer and schema migrations."""

import sqlite3

import pytest

from sidechat import db


@pytest.fixture
def conn():
    connection = db.get_connection(":memory:")
    yield connection
    connection.close()


def _columns(conn, table):
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


class TestMigrations:
    def test_fresh_database_is_current(self, conn):
        db.init_db(conn)
        assert db.get_schema_version(conn) == db.SCHEMA_VERSION
        assert "name" in _columns(conn, "rooms")

    def test_init_is_idempotent(self, conn):
        db.init_db(conn)
        db.init_db(conn)
        assert db.get_schema_version(conn) == db.SCHEMA_VERSION
        assert db.run_migrations(conn) == []

    def test_upgrades_version_zero_database(self, conn):
        # A database created before migrations existed
        conn.executescript(db.SCHEMA_SQL)
        assert db.get_schema_version(conn) == 0
        applied = db.run_migrations(conn)
        assert applied == [1, 2]
        assert "name" in _columns(conn, "rooms")

    def test_failed_migration_is_reported(self, conn, monkeypatch):
        def broken(connection):
            raise sqlite3.OperationalError("boom")

        monkeypatch.setattr(db, "MIGRATIONS", [(1, "broken", broken)])
        conn.executescript(db.SCHEMA_SQL)
        with pytest.raises(RuntimeError, match="Migration 1 failed"):
            db.run_migrations(conn)

    def test_reset_db(self, conn):
        db.init_db(conn)
        db.insert_message(conn, "m1", "r1", "s1", "Ann", "hi", 1, "sent")
        db.reset_db(conn)
        assert db.get_all_messages(conn, "r1") == []
        assert db.get_schema_version(conn) == db.SCHEMA_VERSION


class TestMessages:
    def test_insert_or_ignore(self, conn):
        db.init_db(conn)
        seq_id, created = db.insert_message(conn, "m1", "r1", "s1", "Ann", "hi", 1, "sent")
        assert created
        again, created = db.insert_message(conn, "m1", "r1", "s1", "Ann", "other", 2, "sent")
        assert not created
        assert again == seq_id

    def test_delete_before_reports_rooms(self, conn):
        db.init_db(conn)
        db.insert_message(conn, "m1", "r1", "s1", "Ann", "a", 1, "sent")
        db.insert_message(conn, "m2", "r2", "s1", "Ann", "b", 2, "sent")
        db.insert_message(conn, "m3", "r2", "s1", "Ann", "c", 100, "sent")
        count, rooms = db.delete_messages_before(conn, 50)
        assert count == 2
        assert sorted(rooms) == ["r1", "r2"]
        assert [m["mid"] for m in db.get_all_messages(conn, "r2")] == ["m3"]

    def test_messages_by_ids_sorted_by_time(self, conn):
        db.init_db(conn)
        a, _ = db.insert_message(conn, "m1", "r1", "s1", "Ann", "late", 20, "sent")
        b, _ = db.insert_message(conn, "m2", "r1", "s1", "Ann", "early", 10, "sent")
        rows = db.get_messages_by_ids(conn, [a, b])
        assert [row["text"] for row in rows] == ["early", "late"]
        assert db.get_messages_by_ids(conn, []) == []
