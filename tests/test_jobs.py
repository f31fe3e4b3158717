"""Tests for maintenance jobs."""

import json

from sidechat import jobs
from sidechat.models import DeliveryState, now_ms
from sidechat.store import InMemoryStore
from sidechat.testing import seed_messages

DAY_MS = 24 * 60 * 60 * 1000


class TestRetention:
    def test_dry_run_counts_only(self, store):
        seed_messages(store, "room-1", [(now_ms() - 40 * DAY_MS, "old"), (now_ms(), "new")])
        assert jobs.process_retention(store, retention_days=30, dry_run=True) == 1
        assert len(store.get_all_messages("room-1")) == 2

    def test_removes_old_messages(self, store):
        seed_messages(store, "room-1", [(now_ms() - 40 * DAY_MS, "old"), (now_ms(), "new")])
        assert jobs.process_retention(store, retention_days=30) == 1
        assert [m.text for m in store.get_all_messages("room-1")] == ["new"]


class TestHistoryExport:
    def test_export_writes_jsonl(self, store, tmp_path):
        seed_messages(store, "room-1", [(1, "first"), (2, "second")])
        seed_messages(store, "room-2", [(3, "elsewhere")])
        path = tmp_path / "out" / "room-1.jsonl"

        assert jobs.export_room_history(store, "room-1", path) == 2

        lines = path.read_text().splitlines()
        assert [json.loads(line)["text"] for line in lines] == ["first", "second"]

    def test_import_into_fresh_store(self, store, tmp_path):
        originals = seed_messages(store, "room-1", [(1, "first"), (2, "second")])
        path = tmp_path / "room-1.jsonl"
        jobs.export_room_history(store, "room-1", path)

        other = InMemoryStore()
        try:
            assert jobs.import_room_history(other, path) == 2
            imported = other.get_all_messages("room-1")
            assert [m.mid for m in imported] == [m.mid for m in originals]
            assert all(m.delivery_state is DeliveryState.RECEIVED for m in imported)
        finally:
            other.close()

    def test_import_skips_known_messages(self, store, tmp_path):
        seed_messages(store, "room-1", [(1, "first")])
        path = tmp_path / "room-1.jsonl"
        jobs.export_room_history(store, "room-1", path)
        assert jobs.import_room_history(store, path) == 0
        assert len(store.get_all_messages("room-1")) == 1

    def test_load_ignores_blank_lines(self, store, tmp_path):
        seed_messages(store, "room-1", [(1, "first")])
        path = tmp_path / "room-1.jsonl"
        jobs.export_room_history(store, "room-1", path)
        path.write_text(path.read_text() + "\n\n")
        messages = jobs.load_room_history(path)
        assert len(messages) == 1
        assert messages[0].id is None
