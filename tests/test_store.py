"""Tests for the Local Store."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from sidechat.errors import StoreError, ValidationError
from sidechat.metrics import metrics
from sidechat.models import DeliveryState, Identity, Message, Room, now_ms
from sidechat.store import InMemoryStore, LocalStore
from sidechat.testing import seed_messages

DAY_MS = 24 * 60 * 60 * 1000


def make_message(mid="m1", room_id="room-1", text="hello", **kwargs) -> Message:
    return Message(mid=mid, room_id=room_id, sender_id=kwargs.pop("sender_id", "s1"), text=text, **kwargs)


class TestSaveMessage:
    def test_returns_sequence_id(self, store):
        first = store.save_message(make_message("m1"))
        second = store.save_message(make_message("m2"))
        assert second > first

    def test_defaults_display_name(self, store):
        store.save_message(make_message(display_name=""))
        assert store.get_message("m1").display_name == "Anonymous"

    def test_defaults_timestamp(self, store):
        before = now_ms()
        store.save_message(make_message(timestamp=0))
        assert store.get_message("m1").timestamp >= before

    def test_sanitizes_text_and_name(self, store):
        store.save_message(make_message(text="<b>hi</b> there", display_name="<i>Ann</i>"))
        stored = store.get_message("m1")
        assert stored.text == "hi there"
        assert stored.display_name == "Ann"

    def test_requires_room_id(self, store):
        with pytest.raises(ValidationError):
            store.save_message(make_message(room_id=""))

    def test_requires_mid(self, store):
        with pytest.raises(ValidationError):
            store.save_message(make_message(mid=""))

    def test_closed_store_raises(self):
        s = InMemoryStore()
        s.close()
        with pytest.raises(StoreError):
            s.save_message(make_message())


class TestDeduplication:
    def test_second_insert_is_ignored(self, store):
        first, created = store.insert_if_absent(make_message(text="original"))
        assert created
        again, created = store.insert_if_absent(make_message(text="copy"))
        assert not created
        assert again.id == first.id
        assert again.text == "original"
        assert len(store.get_all_messages("room-1")) == 1

    def test_save_message_returns_existing_id(self, store):
        first = store.save_message(make_message())
        assert store.save_message(make_message()) == first

    def test_has_message(self, store):
        assert not store.has_message("m1")
        store.save_message(make_message())
        assert store.has_message("m1")

    @pytest.mark.parametrize("fixture", ["store", "local_store"])
    def test_concurrent_inserts_of_one_mid(self, fixture, request):
        target = request.getfixturevalue(fixture)
        # Build the room index so every insert also updates it
        assert target.search_messages("room-1", "hello") == []
        workers = 8
        barrier = threading.Barrier(workers)

        def insert(i):
            barrier.wait()
            return target.insert_if_absent(make_message(text=f"hello {i}"))

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(insert, range(workers)))

        assert sum(1 for _, created in results if created) == 1
        assert len({message.id for message, _ in results}) == 1
        stored = target.get_all_messages("room-1")
        assert len(stored) == 1
        assert {message.text for message, _ in results} == {stored[0].text}
        assert [m.mid for m in target.search_messages("room-1", "hello")] == ["m1"]


class TestGetMessages:
    def test_most_recent_in_ascending_order(self, store):
        seed_messages(store, "room-1", [(t, f"msg {t}") for t in range(1, 6)])
        messages = store.get_messages("room-1", limit=3)
        assert [m.timestamp for m in messages] == [3, 4, 5]

    def test_out_of_order_inserts_come_back_sorted(self, store):
        seed_messages(store, "room-1", [(30, "c"), (10, "a"), (20, "b")])
        assert [m.text for m in store.get_messages("room-1")] == ["a", "b", "c"]

    def test_scoped_to_room(self, store):
        seed_messages(store, "room-1", [(1, "mine")])
        seed_messages(store, "room-2", [(2, "theirs")])
        assert [m.text for m in store.get_messages("room-1")] == ["mine"]

    def test_zero_limit(self, store):
        seed_messages(store, "room-1", [(1, "a")])
        assert store.get_messages("room-1", limit=0) == []

    def test_unknown_room(self, store):
        assert store.get_messages("nope") == []


class TestDeliveryState:
    def test_update_and_pending(self, store):
        store.save_message(make_message("m1", delivery_state=DeliveryState.PENDING, timestamp=1))
        store.save_message(make_message("m2", delivery_state=DeliveryState.PENDING, timestamp=2))
        assert store.update_delivery_state("m1", DeliveryState.SENT)
        assert [m.mid for m in store.get_pending("room-1")] == ["m2"]
        assert store.get_message("m1").delivery_state is DeliveryState.SENT

    def test_update_unknown_mid(self, store):
        assert not store.update_delivery_state("missing", DeliveryState.SENT)


class TestRetention:
    def test_purge_removes_old_messages(self, store):
        now = now_ms()
        seed_messages(store, "room-1", [(now - 40 * DAY_MS, "old"), (now - DAY_MS, "recent")])
        assert store.count_older_than(timedelta(days=30)) == 1
        assert store.purge_older_than(timedelta(days=30)) == 1
        assert [m.text for m in store.get_all_messages("room-1")] == ["recent"]

    def test_purge_nothing(self, store):
        seed_messages(store, "room-1", [(now_ms(), "fresh")])
        assert store.purge_older_than(timedelta(days=30)) == 0

    def test_purge_on_closed_store_reports_zero(self):
        s = InMemoryStore()
        s.close()
        assert s.purge_older_than(timedelta(days=1)) == 0

    def test_purged_messages_leave_search(self, store):
        now = now_ms()
        seed_messages(store, "room-1", [(now - 40 * DAY_MS, "ancient goal"), (now, "new goal")])
        assert len(store.search_messages("room-1", "goal")) == 2
        store.purge_older_than(timedelta(days=30))
        assert [m.text for m in store.search_messages("room-1", "goal")] == ["new goal"]


class TestRooms:
    def test_save_room_defaults_name(self, store):
        room = store.save_room(Room(room_id="video-1-abc", context_id="video-1"))
        assert room.name == "Room for video-1"
        assert store.room_exists("video-1-abc")

    def test_save_room_keeps_explicit_name(self, store):
        room = store.save_room(Room(room_id="r1", context_id="ctx", name="Match night"))
        assert room.name == "Match night"

    def test_resave_keeps_latest_activity(self, store):
        store.save_room(Room(room_id="r1", context_id="ctx", created_at=1, last_active_at=100))
        room = store.save_room(Room(room_id="r1", context_id="ctx", created_at=1, last_active_at=50))
        assert room.last_active_at == 100
        assert room.created_at == 1

    def test_list_rooms_most_recent_first(self, store):
        store.save_room(Room(room_id="a", context_id="ctx", last_active_at=10))
        store.save_room(Room(room_id="b", context_id="ctx", last_active_at=30))
        store.save_room(Room(room_id="c", context_id="ctx", last_active_at=20))
        assert [r.room_id for r in store.list_rooms()] == ["b", "c", "a"]

    def test_touch_room(self, store):
        store.save_room(Room(room_id="a", context_id="ctx", last_active_at=10))
        store.save_room(Room(room_id="b", context_id="ctx", last_active_at=20))
        assert store.touch_room("a", 50)
        assert [r.room_id for r in store.list_rooms()] == ["a", "b"]
        assert not store.touch_room("missing", 50)

    def test_get_unknown_room(self, store):
        assert store.get_room("nope") is None


class TestIdentityRecord:
    def test_save_and_get(self, store):
        assert store.get_identity() is None
        store.save_identity(Identity(id="id-1", display_name="Ann", last_seen=5))
        identity = store.get_identity()
        assert identity.id == "id-1"
        assert identity.display_name == "Ann"

    def test_id_is_never_replaced(self, store):
        store.save_identity(Identity(id="id-1", display_name="Ann"))
        store.save_identity(Identity(id="id-2", display_name="Bea"))
        identity = store.get_identity()
        assert identity.id == "id-1"
        assert identity.display_name == "Bea"


class TestLocalStoreFile:
    def test_persists_across_reopen(self, tmp_path):
        path = tmp_path / "nested" / "chat.db"
        first = LocalStore(path)
        first.save_message(make_message())
        first.save_room(Room(room_id="room-1", context_id="room"))
        first.close()

        second = LocalStore(path)
        try:
            assert second.get_message("m1").text == "hello"
            assert second.room_exists("room-1")
        finally:
            second.close()

    def test_info_and_stats(self, local_store):
        local_store.save_message(make_message())
        assert local_store.get_info().store_type == "local"
        stats = local_store.stats()
        assert stats["messages"] == 1
        assert stats["rooms"] == 0

    def test_close_is_idempotent(self, local_store):
        local_store.close()
        local_store.close()

    def test_operations_are_timed(self, store):
        store.save_message(make_message())
        store.get_messages("room-1")
        operations = metrics.to_dict()["operations"]
        assert operations["store.insert_if_absent"]["count"] == 1
        assert operations["store.get_messages"]["count"] == 1
