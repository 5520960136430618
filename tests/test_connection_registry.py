"""
Tests for the Connection Registry and fan-out broadcaster.

Covers:
- Actor and room delivery
- Per-channel ordering under concurrent publishers
- No delivery after unregister
- Room access checks
- Dropping connections whose transport fails

Run with: pytest tests/test_connection_registry.py -v
"""

import threading

import pytest

from crowdtest.application.services import RoomAccessPolicy
from crowdtest.domain.errors import AccessDeniedError, NotFoundError
from crowdtest.domain.models import Actor
from crowdtest.domain.models.events import Notification, ParticipantLeft, ProgressUpdated
from crowdtest.infrastructure.realtime import ConnectionRegistry

from tests.helpers import add_test
from tests.mocks import FailingConnection, RecordingConnection


def _progress(test_id: str, step: str) -> ProgressUpdated:
    return ProgressUpdated(
        test_id=test_id,
        session_id="session-1",
        participant_id="tester-1",
        current_task=step,
    )


def _notification(recipient_id: str, title: str = "Hello") -> Notification:
    return Notification(
        recipient_id=recipient_id,
        notification_type="session_completed",
        title=title,
        message="",
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Registration and Delivery
# ═══════════════════════════════════════════════════════════════════════════════


class TestRegistration:
    """Tests for register/unregister and actor delivery."""

    def test_actor_receives_on_every_connection(self, registry, owner):
        """An actor with two tabs open gets the event twice."""
        first, second = RecordingConnection("c1"), RecordingConnection("c2")
        registry.register(owner, first)
        registry.register(owner, second)

        delivered = registry.publish_to_actor(owner.actor_id, _notification(owner.actor_id))

        assert delivered == 2
        assert first.kinds() == ["notification"]
        assert second.kinds() == ["notification"]

    def test_offline_actor_event_is_dropped(self, registry):
        """Publishing to an actor with no connection delivers to nobody."""
        assert registry.publish_to_actor("nobody", _notification("nobody")) == 0

    def test_register_twice_is_noop(self, registry, owner):
        """Registering the same connection again keeps one registration."""
        connection = RecordingConnection("c1")
        registry.register(owner, connection)
        registry.register(owner, connection)

        assert registry.connection_count() == 1
        assert registry.connections_for(owner.actor_id) == ["c1"]

    def test_unregister_is_idempotent(self, registry, owner):
        """The second unregister reports False and changes nothing."""
        connection = RecordingConnection("c1")
        registry.register(owner, connection)

        assert registry.unregister(connection) is True
        assert registry.unregister(connection) is False
        assert not registry.is_connected(owner.actor_id)
        assert registry.connected_actor_count() == 0

    def test_nothing_delivered_after_unregister(self, registry, owner):
        """A removed connection sees neither actor nor room events."""
        connection = RecordingConnection("c1")
        registry.register(owner, connection)
        registry.join_test_room(connection, "test-1")
        registry.unregister(connection)

        registry.publish_to_actor(owner.actor_id, _notification(owner.actor_id))
        registry.publish_to_test_room("test-1", _progress("test-1", "a"))

        assert connection.events == []
        assert registry.room_size("test-1") == 0


# ═══════════════════════════════════════════════════════════════════════════════
# Rooms
# ═══════════════════════════════════════════════════════════════════════════════


class TestRooms:
    """Tests for test-room membership and broadcast."""

    def test_room_broadcast_reaches_members_only(self, registry, owner, tester):
        """Only connections in the room receive its events."""
        inside, outside = RecordingConnection("c1"), RecordingConnection("c2")
        registry.register(owner, inside)
        registry.register(tester, outside)
        registry.join_test_room(inside, "test-1")

        assert registry.publish_to_test_room("test-1", _progress("test-1", "a")) == 1
        assert inside.kinds() == ["progress_updated"]
        assert outside.events == []

    def test_join_requires_registration(self, registry):
        """An unknown connection cannot join a room."""
        with pytest.raises(NotFoundError):
            registry.join_test_room(RecordingConnection("ghost"), "test-1")

    def test_leave_room(self, registry, owner):
        """After leaving, the connection no longer receives room events."""
        connection = RecordingConnection("c1")
        registry.register(owner, connection)
        registry.join_test_room(connection, "test-1")

        assert registry.leave_test_room(connection, "test-1") is True
        assert registry.leave_test_room(connection, "test-1") is False
        registry.publish_to_test_room("test-1", _progress("test-1", "a"))

        assert connection.events == []
        assert registry.rooms_for(connection) == []

    def test_unregister_announces_participant_left(self, registry, owner, tester):
        """Remaining room members are told when someone disconnects."""
        watcher, leaver = RecordingConnection("c1"), RecordingConnection("c2")
        registry.register(owner, watcher)
        registry.register(tester, leaver)
        registry.join_test_room(watcher, "test-1")
        registry.join_test_room(leaver, "test-1")

        registry.unregister(leaver)

        left = watcher.of_kind("participant_left")
        assert left == [ParticipantLeft(test_id="test-1", actor_id=tester.actor_id, at=left[0].at)]
        assert leaver.of_kind("participant_left") == []


class TestRoomAccess:
    """Tests for the RoomAccessPolicy check on join."""

    @pytest.fixture
    def guarded_registry(self, uow_factory) -> ConnectionRegistry:
        return ConnectionRegistry(access_policy=RoomAccessPolicy(uow_factory))

    def test_owner_may_join(self, guarded_registry, published_test, owner):
        """The test's owner observes it."""
        connection = RecordingConnection("c1")
        guarded_registry.register(owner, connection)

        guarded_registry.join_test_room(connection, published_test.id)

        assert guarded_registry.room_size(published_test.id) == 1

    def test_stranger_is_denied(self, guarded_registry, published_test, other_customer):
        """A customer who does not own the test is denied and not added."""
        connection = RecordingConnection("c1")
        guarded_registry.register(other_customer, connection)

        with pytest.raises(AccessDeniedError):
            guarded_registry.join_test_room(connection, published_test.id)
        assert guarded_registry.room_size(published_test.id) == 0

    def test_participant_may_join(self, guarded_registry, published_test, admission, tester):
        """A tester holding a session on the test observes it."""
        admission.try_admit(tester, published_test.id)
        connection = RecordingConnection("c1")
        guarded_registry.register(tester, connection)

        guarded_registry.join_test_room(connection, published_test.id)

        assert guarded_registry.rooms_for(connection) == [published_test.id]

    def test_tester_without_session_is_denied(self, guarded_registry, published_test, tester):
        """Merely being a tester is not enough."""
        connection = RecordingConnection("c1")
        guarded_registry.register(tester, connection)

        with pytest.raises(AccessDeniedError):
            guarded_registry.join_test_room(connection, published_test.id)

    def test_admin_may_join_anything(self, guarded_registry, admin):
        """Admins observe every room, even unknown ones."""
        connection = RecordingConnection("c1")
        guarded_registry.register(admin, connection)

        guarded_registry.join_test_room(connection, "no-such-test")

        assert guarded_registry.room_size("no-such-test") == 1

    def test_unknown_test_is_denied(self, guarded_registry, owner):
        """Non-admins cannot observe a test that does not exist."""
        connection = RecordingConnection("c1")
        guarded_registry.register(owner, connection)

        with pytest.raises(AccessDeniedError):
            guarded_registry.join_test_room(connection, "no-such-test")


# ═══════════════════════════════════════════════════════════════════════════════
# Failures and Ordering
# ═══════════════════════════════════════════════════════════════════════════════


class TestFanOut:
    """Tests for failing transports and ordering."""

    def test_failing_connection_is_dropped(self, registry, owner, tester):
        """A send error unregisters that connection; others still receive."""
        healthy, broken = RecordingConnection("c1"), FailingConnection("c2")
        registry.register(owner, healthy)
        registry.register(tester, broken)
        registry.join_test_room(healthy, "test-1")
        registry.join_test_room(broken, "test-1")

        delivered = registry.publish_to_test_room("test-1", _progress("test-1", "a"))

        assert delivered == 1
        assert registry.connection_count() == 1
        assert not registry.is_connected(tester.actor_id)
        assert healthy.kinds() == ["progress_updated", "participant_left"]

    def test_sequential_publishes_arrive_in_order(self, registry, owner):
        """One publisher's events arrive in publish order."""
        connection = RecordingConnection("c1")
        registry.register(owner, connection)
        registry.join_test_room(connection, "test-1")

        for step in ("a", "b", "c"):
            registry.publish_to_test_room("test-1", _progress("test-1", step))

        assert [e.current_task for e in connection.events] == ["a", "b", "c"]

    def test_concurrent_publishers_produce_one_order(self, registry, owner, tester, admin):
        """Every member of a room sees the same sequence under concurrent publishes."""
        members = [RecordingConnection(f"c{i}") for i in range(3)]
        for actor, connection in zip((owner, tester, admin), members):
            registry.register(actor, connection)
            registry.join_test_room(connection, "test-1")

        barrier = threading.Barrier(4)

        def publisher(index: int) -> None:
            barrier.wait()
            for n in range(25):
                registry.publish_to_test_room("test-1", _progress("test-1", f"{index}-{n}"))

        threads = [threading.Thread(target=publisher, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        sequences = [[e.current_task for e in c.events] for c in members]
        assert len(sequences[0]) == 100
        assert sequences[0] == sequences[1] == sequences[2]
        for index in range(4):
            own = [step for step in sequences[0] if step.startswith(f"{index}-")]
            assert own == [f"{index}-{n}" for n in range(25)]

    def test_unregister_during_publishing_stops_delivery(self, registry, owner, tester):
        """Once unregister returns, the count of received events is final."""
        watcher, leaver = RecordingConnection("c1"), RecordingConnection("c2")
        registry.register(owner, watcher)
        registry.register(Actor.tester("tester-9"), leaver)
        registry.join_test_room(watcher, "test-1")
        registry.join_test_room(leaver, "test-1")

        stop = threading.Event()

        def publisher() -> None:
            n = 0
            while not stop.is_set():
                registry.publish_to_test_room("test-1", _progress("test-1", str(n)))
                n += 1

        thread = threading.Thread(target=publisher)
        thread.start()
        try:
            registry.unregister(leaver)
            received = len(leaver.events)
            registry.publish_to_test_room("test-1", _progress("test-1", "after"))
        finally:
            stop.set()
            thread.join()

        assert len(leaver.events) == received
        assert "after" not in [e.current_task for e in leaver.events]

    def test_publishing_to_empty_channels_keeps_no_locks(self, registry):
        """Offline actors and empty rooms leave nothing behind."""
        for n in range(1000):
            registry.publish_to_test_room(f"test-{n}", _progress(f"test-{n}", "a"))
            registry.publish_to_actor(f"actor-{n}", _notification(f"actor-{n}"))

        assert registry.channel_lock_count() == 0

    def test_channel_locks_released_after_concurrent_publishing(self, registry, owner):
        """Locks of busy channels are dropped once every publisher is done."""
        connection = RecordingConnection("c1")
        registry.register(owner, connection)
        registry.join_test_room(connection, "test-1")
        barrier = threading.Barrier(4)

        def publisher(index: int) -> None:
            barrier.wait()
            for n in range(50):
                registry.publish_to_test_room("test-1", _progress("test-1", f"{index}-{n}"))
                registry.publish_to_actor(owner.actor_id, _notification(owner.actor_id))

        threads = [threading.Thread(target=publisher, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(connection.events) == 400
        assert registry.channel_lock_count() == 0


class TestServiceBroadcasts:
    """End-to-end: services publish to rooms through the registry."""

    def test_room_sees_full_session_story(self, registry, admission, session_service, published_test, owner, tester):
        """The owner's room sees join, progress and completion in order."""
        room = RecordingConnection("owner-tab")
        registry.register(owner, room)
        registry.join_test_room(room, published_test.id)

        session = admission.try_admit(tester, published_test.id).session
        session_service.update_progress(tester, session.id, {"current_task": "login"})
        session_service.complete(tester, session.id, rating=4)

        assert room.kinds() == ["participant_joined", "progress_updated", "session_completed"]
        assert room.events[1].current_task == "login"
        assert room.events[2].to_dict()["rating"] == 4
