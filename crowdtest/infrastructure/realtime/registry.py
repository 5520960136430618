"""
Connection Registry & Fan-out Broadcaster.

Tracks live connections per actor and per crowd-test room and pushes
realtime events to them.

Locking:
- `_lock` guards the maps (connections, actors, rooms). It is never held
  while calling into a transport or the access policy.
- One channel lock per actor and per room serializes publishes on that
  channel, so every connection sees a channel's events in publish order.
  A channel lock exists only while a publish holds or waits for it.
- One send lock per connection, together with its `closed` flag, makes
  sure nothing is delivered after unregister() returns.

A connection whose send() raises is unregistered; the other targets of
the same publish are unaffected.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set

from crowdtest.domain.errors import AccessDeniedError, NotFoundError
from crowdtest.domain.interfaces.collaborators import IConnection, IRoomAccessPolicy
from crowdtest.domain.models.actor import Actor
from crowdtest.domain.models.events import ParticipantLeft, RealtimeEvent

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Registration:
    connection: IConnection
    actor: Actor
    rooms: Set[str] = field(default_factory=set)
    send_lock: threading.RLock = field(default_factory=threading.RLock)
    closed: bool = False


@dataclass(eq=False)
class _ChannelLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class ConnectionRegistry:
    """
    Registry of live connections with per-channel ordered fan-out.

    Constructed explicitly and injected; there is no module-level instance.

    Usage:
        registry = ConnectionRegistry(access_policy=RoomAccessPolicy(uow_factory))
        registry.register(actor, connection)
        registry.join_test_room(connection, test_id)
        registry.publish_to_test_room(test_id, event)
        registry.unregister(connection)
    """

    def __init__(self, access_policy: Optional[IRoomAccessPolicy] = None):
        self._access_policy = access_policy
        self._lock = threading.Lock()
        self._registrations: Dict[str, _Registration] = {}
        self._actors: Dict[str, Set[str]] = defaultdict(set)
        self._rooms: Dict[str, Set[str]] = defaultdict(set)
        self._channel_locks: Dict[str, _ChannelLock] = {}

    # ═══════════════════════════════════════════════════════════════════════════
    # Registration
    # ═══════════════════════════════════════════════════════════════════════════

    def register(self, actor: Actor, connection: IConnection) -> None:
        """Register a live connection for an actor. Re-registering is a no-op."""
        with self._lock:
            if connection.connection_id in self._registrations:
                return
            self._registrations[connection.connection_id] = _Registration(connection, actor)
            self._actors[actor.actor_id].add(connection.connection_id)
        logger.debug(f"Registered connection {connection.connection_id} for {actor.actor_id}")

    def unregister(self, connection: IConnection) -> bool:
        """
        Remove a connection from its actor and every room.

        Idempotent; call it on every close path. When it returns, the
        connection will receive no further events. Rooms the connection
        was in are told with ParticipantLeft.

        Returns:
            True if the connection was registered
        """
        registration = self._remove(connection.connection_id)
        if registration is None:
            return False

        # Waits for an in-flight send to this connection to finish
        with registration.send_lock:
            registration.closed = True

        logger.debug(
            f"Unregistered connection {connection.connection_id} "
            f"for {registration.actor.actor_id}"
        )
        for test_id in sorted(registration.rooms):
            self.publish_to_test_room(
                test_id,
                ParticipantLeft(test_id=test_id, actor_id=registration.actor.actor_id),
            )
        return True

    def _remove(self, connection_id: str) -> Optional[_Registration]:
        with self._lock:
            registration = self._registrations.pop(connection_id, None)
            if registration is None:
                return None
            actor_id = registration.actor.actor_id
            self._actors[actor_id].discard(connection_id)
            if not self._actors[actor_id]:
                del self._actors[actor_id]
            for test_id in registration.rooms:
                self._rooms[test_id].discard(connection_id)
                if not self._rooms[test_id]:
                    del self._rooms[test_id]
            return registration

    # ═══════════════════════════════════════════════════════════════════════════
    # Rooms
    # ═══════════════════════════════════════════════════════════════════════════

    def join_test_room(self, connection: IConnection, test_id: str) -> None:
        """
        Add a connection to a test's room after an access check.

        Raises:
            NotFoundError: If the connection is not registered
            AccessDeniedError: If the actor may not observe the test
        """
        with self._lock:
            registration = self._registrations.get(connection.connection_id)
        if registration is None:
            raise NotFoundError("Connection", connection.connection_id)

        if self._access_policy is not None and not self._access_policy.can_observe(
            registration.actor, test_id
        ):
            logger.info(f"Denied room {test_id} to {registration.actor.actor_id}")
            raise AccessDeniedError()

        with self._lock:
            if self._registrations.get(connection.connection_id) is not registration:
                # Unregistered while the access check ran
                raise NotFoundError("Connection", connection.connection_id)
            registration.rooms.add(test_id)
            self._rooms[test_id].add(connection.connection_id)
        logger.debug(f"Connection {connection.connection_id} joined room {test_id}")

    def leave_test_room(self, connection: IConnection, test_id: str) -> bool:
        """Remove a connection from one room. Returns False if it was not in it."""
        with self._lock:
            registration = self._registrations.get(connection.connection_id)
            if registration is None or test_id not in registration.rooms:
                return False
            registration.rooms.discard(test_id)
            self._rooms[test_id].discard(connection.connection_id)
            if not self._rooms[test_id]:
                del self._rooms[test_id]
        return True

    # ═══════════════════════════════════════════════════════════════════════════
    # Publishing
    # ═══════════════════════════════════════════════════════════════════════════

    def publish_to_actor(self, actor_id: str, event: RealtimeEvent) -> int:
        """
        Deliver an event to every connection of an actor.

        Dropped when the actor has no live connection; durable delivery is
        the notification sink's job.

        Returns:
            Number of connections the event was delivered to
        """
        delivered = self._publish(f"actor:{actor_id}", lambda: self._actors.get(actor_id, ()), event)
        if delivered == 0:
            logger.debug(f"No live connection for {actor_id}, dropped {event.kind}")
        return delivered

    def publish_to_test_room(self, test_id: str, event: RealtimeEvent) -> int:
        """
        Deliver an event to every connection in a test's room.

        Returns:
            Number of connections the event was delivered to
        """
        return self._publish(f"room:{test_id}", lambda: self._rooms.get(test_id, ()), event)

    @contextmanager
    def _channel(self, channel: str) -> Iterator[None]:
        with self._lock:
            entry = self._channel_locks.get(channel)
            if entry is None:
                entry = self._channel_locks[channel] = _ChannelLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._channel_locks[channel]

    def _publish(self, channel: str, members, event: RealtimeEvent) -> int:
        delivered = 0
        dead: List[_Registration] = []

        with self._channel(channel):
            with self._lock:
                targets = [
                    self._registrations[cid] for cid in sorted(members())
                    if cid in self._registrations
                ]
            for registration in targets:
                if self._deliver(registration, event):
                    delivered += 1
                elif not registration.closed:
                    dead.append(registration)

        for registration in dead:
            self.unregister(registration.connection)
        return delivered

    def _deliver(self, registration: _Registration, event: RealtimeEvent) -> bool:
        with registration.send_lock:
            if registration.closed:
                return False
            try:
                registration.connection.send(event)
                return True
            except Exception as e:
                logger.warning(
                    f"Send to connection {registration.connection.connection_id} failed, "
                    f"dropping it: {e}"
                )
                return False

    # ═══════════════════════════════════════════════════════════════════════════
    # Introspection
    # ═══════════════════════════════════════════════════════════════════════════

    def connected_actor_count(self) -> int:
        with self._lock:
            return len(self._actors)

    def connection_count(self) -> int:
        with self._lock:
            return len(self._registrations)

    def room_size(self, test_id: str) -> int:
        with self._lock:
            return len(self._rooms.get(test_id, ()))

    def connections_for(self, actor_id: str) -> List[str]:
        with self._lock:
            return sorted(self._actors.get(actor_id, ()))

    def rooms_for(self, connection: IConnection) -> List[str]:
        with self._lock:
            registration = self._registrations.get(connection.connection_id)
            return sorted(registration.rooms) if registration else []

    def is_connected(self, actor_id: str) -> bool:
        with self._lock:
            return actor_id in self._actors

    def channel_lock_count(self) -> int:
        """Channel locks currently held or awaited by a publish."""
        with self._lock:
            return len(self._channel_locks)
