"""
Session registry and broadcast fan-out.

Sessions own a bounded outbound queue. Delivery only ever enqueues
(put_nowait), so a slow or dead consumer can never block delivery to the
others: a full queue drops that one message for that one session, and a
broken session is removed from the registry.

The registry lock guards membership changes and snapshots only; it is never
held while the fan-out loop runs.
"""

import logging
import queue
import threading
from typing import Dict, List, Optional


logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class Session:
    """
    One connected client as seen by the fan-out.

    Fields:
        connection_id: Unique id of the connection (also the sender id)
        outbound_queue: Bounded queue of event dictionaries, drained by the
            connection's writer thread
    """

    def __init__(self, connection_id: str, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.connection_id = connection_id
        self.outbound_queue: "queue.Queue[dict]" = queue.Queue(maxsize=queue_size)
        self._broken = threading.Event()

    @property
    def is_broken(self) -> bool:
        return self._broken.is_set()

    def mark_broken(self) -> None:
        """Flag the connection as dead; the next delivery removes it."""
        self._broken.set()

    def offer(self, event: dict) -> bool:
        """
        Enqueue an event without blocking.

        Returns: False if the session is broken or its queue is full
        """
        if self.is_broken:
            return False
        try:
            self.outbound_queue.put_nowait(event)
            return True
        except queue.Full:
            return False

    def __repr__(self) -> str:
        return f"Session({self.connection_id!r}, queued={self.outbound_queue.qsize()}, broken={self.is_broken})"


class SessionRegistry:
    """Concurrency-safe map of connection id to Session."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def add(self, session: Session) -> None:
        """
        Raises: ValueError if the connection id is already registered
        """
        with self._lock:
            if session.connection_id in self._sessions:
                raise ValueError(f"Session already registered: {session.connection_id}")
            self._sessions[session.connection_id] = session

    def remove(self, connection_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(connection_id, None)

    def discard(self, session: Session) -> bool:
        """Remove this exact session object, if it is still registered."""
        with self._lock:
            if self._sessions.get(session.connection_id) is session:
                del self._sessions[session.connection_id]
                return True
            return False

    def get(self, connection_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(connection_id)

    def __contains__(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._sessions

    def snapshot(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class BroadcastFanout:
    """
    Delivers encrypted events to registered sessions.

    Args:
        registry: Session registry (a fresh one by default)
        exclude_origin: Skip the origin session on broadcast
    """

    def __init__(self, registry: Optional[SessionRegistry] = None, exclude_origin: bool = True):
        self.registry = registry if registry is not None else SessionRegistry()
        self.exclude_origin = exclude_origin

    def connect(self, session: Session) -> None:
        self.registry.add(session)
        logger.info(f"[{session.connection_id}] Session registered ({len(self.registry)} connected)")

    def disconnect(self, connection_id: str) -> Optional[Session]:
        session = self.registry.remove(connection_id)
        if session is not None:
            session.mark_broken()
            logger.info(f"[{connection_id}] Session unregistered ({len(self.registry)} connected)")
        return session

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self.registry

    def deliver(self, event: dict, origin_session_id: Optional[str]) -> int:
        """
        Enqueue an event for every registered session (except the origin).

        Args:
            event: Event dictionary (already encrypted content only)
            origin_session_id: Session the message came from

        Returns:
            Number of sessions the event was enqueued for
        """
        delivered = 0
        for session in self.registry.snapshot():
            if self.exclude_origin and session.connection_id == origin_session_id:
                continue
            if self._offer(session, event):
                delivered += 1
        return delivered

    def notify(self, connection_id: str, event: dict) -> bool:
        """Enqueue an event for a single session (e.g. a rejection)."""
        session = self.registry.get(connection_id)
        if session is None:
            return False
        return self._offer(session, event)

    def _offer(self, session: Session, event: dict) -> bool:
        if session.offer(event):
            return True
        if session.is_broken:
            if self.registry.discard(session):
                logger.warning(f"[{session.connection_id}] Broken session removed from registry")
        else:
            logger.warning(
                f"[{session.connection_id}] Outbound queue full, dropped {event.get('type')} event"
            )
        return False
