"""
Broadcast fan-out tests.

Test Coverage:
- Origin exclusion (and echo mode)
- A full queue drops the event for that session only
- Broken sessions are removed on the next delivery
- Per-session FIFO order
- Single-session notify for rejections
"""

import pytest

from securerelay.server.fanout import BroadcastFanout, Session, SessionRegistry


def chat(seqno: int, sender: str = "alice") -> dict:
    return {"type": "CHAT", "sender": sender, "message": f"ct-{seqno}", "seqno": seqno, "timestamp": 0}


def drain(session: Session) -> list:
    events = []
    while not session.outbound_queue.empty():
        events.append(session.outbound_queue.get_nowait())
    return events


@pytest.fixture
def fanout():
    return BroadcastFanout()


@pytest.fixture
def sessions(fanout):
    created = {name: Session(name, queue_size=8) for name in ("alice", "bob", "carol")}
    for session in created.values():
        fanout.connect(session)
    return created


class TestDelivery:
    def test_excludes_origin(self, fanout, sessions):
        delivered = fanout.deliver(chat(1), origin_session_id="alice")

        assert delivered == 2
        assert drain(sessions["alice"]) == []
        assert drain(sessions["bob"]) == [chat(1)]
        assert drain(sessions["carol"]) == [chat(1)]

    def test_echo_to_origin(self, sessions):
        fanout = BroadcastFanout(exclude_origin=False)
        fanout.connect(Session("dave"))
        assert fanout.deliver(chat(1), origin_session_id="dave") == 1

    def test_fifo_per_session(self, fanout, sessions):
        for seqno in range(1, 6):
            fanout.deliver(chat(seqno), origin_session_id="alice")
        assert [event["seqno"] for event in drain(sessions["bob"])] == [1, 2, 3, 4, 5]

    def test_full_queue_drops_for_that_session_only(self, fanout, sessions):
        slow = Session("slow", queue_size=1)
        fanout.connect(slow)

        fanout.deliver(chat(1), origin_session_id="alice")
        delivered = fanout.deliver(chat(2), origin_session_id="alice")

        assert delivered == 2
        assert drain(slow) == [chat(1)]
        assert fanout.is_connected("slow")
        assert [event["seqno"] for event in drain(sessions["bob"])] == [1, 2]

    def test_broken_session_removed(self, fanout, sessions):
        sessions["carol"].mark_broken()

        delivered = fanout.deliver(chat(1), origin_session_id="alice")

        assert delivered == 1
        assert not fanout.is_connected("carol")
        assert drain(sessions["bob"]) == [chat(1)]

    def test_notify_single_session(self, fanout, sessions):
        event = {"type": "ENCRYPTION_FAILED", "error": "PAYLOAD_TOO_LARGE", "seqno": 1, "timestamp": 0}

        assert fanout.notify("alice", event)
        assert drain(sessions["alice"]) == [event]
        assert drain(sessions["bob"]) == []
        assert not fanout.notify("nobody", event)

    def test_disconnect_marks_broken(self, fanout, sessions):
        session = fanout.disconnect("bob")

        assert session is sessions["bob"]
        assert session.is_broken
        assert not session.offer(chat(1))
        assert fanout.deliver(chat(1), origin_session_id="alice") == 1


class TestSessionRegistry:
    def test_duplicate_id_rejected(self):
        registry = SessionRegistry()
        registry.add(Session("alice"))
        with pytest.raises(ValueError):
            registry.add(Session("alice"))

    def test_discard_only_removes_same_object(self):
        registry = SessionRegistry()
        old = Session("alice")
        registry.add(old)
        registry.remove("alice")
        new = Session("alice")
        registry.add(new)

        assert not registry.discard(old)
        assert registry.get("alice") is new

    def test_snapshot_is_a_copy(self):
        registry = SessionRegistry()
        registry.add(Session("alice"))
        snapshot = registry.snapshot()
        registry.remove("alice")

        assert len(snapshot) == 1
        assert len(registry) == 0
