"""
Transport Gateway: encryption dispatch with per-sender ordering.

Message lifecycle:
    RECEIVED -> ENCRYPTING -> ENCRYPTED -> BROADCASTING -> DELIVERED
    RECEIVED -> ENCRYPTING -> REJECTED                  (any encryption error)
    RECEIVED -> ENCRYPTING -> ... -> DISCARDED          (sender disconnected)

The gateway stamps every inbound message with a per-sender sequence number
and hands the encryption call to a worker pool, so a slow call never stalls
the reader of any session. Finished messages are buffered per sender and
released to the fan-out strictly in sequence order: message n+1 waits for
message n even if its encryption completed first.

Rejected messages are reported to their sender only and are never broadcast
or retried here; retrying is the Encryption Client's job.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Union

from securerelay.common.errors import ErrorKind, RelayError, ServiceUnavailable
from securerelay.common.protocol import (
    ChatBroadcastEvent,
    ChatMessage,
    EncryptionEnvelope,
    EncryptionFailedEvent,
    now_ms,
)
from securerelay.server.fanout import BroadcastFanout


logger = logging.getLogger(__name__)
security_logger = logging.getLogger("securerelay.security")


class MessageState(Enum):
    RECEIVED = "received"
    ENCRYPTING = "encrypting"
    ENCRYPTED = "encrypted"
    BROADCASTING = "broadcasting"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    DISCARDED = "discarded"

    def __str__(self) -> str:
        return self.value


@dataclass
class _Outcome:
    message: ChatMessage
    envelope: Optional[EncryptionEnvelope] = None
    error: Optional[RelayError] = None


class _SenderStream:
    """Sequence numbering and reorder buffer for one sender."""

    def __init__(self, sender_id: str):
        self.sender_id = sender_id
        self.lock = threading.Lock()
        self.next_sequence = 1
        self.next_release = 1
        self.pending: Dict[int, _Outcome] = {}
        self.in_flight = 0
        self.closed = False


class TransportGateway:
    """
    Accepts plaintext from sessions, encrypts, and broadcasts in order.

    Args:
        encryption_client: Object with encrypt_message(plaintext, associated_data)
        fanout: BroadcastFanout receiving encrypted events
        max_workers: Size of the encryption worker pool
        state_listener: Optional callback(message, state) for every transition
    """

    def __init__(
        self,
        encryption_client,
        fanout: BroadcastFanout,
        max_workers: int = 8,
        state_listener: Optional[Callable[[ChatMessage, MessageState], None]] = None,
    ):
        self._client = encryption_client
        self._fanout = fanout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="encrypt")
        self._state_listener = state_listener

        self._streams_lock = threading.Lock()
        self._streams: Dict[str, _SenderStream] = {}
        self._closed = False

        self._idle = threading.Condition()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        """Messages accepted but not yet through encryption."""
        with self._idle:
            return self._in_flight

    @property
    def active_senders(self) -> int:
        with self._streams_lock:
            return len(self._streams)

    def submit(self, sender_id: str, plaintext: Union[str, bytes]) -> ChatMessage:
        """
        Accept a message from a session and dispatch its encryption.

        Returns immediately; the outcome is delivered through the fan-out.

        Args:
            sender_id: Connection id of the sending session
            plaintext: Message text or bytes

        Returns:
            The ChatMessage with its assigned sequence number

        Raises:
            RuntimeError: If the gateway has been shut down
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        with self._streams_lock:
            if self._closed:
                raise RuntimeError("Transport gateway is shut down")
            stream = self._streams.get(sender_id)
            if stream is None or stream.closed:
                stream = _SenderStream(sender_id)
                self._streams[sender_id] = stream

        with stream.lock:
            sequence_no = stream.next_sequence
            stream.next_sequence += 1
            stream.in_flight += 1

        message = ChatMessage(sender_id=sender_id, sequence_no=sequence_no, plaintext=plaintext, timestamp=now_ms())
        self._transition(message, MessageState.RECEIVED)

        with self._idle:
            self._in_flight += 1
        try:
            self._executor.submit(self._process, stream, message)
        except RuntimeError:
            # shutdown() won the race after the closed check
            with stream.lock:
                stream.in_flight -= 1
            with self._idle:
                self._in_flight -= 1
                self._idle.notify_all()
            raise RuntimeError("Transport gateway is shut down") from None
        return message

    def close_sender(self, sender_id: str) -> None:
        """
        Forget a disconnected sender.

        Messages still encrypting complete their call, then are discarded
        without broadcast.
        """
        with self._streams_lock:
            stream = self._streams.get(sender_id)
        if stream is None:
            return

        with stream.lock:
            stream.closed = True
            finished = stream.in_flight == 0
        if finished:
            self._forget(stream)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every accepted message has been released.

        Returns: False if the timeout expired first
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting messages, let in-flight ones finish, stop workers."""
        with self._streams_lock:
            self._closed = True
        if not self.drain(timeout):
            logger.warning(f"Gateway shutdown with {self.in_flight} message(s) still encrypting")
        self._executor.shutdown(wait=False)

    def _process(self, stream: _SenderStream, message: ChatMessage) -> None:
        outcome = _Outcome(message)
        try:
            self._transition(message, MessageState.ENCRYPTING)
            try:
                outcome.envelope = self._client.encrypt_message(
                    message.plaintext, associated_data=message.sender_id.encode("utf-8")
                )
                self._transition(message, MessageState.ENCRYPTED)
            except RelayError as e:
                outcome.error = e
            except Exception as e:
                logger.error(f"[{message.sender_id}] Unexpected encryption failure: {e}", exc_info=True)
                outcome.error = ServiceUnavailable(f"Unexpected encryption failure: {e}")

            self._complete(stream, outcome)
        finally:
            with self._idle:
                self._in_flight -= 1
                self._idle.notify_all()

    def _complete(self, stream: _SenderStream, outcome: _Outcome) -> None:
        with stream.lock:
            stream.pending[outcome.message.sequence_no] = outcome
            while stream.next_release in stream.pending:
                ready = stream.pending.pop(stream.next_release)
                stream.next_release += 1
                stream.in_flight -= 1
                try:
                    self._release(stream, ready)
                except Exception as e:
                    logger.error(
                        f"[{stream.sender_id}] Failed to release seqno={ready.message.sequence_no}: {e}",
                        exc_info=True,
                    )
            finished = stream.closed and stream.in_flight == 0

        if finished:
            self._forget(stream)

    def _release(self, stream: _SenderStream, outcome: _Outcome) -> None:
        # Caller holds stream.lock, which keeps hand-off to the fan-out in sequence order
        message = outcome.message

        if stream.closed or not self._fanout.is_connected(message.sender_id):
            self._transition(message, MessageState.DISCARDED)
            return

        if outcome.error is not None:
            self._reject(message, outcome.error)
            return

        self._transition(message, MessageState.BROADCASTING)
        event = ChatBroadcastEvent(
            sender=message.sender_id,
            message=outcome.envelope.encode(),
            timestamp=message.timestamp,
            seqno=message.sequence_no,
        )
        recipients = self._fanout.deliver(event.to_dict(), origin_session_id=message.sender_id)
        self._transition(message, MessageState.DELIVERED)
        logger.debug(f"[{message.sender_id}] seqno={message.sequence_no} delivered to {recipients} session(s)")

    def _reject(self, message: ChatMessage, error: RelayError) -> None:
        self._transition(message, MessageState.REJECTED)

        if error.kind == ErrorKind.AUTHENTICATION_FAILURE:
            security_logger.warning(
                f"SECURITY: [{message.sender_id}] seqno={message.sequence_no} rejected: {error.message}"
            )
        else:
            logger.warning(
                f"[{message.sender_id}] seqno={message.sequence_no} rejected: {error.kind.value}: {error.message}"
            )

        event = EncryptionFailedEvent(error=error.kind.value, seqno=message.sequence_no, timestamp=now_ms())
        self._fanout.notify(message.sender_id, event.to_dict())

    def _forget(self, stream: _SenderStream) -> None:
        with self._streams_lock:
            if self._streams.get(stream.sender_id) is stream:
                del self._streams[stream.sender_id]

    def _transition(self, message: ChatMessage, state: MessageState) -> None:
        logger.debug(f"[{message.sender_id}] seqno={message.sequence_no} -> {state.value}")
        if self._state_listener is not None:
            self._state_listener(message, state)
