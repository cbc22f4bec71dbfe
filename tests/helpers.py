"""Test helpers shared by unit and integration tests."""

import time


MAX_PLAINTEXT = 64 * 1024


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def flip_bit(data: bytes, index: int = 0) -> bytes:
    """Return data with the lowest bit of data[index] inverted."""
    tampered = bytearray(data)
    tampered[index] ^= 0x01
    return bytes(tampered)
