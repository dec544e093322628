"""
Transaction Id Generation

System transaction ids are 32 hex characters: a 48-bit millisecond
timestamp, a 16-bit sequence and 64 random bits. Ids compare
lexicographically in creation order, which is what the history indexes rely
on for most-recent-first listings.
"""

import threading
import time
import uuid
from datetime import datetime, timezone


class TransactionIdGenerator:
    """Globally unique, time-sortable id source (strictly increasing per process)"""

    MAX_SEQUENCE = 0xFFFF

    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._last_ms = 0
        self._sequence = 0

    def new_id(self) -> str:
        with self._lock:
            now_ms = int(self._clock() * 1000)
            if now_ms > self._last_ms:
                self._last_ms = now_ms
                self._sequence = 0
            else:
                # Clock stood still or went backwards
                self._sequence += 1
                if self._sequence > self.MAX_SEQUENCE:
                    self._last_ms += 1
                    self._sequence = 0
            ms, seq = self._last_ms, self._sequence
        return f"{ms:012x}{seq:04x}{uuid.uuid4().hex[:16]}"


def id_timestamp(transaction_id: str) -> datetime:
    """Creation time encoded in a system transaction id"""
    return datetime.fromtimestamp(int(transaction_id[:12], 16) / 1000, tz=timezone.utc)


_default_generator = TransactionIdGenerator()


def new_transaction_id() -> str:
    return _default_generator.new_id()
