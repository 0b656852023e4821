import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class StatsCache:
    """
    time-boxed cache of member stats payloads keyed by member id.
    never authoritative: ledger and validator writes invalidate the member.
    """

    def __init__(self, ttl_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[int, Tuple[float, Any]] = {}

    def get(self, member_id: int) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(member_id)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[member_id]
                return None
            return value

    def set(self, member_id: int, value: Any) -> None:
        with self._lock:
            self._entries[member_id] = (self._clock() + self.ttl_seconds, value)

    def invalidate(self, *member_ids: Optional[int]) -> None:
        with self._lock:
            for member_id in member_ids:
                if member_id is not None:
                    self._entries.pop(member_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
