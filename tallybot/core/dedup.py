import time
from collections.abc import Callable


class MessageDeduplicator:
    """Remembers inbound message ids for a while so redeliveries are ignored."""

    def __init__(self, ttl_seconds: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}

    def is_duplicate(self, message_id: str | None) -> bool:
        if not message_id:
            return False
        if message_id in self._seen:
            return True
        # setdefault keeps the first timestamp if two deliveries race.
        self._seen.setdefault(message_id, self._clock())
        return False

    def sweep(self) -> int:
        cutoff = self._clock() - self.ttl_seconds
        stale = [mid for mid, ts in list(self._seen.items()) if ts < cutoff]
        for mid in stale:
            self._seen.pop(mid, None)
        return len(stale)
