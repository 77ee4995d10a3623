"""Per-sender message rate limiting"""

import logging
import threading
from collections import defaultdict
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Counts messages per sender and rejects senders past the limit.

    Counters are not a sliding window: reset() clears every sender at once and
    is called on a fixed period by the observer. Blocked senders are rejected
    before they are counted.
    """

    def __init__(self, limit: int = 4000, blocked: Optional[Iterable[int]] = None) -> None:
        self.limit = limit
        self.blocked = frozenset(blocked or ())
        self.counters = defaultdict(int)  # sender id -> messages this period
        self.lock = threading.Lock()

    def accept(self, sender_id: int) -> bool:
        """Check whether a message from this sender should be decoded."""
        if sender_id in self.blocked:
            return False
        with self.lock:
            self.counters[sender_id] += 1
            count = self.counters[sender_id]
        if count > self.limit:
            if count % 100 == 0:
                logger.info(f'Node {sender_id} rate limited ({count} messages)')
            return False
        return True

    def count(self, sender_id: int) -> int:
        with self.lock:
            return self.counters.get(sender_id, 0)

    def reset(self) -> None:
        """Clear all message counters."""
        with self.lock:
            self.counters.clear()
        logger.info('Cleared message counters')
