"""
delivery_queue.py — FIFO holding area for rate-limited requests.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, List, Optional

from mailrelay.app.dispatch.models import EmailRequest


class DeliveryQueue:
    """Thread-safe in-memory FIFO. No priorities, no reordering."""

    def __init__(self) -> None:
        self._items: Deque[EmailRequest] = deque()
        self._lock = threading.Lock()

    def enqueue(self, request: EmailRequest) -> None:
        """Append to the tail."""
        with self._lock:
            self._items.append(request)

    def dequeue(self) -> Optional[EmailRequest]:
        """Pop from the head, or None when empty."""
        with self._lock:
            if not self._items:
                return None
            return self._items.popleft()

    def is_empty(self) -> bool:
        with self._lock:
            return not self._items

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def __len__(self) -> int:
        return self.size()

    def snapshot(self) -> List[EmailRequest]:
        """Copy of the pending requests, head first."""
        with self._lock:
            return list(self._items)
