"""Per-listener watermark and batch-token state."""

from __future__ import annotations

import itertools
import threading
import uuid

from mailflow.core.types import BatchToken, Watermark
from mailflow.observability.metrics import get_metrics_collector


class SessionState:
    """
    Watermark and batch counter shared by one sync session.

    Concurrent notification handlers and the polling loop all read and
    advance these values. A thread lock guards them so that callers
    outside the event loop, such as thread-pool callbacks, stay safe too.
    A watermark of 0 means no position has been observed yet.
    """

    def __init__(self, session_id: str | None = None, initial_watermark: Watermark = 0) -> None:
        if initial_watermark < 0:
            raise ValueError("watermark must be non-negative")
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._watermark = initial_watermark
        self._lock = threading.Lock()
        self._batch_counter = itertools.count(1)
        self._last_batch: BatchToken = 0
        self._metrics = get_metrics_collector()

    def current_watermark(self) -> Watermark:
        with self._lock:
            return self._watermark

    @property
    def has_watermark(self) -> bool:
        return self.current_watermark() > 0

    def update_watermark(self, candidate: Watermark) -> bool:
        """
        Advance the watermark if the candidate is strictly greater.

        Returns:
            True if the watermark moved.
        """
        with self._lock:
            if candidate <= self._watermark:
                return False
            self._watermark = candidate
        self._metrics.set_watermark(self.session_id, candidate)
        return True

    def next_batch_token(self) -> BatchToken:
        """Mint a new, strictly increasing batch token."""
        with self._lock:
            self._last_batch = next(self._batch_counter)
            return self._last_batch

    @property
    def last_batch_token(self) -> BatchToken:
        with self._lock:
            return self._last_batch
