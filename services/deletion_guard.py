"""
Deletion guard - short-lived denylist of sources deleted while work was in flight
"""

import logging
import threading
import time

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 30


class DeletionGuard:
    """
    Expiring map of source_id -> deadline.

    Sync and matching writers call is_deleted() immediately before committing
    and discard their write when it returns True. Entries expire after the
    window; an operation that outlives the window can still land a stale write.
    """

    def __init__(self, window_seconds=DEFAULT_WINDOW_SECONDS, clock=time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._deadlines = {}
        self._lock = threading.Lock()

    def mark(self, source_id, window_seconds=None):
        """Mark a source as deleted for the guard window"""
        window = self.window_seconds if window_seconds is None else window_seconds
        with self._lock:
            self._deadlines[source_id] = self._clock() + window
        logger.info(f"Source {source_id} marked deleted for {window}s")

    def is_deleted(self, source_id):
        with self._lock:
            deadline = self._deadlines.get(source_id)
            if deadline is None:
                return False
            if self._clock() >= deadline:
                del self._deadlines[source_id]
                return False
            return True

    def purge_expired(self):
        """Drop expired entries, returns how many were removed"""
        now = self._clock()
        with self._lock:
            expired = [sid for sid, deadline in self._deadlines.items() if now >= deadline]
            for sid in expired:
                del self._deadlines[sid]
        return len(expired)

    def clear(self):
        with self._lock:
            self._deadlines.clear()

    def __len__(self):
        self.purge_expired()
        with self._lock:
            return len(self._deadlines)


# Process-wide guard shared by the sync orchestrator and the enrichment engine
deletion_guard = DeletionGuard()
