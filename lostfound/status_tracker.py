"""
In-process registry of ingestion progress, keyed by item id.
Clients poll it until their upload reaches a terminal state.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .models import IngestionStatus, StatusState, utcnow

logger = logging.getLogger(__name__)

_ALLOWED = {
    StatusState.PENDING: {StatusState.PROCESSING, StatusState.FAILED},
    StatusState.PROCESSING: {StatusState.INDEXED, StatusState.FAILED},
    StatusState.INDEXED: set(),
    StatusState.FAILED: set(),
}


class StatusTracker:
    """
    Tracks ingestion status for in-flight and recently finished uploads.

    Entries are removed by ``prune`` once they have been terminal for
    ``grace_seconds``, have been polled more than ``max_attempts`` times, or
    have existed longer than ``max_lifetime_seconds``.
    """

    def __init__(self, grace_seconds: float = 300, max_attempts: int = 150,
                 max_lifetime_seconds: float = 3600, clock=utcnow):
        self.grace = timedelta(seconds=grace_seconds)
        self.max_attempts = max_attempts
        self.max_lifetime = timedelta(seconds=max_lifetime_seconds)
        self._clock = clock
        self._entries: Dict[str, IngestionStatus] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def start(self, item_id: str, message: str = "Queued for processing") -> IngestionStatus:
        now = self._clock()
        with self._lock:
            if item_id in self._entries:
                raise ValidationError(f"Ingestion {item_id} already tracked")
            status = IngestionStatus(item_id=item_id, message=message, created_at=now, updated_at=now)
            self._entries[item_id] = status
            return replace(status)

    def get(self, item_id: str) -> IngestionStatus:
        """Poll an entry. Counts as one attempt."""
        with self._lock:
            status = self._entries.get(item_id)
            if status is None:
                raise NotFoundError(f"No ingestion tracked for {item_id}")
            status.attempt_count += 1
            status.last_checked_at = self._clock()
            return replace(status)

    def peek(self, item_id: str) -> Optional[IngestionStatus]:
        """Read an entry without touching the poll bookkeeping."""
        with self._lock:
            status = self._entries.get(item_id)
            return replace(status) if status else None

    def mark(self, item_id: str, state: StatusState, message: str = "") -> IngestionStatus:
        state = StatusState(state)
        with self._lock:
            status = self._entries.get(item_id)
            if status is None:
                raise NotFoundError(f"No ingestion tracked for {item_id}")
            if state != status.state and state not in _ALLOWED[status.state]:
                raise ValidationError(
                    f"Illegal status transition {status.state.value} -> {state.value} for {item_id}"
                )
            status.state = state
            status.message = message
            status.updated_at = self._clock()
            return replace(status)

    def discard(self, item_id: str) -> bool:
        with self._lock:
            return self._entries.pop(item_id, None) is not None

    def _expired(self, status: IngestionStatus, now: datetime) -> bool:
        if status.state.is_terminal and now - status.updated_at >= self.grace:
            return True
        if status.attempt_count > self.max_attempts:
            return True
        return now - status.created_at >= self.max_lifetime

    def prune(self, now: Optional[datetime] = None) -> List[str]:
        """Drop stale entries and return their ids."""
        now = now or self._clock()
        with self._lock:
            stale = [item_id for item_id, status in self._entries.items() if self._expired(status, now)]
            for item_id in stale:
                del self._entries[item_id]
        if stale:
            logger.info(f"Pruned {len(stale)} ingestion status entries")
        return stale
