"""Short-lived per-user batches of extracted transactions awaiting a yes/no."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

from errors import ConfirmationExpired, NotFound
from schemas import CandidateIn

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PendingState(str, Enum):
    awaiting_confirmation = "awaiting_confirmation"
    confirmed = "confirmed"
    cancelled = "cancelled"
    expired = "expired"


@dataclass
class PendingBatch:
    user_id: int
    candidates: list[CandidateIn]
    expires_at: float
    state: PendingState = PendingState.awaiting_confirmation


class PendingConfirmationStore:
    def __init__(
        self, ttl_secs: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_secs = ttl_secs
        self._clock = clock
        self._lock = threading.Lock()
        self._batches: dict[int, PendingBatch] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._batches)

    def put(self, user_id: int, candidates: list[CandidateIn]) -> PendingBatch:
        """Start a new batch; any earlier unanswered batch is replaced."""
        if not candidates:
            raise ValueError("Nothing to confirm")
        batch = PendingBatch(
            user_id=user_id,
            candidates=list(candidates),
            expires_at=self._clock() + self.ttl_secs,
        )
        with self._lock:
            self._batches[user_id] = batch
        return batch

    def _expire_if_stale(self, batch: PendingBatch) -> bool:
        if self._clock() >= batch.expires_at:
            batch.state = PendingState.expired
            self._batches.pop(batch.user_id, None)
            return True
        return False

    def get(self, user_id: int) -> Optional[PendingBatch]:
        with self._lock:
            batch = self._batches.get(user_id)
            if batch is None or self._expire_if_stale(batch):
                return None
            return batch

    def _claim(self, user_id: int) -> PendingBatch:
        with self._lock:
            batch = self._batches.get(user_id)
            if batch is None:
                raise NotFound("Nothing is awaiting confirmation")
            if self._expire_if_stale(batch):
                raise ConfirmationExpired("Session expired, please send it again")
            del self._batches[user_id]
            return batch

    def confirm(self, user_id: int, persist: Callable[[list[CandidateIn]], T]) -> T:
        """Hand the batch to ``persist``; it is confirmed only if that succeeds.

        The batch leaves the store before ``persist`` runs, so a second confirm
        for the same batch finds nothing to write.
        """
        batch = self._claim(user_id)
        try:
            result = persist(batch.candidates)
        except Exception:
            with self._lock:
                self._batches.setdefault(user_id, batch)
            raise
        batch.state = PendingState.confirmed
        logger.info(
            f"pending_confirmed: user={user_id} count={len(batch.candidates)}"
        )
        return result

    def cancel(self, user_id: int) -> PendingBatch:
        batch = self._claim(user_id)
        batch.state = PendingState.cancelled
        logger.info(f"pending_cancelled: user={user_id}")
        return batch

    def sweep(self) -> int:
        with self._lock:
            stale = [
                batch
                for batch in list(self._batches.values())
                if self._expire_if_stale(batch)
            ]
        if stale:
            logger.info(f"pending_swept: expired={len(stale)}")
        return len(stale)
