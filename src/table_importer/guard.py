# src/table_importer/guard.py

import logging
import time
from typing import Callable, Optional

from .state import CheckpointStore

logger = logging.getLogger(__name__)

_FREE = {"held": False, "holder": None, "heartbeat_at": None}


class RunGuard:
    """
    Persisted flag that keeps two import chains off the same table.

    The record stored under ``key`` is ``{"held": bool, "holder": str,
    "heartbeat_at": float}``. A guard whose heartbeat is older than ``ttl``
    seconds counts as free, so a crashed chain does not block the table forever.
    """

    def __init__(
        self,
        store: CheckpointStore,
        key: str,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.key = key
        self.ttl = ttl
        self.clock = clock

    @staticmethod
    def _as_record(stored: Optional[dict]) -> dict:
        return dict(stored or _FREE)

    def _record(self) -> dict:
        return self._as_record(self.store.get(self.key))

    def _is_stale(self, record: dict) -> bool:
        if self.ttl is None or record.get("heartbeat_at") is None:
            return False
        return self.clock() - record["heartbeat_at"] > self.ttl

    def is_held(self) -> bool:
        record = self._record()
        return bool(record.get("held")) and not self._is_stale(record)

    def holder(self) -> Optional[str]:
        record = self._record()
        return record.get("holder") if record.get("held") else None

    # acquire, refresh and release decide and write inside one locked store
    # update, so two triggers cannot both see the guard free.

    def acquire(self, holder: str) -> bool:
        """Take the guard for ``holder``. Returns False if another live run holds it."""
        def take(stored):
            record = self._as_record(stored)
            if record["held"] and record["holder"] != holder:
                if not self._is_stale(record):
                    return stored
                logger.warning(
                    f"Run guard '{self.key}' held by {record['holder']} looks stale "
                    f"(no heartbeat for more than {self.ttl}s). Taking it over."
                )
            return {"held": True, "holder": holder, "heartbeat_at": self.clock()}

        record = self._as_record(self.store.update(self.key, take))
        return record["held"] and record["holder"] == holder

    def refresh(self, holder: str) -> bool:
        """Bump the heartbeat if ``holder`` still owns the guard."""
        def bump(stored):
            record = self._as_record(stored)
            if not record["held"] or record["holder"] != holder:
                return stored
            record["heartbeat_at"] = self.clock()
            return record

        record = self._as_record(self.store.update(self.key, bump))
        return record["held"] and record["holder"] == holder

    def release(self) -> None:
        """Free the guard. Releasing a guard that is not held is a no-op."""
        def free(stored):
            if not self._as_record(stored)["held"]:
                return stored
            return dict(_FREE)

        self.store.update(self.key, free)
        logger.debug(f"Run guard '{self.key}' released")
