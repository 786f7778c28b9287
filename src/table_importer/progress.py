# src/table_importer/progress.py

import logging
from abc import ABC, abstractmethod
from datetime import datetime, UTC
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .config import ImportConfig, ImportMechanism, ProgressStrategy
from .connectors.postgresql import QueryExecutor
from .errors import CommitError, QueryError
from .state import CheckpointStore

logger = logging.getLogger(__name__)

Statement = Tuple[str, Tuple[Any, ...]]


class ProgressTracker(ABC):
    """
    Answers "how much is left" and "what comes next" for the source table.

    In historical mode the first count is stored as a ceiling (snapshot) so
    the import ends once that many rows were handled, even if the table
    keeps growing.
    """

    uses_cursor = False

    def __init__(self, executor: QueryExecutor, config: ImportConfig, store: CheckpointStore):
        self.executor = executor
        self.config = config
        self.store = store
        self.table = config.source.table
        self.log_table = config.source.log_table
        self.ordering_column = config.source.ordering_column
        self.id_column = config.columns.id_column

    @property
    def historical(self) -> bool:
        return self.config.import_mechanism == ImportMechanism.HISTORICAL

    def _count(self, statement: Statement) -> int:
        query, parameters = statement
        rows = self.executor.execute(query, parameters)
        if not rows:
            raise QueryError(f"Count query returned no rows: {query}")
        return int(next(iter(rows[0].values())))

    # --- snapshot -------------------------------------------------------------

    def snapshot(self) -> Optional[Dict[str, Any]]:
        return self.store.get(self.config.snapshot_key)

    def _ensure_snapshot(self, ceiling: int, take: bool = True) -> Optional[Dict[str, Any]]:
        snap = self.snapshot()
        if snap is None and take:
            snap = {"ceiling": ceiling, "handled": 0, "taken_at": datetime.now(UTC).isoformat()}
            self.store.set(self.config.snapshot_key, snap)
            logger.info(f"Historical import of {self.table}: snapshot taken, {ceiling} row(s) to import")
        return snap

    def _count_handled(self, count: int) -> None:
        def bump(snap):
            if snap is None:
                return snap
            return {**snap, "handled": snap["handled"] + count}

        if self.historical and count:
            self.store.update(self.config.snapshot_key, bump)

    def reset_snapshot(self) -> bool:
        return self.store.delete(self.config.snapshot_key)

    def reset_offset(self) -> bool:
        return self.store.delete(self.config.offset_key)

    def reset_rejected(self) -> bool:
        return self.store.delete(self.config.rejected_key)

    def rejected_ids(self) -> List[str]:
        return self.store.get(self.config.rejected_key, [])

    # --- strategy -------------------------------------------------------------

    def current_offset(self, payload_offset: Optional[int]) -> Optional[int]:
        """Offset to continue from, or None for strategies without a cursor."""
        return None

    @abstractmethod
    def remaining(self, offset: Optional[int], take_snapshot: bool = True) -> int:
        """
        Rows still to import. Never negative. Raises QueryError.

        With ``take_snapshot=False`` a missing historical snapshot is not created.
        """

    @abstractmethod
    def fetch_batch(self, limit: int, offset: Optional[int]) -> List[Dict[str, Any]]:
        """Next rows in ordering-column order. Raises QueryError."""

    @abstractmethod
    def record_progress(
        self,
        offset: Optional[int],
        fetched: int,
        committed: int,
        rejected_ids: Sequence[str] = (),
    ) -> Optional[int]:
        """
        Account for a handled batch. ``rejected_ids`` are rows that can never be
        exported (they failed to transform). Returns the new offset (None without a cursor).
        """

    @abstractmethod
    def abandon_range(self, offset: Optional[int], size: int) -> Optional[int]:
        """Give up on the range starting at ``offset``. Returns the offset to continue from."""


class AntiJoinTracker(ProgressTracker):
    """
    Remaining rows are the source rows with no entry in the export log.

    Rows that failed to transform never get a log entry, so their ids are kept
    in the checkpoint store and left out of counts and fetches. Otherwise they
    would come back on every fetch and crowd out the rows behind them.
    """

    def _remaining_rows(self) -> Statement:
        row_id = f"{self.table}.{self.id_column}"
        where = (
            f"{row_id} IS NOT NULL AND NOT EXISTS (SELECT 1 FROM {self.log_table} "
            f"WHERE {self.log_table}.event_id = {row_id})"
        )
        rejected = self.rejected_ids()
        if not rejected:
            return where, ()
        return f"{where} AND {row_id} NOT IN %s", (tuple(rejected),)

    def count_query(self) -> Statement:
        where, parameters = self._remaining_rows()
        return f"SELECT COUNT(1) AS count FROM {self.table} WHERE {where}", parameters

    def fetch_query(self, limit: int) -> Statement:
        where, parameters = self._remaining_rows()
        return (
            f"SELECT * FROM {self.table} WHERE {where} ORDER BY {self.ordering_column} LIMIT %s",
            parameters + (limit,),
        )

    def remaining(self, offset: Optional[int] = None, take_snapshot: bool = True) -> int:
        fresh = self._count(self.count_query())
        snap = self._ensure_snapshot(fresh, take_snapshot) if self.historical else None
        if snap is not None:
            fresh = min(fresh, snap["ceiling"] - snap["handled"])
        return max(fresh, 0)

    def fetch_batch(self, limit: int, offset: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.executor.execute(*self.fetch_query(limit))

    def record_progress(
        self,
        offset: Optional[int],
        fetched: int,
        committed: int,
        rejected_ids: Sequence[str] = (),
    ) -> Optional[int]:
        if rejected_ids:
            def add(current):
                known = list(current or [])
                return known + [i for i in rejected_ids if i not in known]

            self.store.update(self.config.rejected_key, add)
            logger.warning(f"{len(rejected_ids)} row(s) of {self.table} rejected; they will not be fetched again")
        self._count_handled(committed + len(rejected_ids))
        return None

    def abandon_range(self, offset: Optional[int], size: int) -> Optional[int]:
        # Nothing to skip: the rows stay out of the export log and come back
        # on the next run.
        logger.warning(f"Abandoned batch of {self.table}; its rows will be fetched again on the next run")
        return None


class OffsetTracker(ProgressTracker):
    """
    Remaining rows are derived from a numeric cursor into the ordered table.

    Rows inserted or deleted before the cursor between ticks shift the
    window: rows may then be skipped or delivered twice.
    """

    uses_cursor = True

    def count_query(self) -> Statement:
        return f"SELECT COUNT(1) AS count FROM {self.table}", ()

    def fetch_query(self, limit: int, offset: int) -> Statement:
        return (
            f"SELECT * FROM {self.table} ORDER BY {self.ordering_column} LIMIT %s OFFSET %s",
            (limit, offset),
        )

    def current_offset(self, payload_offset: Optional[int]) -> Optional[int]:
        if payload_offset is not None:
            return payload_offset
        return int(self.store.get(self.config.offset_key, 0))

    def remaining(self, offset: Optional[int], take_snapshot: bool = True) -> int:
        total = self._count(self.count_query())
        snap = self._ensure_snapshot(total, take_snapshot) if self.historical else None
        ceiling = snap["ceiling"] if snap is not None else total
        return max(ceiling - (offset or 0), 0)

    def fetch_batch(self, limit: int, offset: Optional[int]) -> List[Dict[str, Any]]:
        return self.executor.execute(*self.fetch_query(limit, offset or 0))

    def _move_to(self, offset: int) -> int:
        self.store.set(self.config.offset_key, offset)
        return offset

    def record_progress(
        self,
        offset: Optional[int],
        fetched: int,
        committed: int,
        rejected_ids: Sequence[str] = (),
    ) -> Optional[int]:
        # the cursor moves past rejected rows like any other
        return self._move_to((offset or 0) + fetched)

    def abandon_range(self, offset: Optional[int], size: int) -> Optional[int]:
        start = offset or 0
        logger.warning(f"Skipping rows {start}-{start + size} of {self.table}")
        return self._move_to(start + size)


TRACKERS = {
    ProgressStrategy.ANTI_JOIN: AntiJoinTracker,
    ProgressStrategy.OFFSET: OffsetTracker,
}


def create_tracker(executor: QueryExecutor, config: ImportConfig, store: CheckpointStore) -> ProgressTracker:
    return TRACKERS[config.strategy](executor, config, store)


class ExportLog:
    """Append-only record of delivered event ids."""

    def __init__(
        self,
        executor: QueryExecutor,
        log_table: str,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.executor = executor
        self.log_table = log_table
        self.clock = clock

    def commit(self, event_ids: Sequence[str]) -> int:
        """
        Append all ids with one multi-row INSERT.

        Raises:
            CommitError: The insert failed; none of the ids are recorded.
        """
        if not event_ids:
            return 0

        exported_at = self.clock()
        placeholders = ", ".join(["(%s, %s)"] * len(event_ids))
        parameters: List[Any] = []
        for event_id in event_ids:
            parameters.extend([event_id, exported_at])

        query = f"INSERT INTO {self.log_table} (event_id, exported_at) VALUES {placeholders}"
        try:
            self.executor.execute(query, parameters)
        except QueryError as e:
            raise CommitError(f"Could not record {len(event_ids)} exported event(s) in {self.log_table}: {e}") from e
        return len(event_ids)
