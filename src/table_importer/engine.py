# src/table_importer/engine.py
"""
The batch import cycle.

One call to ``BatchImportCycle.run_tick`` handles one batch:

    guard -> count -> fetch -> transform -> deliver -> commit -> decide

and returns a ``TickResult`` whose ``next_run`` tells the host when to call
again and with which payload. Nothing is kept in memory between ticks:
state is rebuilt from the payload, the checkpoint store and a fresh count.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .config import ImportConfig, ImportMechanism
from .connectors.base import BaseSink
from .connectors.postgresql import QueryExecutor
from .connectors.registry import create_sink
from .errors import CommitError, ErrorLog, QueryError, SinkError, TransformError
from .guard import RunGuard
from .logging_utils import ImportLogger
from .progress import ExportLog, ProgressTracker, create_tracker
from .state import CheckpointStore
from .transforms import ExportedEvent, get_transform
from .utils.retry import backoff_delay

logger = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    GUARDING = "guarding"
    COUNTING = "counting"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    DELIVERING = "delivering"
    COMMITTING = "committing"
    DECIDING = "deciding"
    SCHEDULED = "scheduled"
    RETRYING = "retrying"
    STOPPED = "stopped"


class TickPayload(BaseModel):
    """Continuation carried from one tick to the next."""
    offset: Optional[int] = Field(default=None, ge=0)
    retries_performed_so_far: int = Field(default=0, ge=0)
    run_id: Optional[str] = None


@dataclass
class ImportState:
    retries_performed_so_far: int = 0
    offset: Optional[int] = None
    remaining_rows: int = 0

    def set_remaining(self, value: int) -> None:
        if value < 0:
            logger.warning(f"Remaining row count came out negative ({value}); treating as done")
        self.remaining_rows = max(value, 0)


@dataclass
class NextRun:
    delay_seconds: float
    payload: TickPayload

    @property
    def immediate(self) -> bool:
        return self.delay_seconds == 0


@dataclass
class TickResult:
    state: CycleState
    message: str
    next_run: Optional[NextRun] = None
    remaining_rows: Optional[int] = None
    fetched: int = 0
    delivered: int = 0
    ignored: int = 0
    transform_failures: int = 0
    delivery_failures: int = 0
    committed: int = 0
    commit_failed: bool = False


class BatchImportCycle:
    def __init__(
        self,
        config: ImportConfig,
        executor: Optional[QueryExecutor] = None,
        sink: Optional[BaseSink] = None,
        store: Optional[CheckpointStore] = None,
        import_logger: Optional[ImportLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.executor = executor or QueryExecutor(config.source)
        self.sink = sink or create_sink(config.sink)
        self.store = store or CheckpointStore(config.state_file)
        self.tracker: ProgressTracker = create_tracker(self.executor, config, self.store)
        self.export_log = ExportLog(self.executor, config.source.log_table)
        self.transform = get_transform(config.transform, config.columns)
        self.guard = RunGuard(self.store, config.guard_key, ttl=config.guard_ttl_seconds, clock=clock)
        self.events_to_ignore = set(config.events_to_ignore)
        self.log = import_logger or ImportLogger(config.source.table)
        self.state = CycleState.IDLE

    @property
    def historical(self) -> bool:
        return self.config.import_mechanism == ImportMechanism.HISTORICAL

    # --- host surface -----------------------------------------------------------

    def setup(self) -> Optional[NextRun]:
        """Take the run guard and arm the first tick. None if another run holds the guard."""
        run_id = uuid.uuid4().hex
        if not self.guard.acquire(run_id):
            self.log.warning(f"Another import of {self.config.source.table} is already running")
            return None
        return NextRun(self.config.initial_delay_seconds, TickPayload(run_id=run_id))

    def teardown(self, run_id: Optional[str] = None) -> None:
        """Release the guard, unless it was taken over by some other run."""
        if run_id is not None and self.guard.holder() not in (None, run_id):
            return
        self.guard.release()

    def run_tick(self, payload: Union[TickPayload, Dict[str, Any], None] = None) -> TickResult:
        if payload is None:
            payload = TickPayload()
        elif isinstance(payload, dict):
            payload = TickPayload.model_validate(payload)

        # a continuation keeps its guard alive, a fresh trigger has to win it
        self._enter(CycleState.GUARDING)
        run_id = payload.run_id or uuid.uuid4().hex
        if not (self.guard.refresh(run_id) or self.guard.acquire(run_id)):
            message = f"Another import of {self.config.source.table} is running; nothing to do"
            self.log.info(message, prefix="SKIP")
            self._enter(CycleState.STOPPED)
            return TickResult(CycleState.STOPPED, message)

        state = ImportState(
            retries_performed_so_far=payload.retries_performed_so_far,
            offset=self.tracker.current_offset(payload.offset),
        )
        self.log.start_tick(state.retries_performed_so_far, state.offset)

        result = self._run(run_id, state)
        self.log.complete_tick(
            result.state.value,
            result.message,
            result.next_run.delay_seconds if result.next_run else None,
        )
        self._enter(result.state)
        self._log_message(result.message)
        return result

    # --- cycle ------------------------------------------------------------------

    def _run(self, run_id: str, state: ImportState) -> TickResult:
        table = self.config.source.table

        self._enter(CycleState.COUNTING)
        try:
            state.set_remaining(self.tracker.remaining(state.offset))
        except QueryError as e:
            return self._retry(run_id, state, e)

        if state.remaining_rows < 1:
            if self.historical:
                return self._done()
            return TickResult(
                CycleState.STOPPED,
                f"No rows to import in {table}",
                next_run=self._next(run_id, state.offset, self.config.idle_delay_seconds),
                remaining_rows=0,
            )

        self._enter(CycleState.FETCHING)
        limit = self.config.batch_size
        if self.historical:
            limit = min(limit, state.remaining_rows)
        try:
            rows = self.tracker.fetch_batch(limit, state.offset)
        except QueryError as e:
            return self._retry(run_id, state, e)

        result = TickResult(CycleState.DECIDING, "", fetched=len(rows))
        error_log = ErrorLog(table, self.config.error_dir)

        self._enter(CycleState.TRANSFORMING)
        events, ignored_ids, rejected_ids = self._transform_rows(rows, result, error_log)
        self._enter(CycleState.DELIVERING)
        delivered_ids = self._deliver(events, result, error_log)

        self._enter(CycleState.COMMITTING)
        try:
            result.committed = self.export_log.commit(delivered_ids + ignored_ids)
        except CommitError as e:
            result.commit_failed = True
            self.log.error(f"{e}. These events may be delivered again on a later run.")
        error_log.save()

        new_offset = self.tracker.record_progress(state.offset, len(rows), result.committed, rejected_ids)
        state.set_remaining(state.remaining_rows - self._handled(len(rows), result.committed + len(rejected_ids)))
        result.remaining_rows = state.remaining_rows
        self.log.batch_progress(len(rows), result.delivered, result.committed, state.remaining_rows)

        self._enter(CycleState.DECIDING)
        result.message = (
            f"Processed {self._describe_range(state.offset, len(rows))} and ingested {result.delivered} "
            f"event{'s' if result.delivered != 1 else ''} from them."
        )
        if self.historical and state.remaining_rows < 1:
            done = self._done()
            result.state = done.state
            result.message = f"{result.message} {done.message}"
            return result

        drained = len(rows) < limit or state.remaining_rows < 1
        # rows that failed delivery or commit are fetched again; do not spin on them
        stalled = not self.tracker.uses_cursor and len(rows) > 0 and result.committed + len(rejected_ids) == 0
        if stalled:
            self.log.warning("No row of this batch could be recorded as exported; backing off")

        delay = self.config.idle_delay_seconds if (drained or stalled) else 0
        result.state = CycleState.SCHEDULED
        result.next_run = self._next(run_id, new_offset, delay)
        return result

    def _transform_rows(self, rows: List[Dict[str, Any]], result: TickResult, error_log: ErrorLog):
        events: List[ExportedEvent] = []
        ignored_ids: List[str] = []
        rejected_ids: List[str] = []
        id_column = self.config.columns.id_column
        for row_number, row in enumerate(rows, start=1):
            try:
                event = self.transform(row)
            except TransformError as e:
                result.transform_failures += 1
                error_log.add_transform_error(row, e, row_number)
                self.log.warning(f"Row {row_number} of batch skipped: {e}")
                if row.get(id_column) is not None:
                    rejected_ids.append(str(row[id_column]))
                continue
            if event.name in self.events_to_ignore:
                result.ignored += 1
                ignored_ids.append(event.id)
                continue
            events.append(event)
        return events, ignored_ids, rejected_ids

    def _deliver(self, events: List[ExportedEvent], result: TickResult, error_log: ErrorLog) -> List[str]:
        delivered_ids: List[str] = []
        for event in events:
            try:
                self.sink.capture(event.name, event.properties)
            except SinkError as e:
                result.delivery_failures += 1
                error_log.add_delivery_error(event.id, event.name, e)
                self.log.warning(f"Event {event.id} not delivered: {e}")
                continue
            delivered_ids.append(event.id)

        try:
            self.sink.finalize()
        except SinkError as e:
            self.log.error(f"Sink failed to flush {len(delivered_ids)} event(s): {e}")
            result.delivery_failures += len(delivered_ids)
            delivered_ids = []

        result.delivered = len(delivered_ids)
        return delivered_ids

    def _describe_range(self, offset: Optional[int], size: int) -> str:
        if offset is None:
            return f"{size} row(s)"
        return f"rows {offset}-{offset + size}"

    def _handled(self, fetched: int, settled: int) -> int:
        # Under the anti-join only logged or rejected rows leave the remaining
        # set; the cursor moves past every fetched row.
        return fetched if self.tracker.uses_cursor else settled

    def _enter(self, state: CycleState) -> None:
        logger.debug(f"{self.config.source.table}: {self.state.value} -> {state.value}")
        self.state = state

    def _retry(self, run_id: str, state: ImportState, error: Exception) -> TickResult:
        attempt = state.retries_performed_so_far
        size = self.config.batch_size
        rows_desc = self._describe_range(state.offset, size)

        if attempt >= self.config.max_retries:
            self.tracker.abandon_range(state.offset, size)
            self.guard.release()
            message = (
                f"Import error: Unable to process {rows_desc} after {attempt + 1} attempts. "
                f"Skipped them. Last error: {error}"
            )
            self.log.error(message)
            return TickResult(
                CycleState.STOPPED,
                message,
                next_run=NextRun(self.config.idle_delay_seconds, TickPayload()),
            )

        delay = backoff_delay(attempt, self.config.retry_base_seconds)
        message = f"Unable to process {rows_desc}. Retrying in {delay:g}s. Error: {error}"
        self.log.warning(message)
        return TickResult(
            CycleState.RETRYING,
            message,
            next_run=NextRun(
                delay,
                TickPayload(run_id=run_id, offset=state.offset, retries_performed_so_far=attempt + 1),
            ),
        )

    def _done(self) -> TickResult:
        self.guard.release()
        return TickResult(
            CycleState.STOPPED,
            f"Done processing all rows in {self.config.source.table}",
            remaining_rows=0,
        )

    def _next(self, run_id: str, offset: Optional[int], delay: float) -> NextRun:
        return NextRun(delay, TickPayload(run_id=run_id, offset=offset))

    def _log_message(self, message: str) -> None:
        """Mirror the tick summary into the optional message table of the source store."""
        table = self.config.source.message_table
        if not table:
            return
        try:
            self.executor.execute(
                f"INSERT INTO {table} (event_at, message) VALUES (%s, %s)",
                (datetime.now(UTC), message),
            )
        except QueryError as e:
            logger.warning(f"Could not write message to {table}: {e}")

    def reset(self) -> None:
        """Forget the offset cursor, the historical snapshot and the rejected row ids."""
        self.tracker.reset_offset()
        self.tracker.reset_snapshot()
        self.tracker.reset_rejected()

    def status(self) -> Dict[str, Any]:
        """Snapshot of the persisted progress, for the CLI."""
        offset = self.tracker.current_offset(None)
        return {
            "table": self.config.source.table,
            "strategy": self.config.strategy.value,
            "import_mechanism": self.config.import_mechanism.value,
            "remaining_rows": self.tracker.remaining(offset, take_snapshot=False),
            "offset": offset,
            "snapshot": self.tracker.snapshot(),
            "rejected_rows": len(self.tracker.rejected_ids()),
            "guard_held": self.guard.is_held(),
            "guard_holder": self.guard.holder(),
        }

