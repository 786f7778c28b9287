# src/table_importer/runner.py

import logging
import time
from typing import Callable, Optional

from .engine import BatchImportCycle, NextRun, TickResult

logger = logging.getLogger(__name__)


class ImportRunner:
    """
    In-process host for the import cycle.

    Plays the part of the external scheduler: sleeps for whatever delay the
    last tick asked for, then triggers the next one. Stops when a tick does
    not ask to be called again or after ``max_ticks``.
    """

    def __init__(self, cycle: BatchImportCycle, sleep: Callable[[float], None] = time.sleep):
        self.cycle = cycle
        self.sleep = sleep
        self.ticks = 0
        self.delivered = 0
        self.committed = 0
        self.last_result: Optional[TickResult] = None

    def run(self, max_ticks: Optional[int] = None, skip_initial_delay: bool = False) -> int:
        """Run ticks until the chain stops. Returns the number of ticks executed."""
        next_run = self.cycle.setup()
        if next_run is None:
            return 0
        if skip_initial_delay:
            next_run = NextRun(0, next_run.payload)

        run_id = next_run.payload.run_id
        try:
            while next_run is not None and (max_ticks is None or self.ticks < max_ticks):
                if next_run.delay_seconds > 0:
                    logger.debug(f"Sleeping {next_run.delay_seconds}s before next tick")
                    self.sleep(next_run.delay_seconds)

                payload = next_run.payload
                if payload.run_id is None:
                    # a chain restarted after an abandoned range stays under this run
                    payload = payload.model_copy(update={"run_id": run_id})

                result = self.cycle.run_tick(payload)
                self.ticks += 1
                self.delivered += result.delivered
                self.committed += result.committed
                self.last_result = result

                next_run = result.next_run
                if next_run is not None and next_run.payload.run_id:
                    run_id = next_run.payload.run_id
        finally:
            self.cycle.teardown(run_id)
            self.cycle.sink.close()

        return self.ticks
