# src/table_importer/connectors/dummy.py

import logging
from typing import Any, Dict, List, Tuple
from .base import BaseSink

logger = logging.getLogger(__name__)


class DummySink(BaseSink):
    """Keeps captured events in memory and logs them. Useful for dry runs and tests."""

    def __init__(self, *args, **kwargs):
        # configuration is ignored
        self.captured: List[Tuple[str, Dict[str, Any]]] = []

    def capture(self, event_name: str, properties: Dict[str, Any]) -> None:
        logger.info(f"[DummySink] {event_name}: {properties}")
        self.captured.append((event_name, properties))
