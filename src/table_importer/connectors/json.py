# src/table_importer/connectors/json.py
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from .base import BaseSink
from ..errors import ConnectionError, SinkError

logger = logging.getLogger(__name__)


class JsonSink(BaseSink):
    """Appends captured events to a newline-delimited JSON file."""

    def __init__(self, config: Any):
        path = getattr(config, 'path', None)
        if not path:
            raise ValueError("JsonSink requires a 'path'.")
        self.filepath = Path(path)
        self.pending: List[str] = []

    def capture(self, event_name: str, properties: Dict[str, Any]) -> None:
        try:
            line = json.dumps({"event": event_name, "properties": properties}, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            raise SinkError(f"Event '{event_name}' is not JSON serializable: {e}") from e
        self.pending.append(line)

    def finalize(self):
        if not self.pending:
            return
        try:
            self.filepath.parent.mkdir(parents=True, exist_ok=True)
            with self.filepath.open('a', encoding='utf-8') as f:
                for line in self.pending:
                    f.write(line + '\n')
            logger.debug(f"Appended {len(self.pending)} events to {self.filepath}")
        except OSError as e:
            raise SinkError(f"Failed to write JSON file: {e}") from e
        finally:
            self.pending.clear()

    def test_connection(self) -> bool:
        parent = self.filepath.parent
        if parent.exists() and not parent.is_dir():
            raise ConnectionError(f"Output location is not a directory: {parent}")
        return True
