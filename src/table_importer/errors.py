# src/table_importer/errors.py

import json
import logging
from pathlib import Path
from datetime import datetime, UTC
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the import configuration is missing or invalid. Fatal at startup."""
    pass


class QueryError(Exception):
    """Raised when a statement against the source store fails."""
    pass


class ConnectionError(QueryError):
    """Raised when a connection to the source store cannot be opened."""
    pass


class TransformError(Exception):
    """Raised when a single source row cannot be turned into an event."""
    def __init__(self, message, **kwargs):
        super().__init__(message)
        for key, value in kwargs.items():
            setattr(self, key, value)


class SinkError(Exception):
    """Raised by a sink when one event could not be handed over."""
    pass


class CommitError(Exception):
    """Raised when delivered event ids could not be appended to the export log."""
    pass


class ErrorLog:
    """Collects rejected rows of a tick and saves them to a dead-letter JSON file."""

    def __init__(self, table_name: str, error_dir: Optional[Path] = None):
        self.table_name = table_name
        self.error_dir = error_dir
        self.transform_errors: List[Dict[str, Any]] = []
        self.delivery_errors: List[Dict[str, Any]] = []

    def add_transform_error(self, record: Dict[str, Any], error: Exception, row_number: int = None):
        """Adds a row that failed to transform."""
        self.transform_errors.append({
            "row_number": row_number,
            "record": record,
            "error_type": type(error).__name__,
            "error_message": str(error),
            "timestamp": datetime.now(UTC).isoformat(),
            "failure_type": "transform_error",
        })
        logger.debug(f"Row {row_number} failed (Transform Error): {error}")

    def add_delivery_error(self, event_id: str, event_name: str, error: Exception):
        """Adds an event the sink refused."""
        self.delivery_errors.append({
            "event_id": event_id,
            "event": event_name,
            "error_type": type(error).__name__,
            "error_message": str(error),
            "timestamp": datetime.now(UTC).isoformat(),
            "failure_type": "delivery_error",
        })
        logger.debug(f"Event {event_id} failed (Delivery Error): {error}")

    def save(self) -> Optional[Path]:
        """Saves all collected errors to a JSON file, if an error directory is configured."""
        all_errors = self.transform_errors + self.delivery_errors
        if not all_errors or self.error_dir is None:
            return None

        self.error_dir.mkdir(parents=True, exist_ok=True)

        timestamp_str = datetime.now(UTC).strftime("%Y%m%d_%H%M%S_%f")
        safe_name = self.table_name.replace(".", "_")
        error_file = self.error_dir / f"{safe_name}_errors_{timestamp_str}.json"
        error_summary = {
            "table": self.table_name,
            "total_errors": len(all_errors),
            "transform_errors_count": len(self.transform_errors),
            "delivery_errors_count": len(self.delivery_errors),
            "timestamp": datetime.now(UTC).isoformat(),
            "errors": all_errors,
        }
        try:
            with open(error_file, "w", encoding="utf-8") as f:
                # default=str covers datetimes and decimals coming straight from the source
                json.dump(error_summary, f, indent=2, ensure_ascii=False, default=str)
            logger.info(f"Error log saved to: {error_file}")
            return error_file
        except OSError as e:
            logger.error(f"Failed to save error log to {error_file}: {e}", exc_info=True)
            return None

    def has_errors(self) -> bool:
        return bool(self.transform_errors or self.delivery_errors)

    def error_count(self) -> int:
        return len(self.transform_errors) + len(self.delivery_errors)
