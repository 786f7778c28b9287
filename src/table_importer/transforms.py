"""
Row transforms: source row -> exported event.

The set of transforms is closed; the one to use is picked once from the
configuration with ``get_transform`` and then applied to every row.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, date
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

from .config import ColumnMapping, TransformName
from .errors import ConfigError, TransformError


@dataclass(frozen=True)
class SourceRow:
    """One row of the source table, with the columns the transforms rely on pulled out."""

    event_id: str
    event: str
    distinct_id: Any
    timestamp: Any
    properties: Any
    set_payload: Any = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any], columns: ColumnMapping) -> "SourceRow":
        required = [columns.id_column, columns.event_column]
        missing = [name for name in required if row.get(name) is None]
        if missing:
            raise TransformError(f"Row is missing required column(s): {', '.join(missing)}", record=dict(row))

        return cls(
            event_id=str(row[columns.id_column]),
            event=str(row[columns.event_column]),
            distinct_id=row.get(columns.distinct_id_column),
            timestamp=row.get(columns.timestamp_column),
            properties=row.get(columns.properties_column),
            set_payload=row.get(columns.set_column) if columns.set_column else None,
            raw=dict(row),
        )


@dataclass(frozen=True)
class ExportedEvent:
    name: str
    id: str
    properties: Dict[str, Any]


def _parse_json_object(value: Any, column: str) -> Dict[str, Any]:
    """Parse a serialized JSON object. NULL counts as an empty object."""
    if value is None:
        return {}
    if isinstance(value, Mapping):
        # jsonb columns arrive already decoded
        return dict(value)
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError) as e:
        raise TransformError(f"Column '{column}' does not hold valid JSON: {e}") from e
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise TransformError(f"Column '{column}' must hold a JSON object, got {type(parsed).__name__}")
    return parsed


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID)):
        # numeric and uuid columns; kept exact as text
        return str(value)
    return value


class Transform(ABC):
    def __init__(self, columns: ColumnMapping):
        self.columns = columns

    def __call__(self, row: Mapping[str, Any]) -> ExportedEvent:
        return self.transform(SourceRow.from_mapping(row, self.columns))

    @abstractmethod
    def transform(self, row: SourceRow) -> ExportedEvent:
        """Raises TransformError if the row cannot be exported."""


class DefaultTransform(Transform):
    """
    name       <- event column
    id         <- identifier column
    properties <- {distinct_id, timestamp} + parsed properties JSON,
                  plus "$set" with the parsed set JSON when that column is not NULL
    """

    def transform(self, row: SourceRow) -> ExportedEvent:
        payload = _parse_json_object(row.properties, self.columns.properties_column)

        properties: Dict[str, Any] = {
            "distinct_id": _jsonable(row.distinct_id),
            "timestamp": _jsonable(row.timestamp),
            **payload,
        }
        if row.set_payload is not None:
            properties["$set"] = _parse_json_object(row.set_payload, self.columns.set_column)

        return ExportedEvent(name=row.event, id=row.event_id, properties=properties)


TRANSFORMS = {
    TransformName.DEFAULT: DefaultTransform,
}


def get_transform(name: TransformName, columns: Optional[ColumnMapping] = None) -> Transform:
    """Resolve a transform once, at configuration time."""
    try:
        transform_class = TRANSFORMS[TransformName(name)]
    except (KeyError, ValueError) as e:
        raise ConfigError(f"Unknown transform '{name}'") from e
    return transform_class(columns or ColumnMapping())
