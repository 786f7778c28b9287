# tests/test_transforms.py

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

import pytest

from table_importer.config import ColumnMapping, TransformName
from table_importer.errors import ConfigError, TransformError
from table_importer.transforms import DefaultTransform, SourceRow, get_transform


def _row(**overrides):
    row = {
        "event_id": 42,
        "event": "signup",
        "distinct_id": "user-7",
        "timestamp": datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        "properties": '{"plan": "pro", "seats": 3}',
        "set": None,
    }
    row.update(overrides)
    return row


def test_default_transform():
    event = get_transform(TransformName.DEFAULT)(_row())

    assert event.name == "signup"
    assert event.id == "42"
    assert event.properties == {
        "distinct_id": "user-7",
        "timestamp": "2024-03-01T12:00:00+00:00",
        "plan": "pro",
        "seats": 3,
    }


def test_set_column_becomes_dollar_set():
    event = get_transform("default")(_row(set='{"email": "a@example.com"}'))
    assert event.properties["$set"] == {"email": "a@example.com"}


def test_null_properties_count_as_empty():
    event = get_transform("default")(_row(properties=None))
    assert set(event.properties) == {"distinct_id", "timestamp"}


def test_decoded_json_column_is_accepted():
    event = get_transform("default")(_row(properties={"plan": "free"}))
    assert event.properties["plan"] == "free"


def test_properties_may_override_timestamp():
    event = get_transform("default")(_row(properties='{"timestamp": "2020-01-01"}'))
    assert event.properties["timestamp"] == "2020-01-01"


@pytest.mark.parametrize("value", ["{not json", "[1, 2]", '"text"'])
def test_bad_properties_raise_transform_error(value):
    with pytest.raises(TransformError, match="properties"):
        get_transform("default")(_row(properties=value))


def test_bad_set_column_raises_transform_error():
    with pytest.raises(TransformError, match="'set'"):
        get_transform("default")(_row(set="nope"))


def test_missing_event_name_raises_transform_error():
    with pytest.raises(TransformError, match="event") as exc_info:
        get_transform("default")(_row(event=None))
    assert exc_info.value.record["event_id"] == 42


def test_custom_column_mapping():
    columns = ColumnMapping(id_column="uuid", event_column="name", properties_column="props", set_column=None)
    row = {"uuid": "u-1", "name": "click", "distinct_id": None, "timestamp": None, "props": "{}", "set": '{"x": 1}'}

    event = DefaultTransform(columns)(row)

    assert event.id == "u-1"
    assert event.name == "click"
    # set column disabled
    assert "$set" not in event.properties


def test_source_row_keeps_raw_mapping():
    row = _row(extra="kept")
    source = SourceRow.from_mapping(row, ColumnMapping())
    assert source.raw["extra"] == "kept"
    assert source.event_id == "42"


def test_unknown_transform_is_a_config_error():
    with pytest.raises(ConfigError, match="Unknown transform"):
        get_transform("uppercase")


def test_numeric_and_uuid_columns_become_text():
    user = UUID("12345678-1234-5678-1234-567812345678")
    event = get_transform("default")(_row(distinct_id=user, timestamp=Decimal("1700000000.5")))

    assert event.properties["distinct_id"] == "12345678-1234-5678-1234-567812345678"
    assert event.properties["timestamp"] == "1700000000.5"
