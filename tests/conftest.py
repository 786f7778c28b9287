# tests/conftest.py
import json
from datetime import datetime, timedelta, timezone

import pytest
from typer.testing import CliRunner

from table_importer.config import ImportConfig
from table_importer.connectors.dummy import DummySink
from table_importer.engine import BatchImportCycle
from table_importer.errors import ConnectionError, QueryError
from table_importer.state import CheckpointStore


def make_rows(count, start=1):
    """Source rows shaped like the default column mapping, ordered by ``id``."""
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return [
        {
            "id": i,
            "event_id": f"evt-{i}",
            "event": "pageview",
            "distinct_id": f"user-{i}",
            "timestamp": base + timedelta(minutes=i),
            "properties": json.dumps({"n": i}),
            "set": None,
        }
        for i in range(start, start + count)
    ]


class FakeWarehouse:
    """
    Stands in for QueryExecutor. Understands the statements the trackers and
    the export log issue, and keeps the source table and export log in memory.
    """

    def __init__(self, rows=None, id_column="event_id", ordering_column="id"):
        self.rows = list(rows or [])
        self.id_column = id_column
        self.ordering_column = ordering_column
        self.log = []
        self.messages = []
        self.queries = []
        self.select_failures = 0
        self.fail_commits = False
        self.reachable = True

    def test_connection(self):
        if not self.reachable:
            raise ConnectionError("Source connection failed: timeout expired")
        return True

    def exported_ids(self):
        return [event_id for event_id, _ in self.log]

    def _ordered(self):
        return sorted(self.rows, key=lambda r: r[self.ordering_column])

    def _unexported(self, skipped=()):
        excluded = set(self.exported_ids()) | set(skipped)
        return [
            r for r in self._ordered()
            if r[self.id_column] is not None and str(r[self.id_column]) not in excluded
        ]

    def execute(self, query, parameters=None):
        self.queries.append((query, parameters))
        params = list(parameters or [])

        if query.startswith("INSERT INTO") and "(event_id, exported_at)" in query:
            if self.fail_commits:
                raise QueryError("permission denied for relation event_log")
            self.log.extend(zip(params[0::2], params[1::2]))
            return []
        if query.startswith("INSERT INTO") and "(event_at, message)" in query:
            self.messages.append(params[1])
            return []

        if self.select_failures:
            self.select_failures -= 1
            raise ConnectionError("could not connect to server: Connection refused")

        skipped = params.pop(0) if "NOT IN %s" in query else ()
        if query.startswith("SELECT COUNT(1)"):
            count = len(self._unexported(skipped)) if "NOT EXISTS" in query else len(self.rows)
            return [{"count": count}]
        if query.startswith("SELECT *"):
            if "NOT EXISTS" in query:
                (limit,) = params
                return [dict(r) for r in self._unexported(skipped)[:limit]]
            limit, offset = params
            return [dict(r) for r in self._ordered()[offset:offset + limit]]

        raise AssertionError(f"Unexpected query: {query}")


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        data = {
            "source": {
                "host": "localhost",
                "port": 5432,
                "database": "analytics",
                "user": "importer",
                "password": "secret",
                "table": "events",
                "log_table": "event_log",
                "ordering_column": "id",
            },
            "sink": {"type": "dummy"},
            "state_file": tmp_path / "state.json",
            "idle_delay_seconds": 60,
        }
        data.update(overrides)
        return ImportConfig(**data)
    return _make


@pytest.fixture
def make_cycle():
    def _make(config, warehouse, sink=None):
        return BatchImportCycle(
            config,
            executor=warehouse,
            sink=sink or DummySink(),
            store=CheckpointStore(config.state_file),
        )
    return _make


@pytest.fixture
def cli_runner():
    return CliRunner()
