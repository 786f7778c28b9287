# src/table_importer/connectors/__init__.py

from .base import BaseSink
from .dummy import DummySink
from .json import JsonSink
from .posthog import PosthogSink
from .postgresql import QueryExecutor

__all__ = [
    'BaseSink',
    'DummySink',
    'JsonSink',
    'PosthogSink',
    'QueryExecutor',
]
