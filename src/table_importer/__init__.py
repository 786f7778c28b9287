"""Incremental batch import of relational table rows into an event sink."""

__version__ = "0.1.0"
