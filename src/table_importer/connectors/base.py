# src/table_importer/connectors/base.py

from abc import ABC, abstractmethod
from typing import Dict, Any


class BaseSink(ABC):
    """Contract for every event sink."""

    @abstractmethod
    def capture(self, event_name: str, properties: Dict[str, Any]) -> None:
        """
        Hands one finished event over to the sink.
        Nothing is returned; a sink that cannot take the event raises SinkError.
        """
        pass

    def finalize(self):
        """
        Optional cleanup/flush.
        Called once the tick has delivered all of its events.
        """
        pass

    def close(self):
        """Release connections held by the sink. Called when the host shuts down."""
        pass

    def test_connection(self) -> bool:
        """
        Test that the sink is reachable.

        Raises:
            ConnectionError: If the sink cannot be reached, with a helpful message
        """
        return True
