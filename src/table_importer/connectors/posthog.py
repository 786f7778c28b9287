# src/table_importer/connectors/posthog.py
import json
import logging
from typing import Any, Dict

import httpx

from .base import BaseSink
from ..errors import ConnectionError, SinkError
from ..utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class PosthogSink(BaseSink):
    """Sends each event to a PostHog-compatible ``/capture/`` endpoint."""

    def __init__(self, config: Any):
        self.api_host = config.api_host.rstrip("/")
        self.api_key = config.api_key
        self.timeout = config.timeout
        self._client = httpx.Client(base_url=self.api_host, timeout=self.timeout)
        logger.info(f"PosthogSink initialized for {self.api_host}")

    # Only connection failures are retried: the request never reached the server,
    # so resending cannot create a duplicate event.
    @retry_with_backoff(max_attempts=3, initial_delay=1.0, exceptions=(httpx.ConnectError, httpx.ConnectTimeout))
    def _post(self, content: str) -> httpx.Response:
        return self._client.post("/capture/", content=content, headers={"Content-Type": "application/json"})

    def capture(self, event_name: str, properties: Dict[str, Any]) -> None:
        body = {
            "api_key": self.api_key,
            "event": event_name,
            "properties": properties,
        }
        if properties.get("distinct_id") is not None:
            body["distinct_id"] = properties["distinct_id"]
        if properties.get("timestamp") is not None:
            body["timestamp"] = properties["timestamp"]

        try:
            content = json.dumps(body, default=str)
        except (TypeError, ValueError) as e:
            raise SinkError(f"Event '{event_name}' is not JSON serializable: {e}") from e

        try:
            response = self._post(content)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SinkError(f"Capture of '{event_name}' rejected with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SinkError(f"Capture of '{event_name}' failed: {e}") from e

    def close(self):
        self._client.close()

    def test_connection(self) -> bool:
        try:
            self._client.get("/")
        except httpx.HTTPError as e:
            raise ConnectionError(f"Cannot reach {self.api_host}: {e}") from e
        return True
