# src/table_importer/connectors/registry.py
import importlib
import inspect
import logging
from pathlib import Path
from typing import Dict, Type
from .base import BaseSink
from ..config import SinkConfig
from ..errors import ConfigError

logger = logging.getLogger(__name__)


def discover_sinks() -> Dict[str, Type[BaseSink]]:
    """
    Discovers all sink classes in the connectors package.

    Returns:
        {sink_type: SinkClass}, e.g. {"json": JsonSink, "posthog": PosthogSink}
    """
    sink_map = {}
    connectors_dir = Path(__file__).parent

    for file_path in connectors_dir.glob("*.py"):
        if file_path.name.startswith("_") or file_path.name in ("registry.py", "base.py"):
            continue

        module_name = file_path.stem
        try:
            module = importlib.import_module(f".{module_name}", package="table_importer.connectors")
        except ImportError as e:
            logger.warning(f"Failed to import connector module '{module_name}': {e}")
            continue

        for name, obj in inspect.getmembers(module, inspect.isclass):
            if issubclass(obj, BaseSink) and obj is not BaseSink:
                sink_type = _derive_sink_type(name)
                sink_map[sink_type] = obj
                logger.debug(f"Discovered sink: {sink_type} -> {name}")

    return sink_map


def _derive_sink_type(class_name: str) -> str:
    """
    Examples:
        JsonSink -> json
        PosthogSink -> posthog
    """
    if class_name.endswith("Sink"):
        class_name = class_name[:-len("Sink")]
    return class_name.lower()


_SINK_MAP = None


def get_sink_map() -> Dict[str, Type[BaseSink]]:
    """Returns the discovered sink map (discovered once)."""
    global _SINK_MAP
    if _SINK_MAP is None:
        _SINK_MAP = discover_sinks()
    return _SINK_MAP


def create_sink(config: SinkConfig) -> BaseSink:
    sink_map = get_sink_map()
    sink_class = sink_map.get(config.type)
    if sink_class is None:
        raise ConfigError(f"Unknown sink type '{config.type}'. Available: {sorted(sink_map)}")
    return sink_class(config)
