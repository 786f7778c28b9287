# src/table_importer/config.py

import os
import re
from enum import Enum
from pathlib import Path
from typing import List, Optional
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

REDSHIFT_HOST_SUFFIX = "redshift.amazonaws.com"


def validate_identifier(value: str) -> str:
    """Only plain (optionally schema-qualified) identifiers may be interpolated into SQL."""
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"'{value}' is not a valid SQL identifier")
    return value


class ProgressStrategy(str, Enum):
    ANTI_JOIN = "anti_join"
    OFFSET = "offset"


class ImportMechanism(str, Enum):
    CONTINUOUS = "continuous"
    HISTORICAL = "historical"


class TransformName(str, Enum):
    DEFAULT = "default"


class SourceConfig(BaseModel):
    type: str = "postgres"
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    connect_timeout: int = 10

    table: str
    log_table: str
    ordering_column: str
    message_table: Optional[str] = None

    @field_validator('type')
    def validate_type(cls, v):
        allowed = ['postgres', 'redshift']
        if v not in allowed:
            raise ValueError(f"type must be one of {allowed}")
        return v

    @field_validator('table', 'log_table', 'ordering_column', 'message_table')
    def validate_identifiers(cls, v):
        if v is None:
            return v
        return validate_identifier(v)

    @model_validator(mode='after')
    def fill_from_environment(self):
        """Credentials may come from the environment (or a .env file) instead of the YAML file."""
        self.host = self.host or os.getenv("IMPORT_DB_HOST")
        self.port = self.port or int(os.getenv("IMPORT_DB_PORT", "5439" if self.type == "redshift" else "5432"))
        self.database = self.database or os.getenv("IMPORT_DB_NAME")
        self.user = self.user or os.getenv("IMPORT_DB_USER")
        self.password = self.password or os.getenv("IMPORT_DB_PASSWORD")

        missing = [name for name in ('host', 'database', 'user', 'password') if not getattr(self, name)]
        if missing:
            raise ValueError(f"Required source option(s) missing: {', '.join(missing)}")

        if self.type == "redshift" and not self.host.endswith(REDSHIFT_HOST_SUFFIX):
            raise ValueError("Cluster host must be a valid AWS Redshift host")
        return self


class ColumnMapping(BaseModel):
    """Names of the source columns the transform reads."""
    id_column: str = "event_id"
    event_column: str = "event"
    distinct_id_column: str = "distinct_id"
    timestamp_column: str = "timestamp"
    properties_column: str = "properties"
    set_column: Optional[str] = "set"

    @field_validator('id_column')
    def validate_id_column(cls, v):
        return validate_identifier(v)


class SinkConfig(BaseModel):
    type: str = "dummy"
    # json sink
    path: Optional[str] = None
    # posthog sink
    api_host: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = 10.0

    @model_validator(mode='after')
    def validate_sink_requirements(self):
        if self.type == "json" and not self.path:
            raise ValueError("sink type 'json' requires a 'path'")
        if self.type == "posthog":
            self.api_key = self.api_key or os.getenv("POSTHOG_API_KEY")
            if not self.api_host or not self.api_key:
                raise ValueError("sink type 'posthog' requires 'api_host' and 'api_key'")
        return self


class ImportConfig(BaseModel):
    source: SourceConfig
    sink: SinkConfig = Field(default_factory=SinkConfig)
    columns: ColumnMapping = Field(default_factory=ColumnMapping)

    strategy: ProgressStrategy = ProgressStrategy.ANTI_JOIN
    import_mechanism: ImportMechanism = ImportMechanism.CONTINUOUS
    transform: TransformName = TransformName.DEFAULT
    events_to_ignore: List[str] = Field(default_factory=list)

    batch_size: int = Field(default=10, ge=10, le=500)
    retry_base_seconds: float = Field(default=3.0, gt=0)
    max_retries: int = Field(default=15, ge=0)
    idle_delay_seconds: float = Field(default=60.0, ge=0)
    initial_delay_seconds: float = Field(default=5.0, ge=0)
    guard_ttl_seconds: Optional[float] = Field(default=3600.0, gt=0)

    state_file: Path = Path(".table_importer_state.json")
    error_dir: Optional[Path] = None

    @field_validator('import_mechanism', mode='before')
    def accept_legacy_mechanism_names(cls, v):
        legacy = {
            "Import continuously": "continuous",
            "Only import historical data": "historical",
        }
        return legacy.get(v, v)

    @field_validator('events_to_ignore', mode='before')
    def split_events_to_ignore(cls, v):
        """Accept the comma separated form as well as a YAML list."""
        if isinstance(v, str):
            return [name.strip() for name in v.split(",") if name.strip()]
        return v

    @property
    def guard_key(self) -> str:
        return f"{self.source.table}:guard"

    @property
    def offset_key(self) -> str:
        return f"{self.source.table}:offset"

    @property
    def snapshot_key(self) -> str:
        return f"{self.source.table}:snapshot"

    @property
    def rejected_key(self) -> str:
        return f"{self.source.table}:rejected"


def load_config(filepath) -> ImportConfig:
    """Load and validate the import config from a YAML file."""
    import yaml

    load_dotenv()

    try:
        with open(filepath, 'r') as f:
            config_dict = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {filepath}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file is not valid YAML: {e}") from e

    if not isinstance(config_dict, dict):
        raise ConfigError(f"Config file {filepath} must contain a mapping")

    try:
        return ImportConfig(**config_dict)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {filepath}:\n{e}") from e
