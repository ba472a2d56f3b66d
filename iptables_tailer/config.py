"""Configuration module: frozen dataclass loaded from defaults, an optional YAML file and env vars."""

import logging
import os
from dataclasses import dataclass, fields
from datetime import timedelta

import jsonschema
import yaml

from iptables_tailer.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TIME_LAYOUT = "%Y-%m-%dT%H:%M:%S.%f%z"

POD_IDENTIFIERS = ("name", "label", "namespace", "namespace/name")

# env var -> Config field
ENV_FIELDS = {
    "IPTABLES_LOG_PREFIX": "log_prefix",
    "IPTABLES_LOG_PATH": "log_path",
    "IPTABLES_LOG_TIME_LAYOUT": "time_layout",
    "JOURNAL_DIRECTORY": "journal_directory",
    "JOURNAL_IDENTIFIER": "journal_identifier",
    "KUBE_API_SERVER": "kube_api_server",
    "KUBE_EVENT_DISPLAY_REASON": "event_reason",
    "KUBE_EVENT_SOURCE_COMPONENT_NAME": "event_component",
    "METRICS_SERVER_PORT": "metrics_port",
    "PACKET_DROP_CHANNEL_BUFFER_SIZE": "channel_buffer_size",
    "PACKET_DROP_EXPIRATION_MINUTES": "expiration_minutes",
    "REPEATED_EVENTS_INTERVAL_MINUTES": "repeat_interval_minutes",
    "REPEATED_EVENTS_EVICTION_MULTIPLIER": "dedup_eviction_multiplier",
    "WATCH_LOGS_INTERVAL_SECONDS": "watch_interval_seconds",
    "POD_IDENTIFIER": "pod_identifier",
    "POD_IDENTIFIER_LABEL": "pod_identifier_label",
    "CACHE_SYNC_TIMEOUT_SECONDS": "cache_sync_timeout_seconds",
    "BACKOFF_INITIAL_INTERVAL_MS": "backoff_initial_interval_ms",
    "STATS_LOG_INTERVAL_SECONDS": "stats_interval_seconds",
    "LOG_LEVEL": "log_level",
}

CONFIG_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "log_prefix": {"type": "string", "minLength": 1},
        "log_path": {"type": "string"},
        "time_layout": {"type": "string", "minLength": 1},
        "journal_directory": {"type": "string"},
        "journal_identifier": {"type": "string", "minLength": 1},
        "kube_api_server": {"type": "string"},
        "event_reason": {"type": "string", "minLength": 1},
        "event_component": {"type": "string", "minLength": 1},
        "metrics_port": {"type": "integer", "minimum": 0, "maximum": 65535},
        "channel_buffer_size": {"type": "integer", "minimum": 0},
        "expiration_minutes": {"type": "integer", "minimum": 1},
        "repeat_interval_minutes": {"type": "integer", "minimum": 0},
        "dedup_eviction_multiplier": {"type": "integer", "minimum": 0},
        "watch_interval_seconds": {"type": "integer", "minimum": 1},
        "pod_identifier": {"enum": list(POD_IDENTIFIERS)},
        "pod_identifier_label": {"type": "string"},
        "cache_sync_timeout_seconds": {"type": "integer", "minimum": 1},
        "backoff_initial_interval_ms": {"type": "integer", "minimum": 1},
        "stats_interval_seconds": {"type": "integer", "minimum": 0},
        "log_level": {"type": "string", "pattern": "^(?i:debug|info|warning|error|critical)$"},
    },
}


@dataclass(frozen=True)
class Config:
    log_prefix: str = ""
    log_path: str = ""
    time_layout: str = DEFAULT_TIME_LAYOUT
    journal_directory: str = ""
    journal_identifier: str = "kernel"
    kube_api_server: str = ""
    event_reason: str = "PacketDrop"
    event_component: str = "kube-iptables-tailer"
    metrics_port: int = 9090
    channel_buffer_size: int = 100
    expiration_minutes: int = 10
    repeat_interval_minutes: int = 2
    dedup_eviction_multiplier: int = 0
    watch_interval_seconds: int = 5
    pod_identifier: str = "namespace"
    pod_identifier_label: str = ""
    cache_sync_timeout_seconds: int = 60
    backoff_initial_interval_ms: int = 500
    stats_interval_seconds: int = 60
    log_level: str = "INFO"

    @property
    def expiration(self) -> timedelta:
        return timedelta(minutes=self.expiration_minutes)

    @property
    def repeat_interval(self) -> timedelta:
        return timedelta(minutes=self.repeat_interval_minutes)

    @property
    def journal_mode(self) -> bool:
        return bool(self.journal_directory)


_INT_FIELDS = {f.name for f in fields(Config) if f.type in (int, "int")}


def load_yaml_config(path: str | None) -> dict:
    """Load and validate the optional YAML config file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    errors = schema_errors(data)
    if errors:
        raise ConfigError(f"Invalid config file {path}: {'; '.join(errors)}")
    logger.info("Loaded YAML config from %s", path)
    return data


_FIELD_ENV = {name: key for key, name in ENV_FIELDS.items()}


def schema_errors(data: dict) -> list[str]:
    """Check settings against CONFIG_SCHEMA. Messages name the field and its env var."""
    errors = []
    for e in jsonschema.Draft202012Validator(CONFIG_SCHEMA).iter_errors(data):
        name = e.absolute_path[0] if e.absolute_path else None
        if name is None:
            errors.append(e.message)
        else:
            errors.append(f"{name} ({_FIELD_ENV.get(name, name)}): {e.message}")
    return errors


def _env_int(key: str, raw: str, default: int) -> int:
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid value for %s: %r, using default: %d", key, raw, default)
        return default


def load_config(environ: dict | None = None) -> Config:
    """Build Config from defaults <- YAML file (CONFIG_PATH) <- env vars (highest priority)."""
    if environ is None:
        environ = dict(os.environ)

    kwargs: dict = dict(load_yaml_config(environ.get("CONFIG_PATH")))

    for key, name in ENV_FIELDS.items():
        raw = environ.get(key, "")
        if not raw:
            continue
        if name in _INT_FIELDS:
            kwargs[name] = _env_int(key, raw, kwargs.get(name, getattr(Config, name)))
        else:
            kwargs[name] = raw

    errors = schema_errors(kwargs)
    if errors:
        raise ConfigError(f"Invalid configuration: {'; '.join(errors)}")

    config = Config(**kwargs)
    validate_config(config)
    return config


def validate_config(config: Config) -> None:
    """Raise ConfigError for settings the tailer cannot start without."""
    if not config.log_prefix:
        raise ConfigError("Missing environment variable IPTABLES_LOG_PREFIX")
    if not config.journal_mode and not config.log_path:
        raise ConfigError("Missing environment variable IPTABLES_LOG_PATH")
    if config.pod_identifier not in POD_IDENTIFIERS:
        raise ConfigError(
            f"Invalid POD_IDENTIFIER {config.pod_identifier!r}, expected one of {', '.join(POD_IDENTIFIERS)}"
        )
    if config.pod_identifier == "label" and not config.pod_identifier_label:
        raise ConfigError("Missing environment variable POD_IDENTIFIER_LABEL")
    if config.channel_buffer_size < 0:
        raise ConfigError("PACKET_DROP_CHANNEL_BUFFER_SIZE must not be negative")
