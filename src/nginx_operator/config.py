"""
Operator configuration loaded from the environment and an optional YAML file
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from nginx_operator.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_ENV = "OPERATOR_CONFIG_FILE"

# Environment variable name for each setting
ENV_NAMES = {
    "annotation_filter": "ANNOTATION_FILTER",
    "sync_period_seconds": "SYNC_PERIOD_SECONDS",
    "filter_requeue_seconds": "FILTER_REQUEUE_SECONDS",
    "max_backoff_seconds": "MAX_BACKOFF_SECONDS",
    "max_workers": "MAX_WORKERS",
    "watch_namespace": "WATCH_NAMESPACE",
    "log_level": "LOG_LEVEL",
    "liveness_endpoint": "LIVENESS_ENDPOINT",
    "gcp_project": "GCP_PROJECT",
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class OperatorConfig:
    """Runtime settings for the operator process."""

    annotation_filter: str = ""
    sync_period_seconds: int = 60
    filter_requeue_seconds: int = 300
    max_backoff_seconds: int = 300
    max_workers: int = 8
    watch_namespace: str = ""
    log_level: str = "INFO"
    liveness_endpoint: str = "http://0.0.0.0:8080/healthz"
    gcp_project: str = ""

    @classmethod
    def load(cls, environ: dict[str, str] | None = None) -> "OperatorConfig":
        """
        Build the configuration.

        Values from the YAML file named by OPERATOR_CONFIG_FILE are applied
        first, then overridden by individual environment variables.

        Raises:
            ConfigurationError: If the file is unreadable or a value is invalid
        """
        env = dict(os.environ) if environ is None else environ
        raw: dict[str, Any] = {}

        config_file = env.get(CONFIG_FILE_ENV)
        if config_file:
            raw.update(_read_config_file(Path(config_file)))

        for field_name, env_name in ENV_NAMES.items():
            if env_name in env:
                raw[field_name] = env[env_name]

        return cls._from_raw(raw)

    @classmethod
    def _from_raw(cls, raw: dict[str, Any]) -> "OperatorConfig":
        known = {f.name: f for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in raw.items():
            field = known.get(key)
            if field is None:
                logger.warning("Ignoring unknown configuration key %s", key)
                continue
            if field.type in (int, "int"):
                values[key] = _positive_int(key, value)
            else:
                values[key] = "" if value is None else str(value)

        level = str(values.get("log_level", cls.log_level)).upper()
        if level not in LOG_LEVELS:
            raise ConfigurationError(f"Unsupported log level {level!r}", setting="log_level")
        values["log_level"] = level

        return cls(**values)

    @property
    def clusterwide(self) -> bool:
        return not self.watch_namespace


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}", setting=CONFIG_FILE_ENV) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file {path}: {e}", setting=CONFIG_FILE_ENV) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping", setting=CONFIG_FILE_ENV)

    # Accept both snake_case keys and the environment variable spelling
    by_env_name = {env_name: field_name for field_name, env_name in ENV_NAMES.items()}
    return {by_env_name.get(key, key): value for key, value in data.items()}


def _positive_int(name: str, value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}", setting=name) from e
    if number <= 0:
        raise ConfigurationError(f"{name} must be positive, got {number}", setting=name)
    return number
