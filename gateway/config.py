"""
Runtime configuration for the clawbox host and sandbox.

Sources, lowest to highest precedence:
  1. Built-in defaults (the dataclasses below)
  2. ~/.clawbox/config.yaml
  3. Environment variables (CLAWBOX_*), including values loaded from
     ~/.clawbox/.env and a project .env

Example config.yaml:

    host:
      max_concurrent_agents: 4
      agent_timeout_ms: 900000
    scheduler:
      max_retries: 3
    webhook:
      enabled: true
      port: 3003
      groups: [main, ops]
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from clawbox_constants import (
    CLAWBOX_HOME,
    DEFAULT_IPC_DIR,
    DEFAULT_LOGS_DIR,
    DEFAULT_SESSIONS_FILE,
    DEFAULT_TRACES_DIR,
)

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclass
class HostConfig:
    max_concurrent_agents: int = 4
    # Callers beyond this many queued on the semaphore fail fast; None = unbounded
    max_waiting_agents: Optional[int] = None
    agent_timeout_ms: int = 900_000
    poll_interval_ms: int = 250
    heartbeat_stale_ms: int = 30_000
    orphan_response_max_age_s: int = 3600
    ipc_dir: Path = DEFAULT_IPC_DIR
    traces_dir: Path = DEFAULT_TRACES_DIR
    logs_dir: Path = DEFAULT_LOGS_DIR
    sessions_file: Path = DEFAULT_SESSIONS_FILE
    log_level: str = "INFO"


@dataclass
class SchedulerConfig:
    max_retries: int = 3
    retry_base_ms: int = 60_000
    retry_max_ms: int = 3_600_000


@dataclass
class WebhookConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 3003
    token: str = ""
    groups: List[str] = field(default_factory=list)


@dataclass
class SandboxConfig:
    poll_interval_ms: int = 500
    max_sessions: int = 16
    max_output_bytes: int = 1_048_576
    default_timeout_ms: int = 1_800_000


@dataclass
class RuntimeConfig:
    host: HostConfig = field(default_factory=HostConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuntimeConfig":
        if not isinstance(data, dict):
            raise ConfigError("config.yaml must contain a mapping at the top level")
        return cls(
            host=_build_section(HostConfig, data.get("host")),
            scheduler=_build_section(SchedulerConfig, data.get("scheduler")),
            webhook=_build_section(WebhookConfig, data.get("webhook")),
            sandbox=_build_section(SandboxConfig, data.get("sandbox")),
        )

    def validate(self) -> None:
        if self.host.max_concurrent_agents < 1:
            raise ConfigError("host.max_concurrent_agents must be at least 1")
        if self.host.max_waiting_agents is not None and self.host.max_waiting_agents < 0:
            raise ConfigError("host.max_waiting_agents must not be negative")
        for name in ("agent_timeout_ms", "poll_interval_ms", "heartbeat_stale_ms"):
            if getattr(self.host, name) <= 0:
                raise ConfigError(f"host.{name} must be positive")
        if self.host.log_level.upper() not in _LOG_LEVELS:
            raise ConfigError(f"host.log_level must be one of {', '.join(_LOG_LEVELS)}")
        if self.scheduler.max_retries < 0:
            raise ConfigError("scheduler.max_retries must not be negative")
        if self.scheduler.retry_base_ms <= 0 or self.scheduler.retry_max_ms < self.scheduler.retry_base_ms:
            raise ConfigError("scheduler retry delays must satisfy 0 < retry_base_ms <= retry_max_ms")
        if not 0 < self.webhook.port < 65536:
            raise ConfigError(f"webhook.port out of range: {self.webhook.port}")
        if self.webhook.enabled and not self.webhook.token:
            raise ConfigError("webhook.enabled requires webhook.token (or CLAWBOX_WEBHOOK_TOKEN)")
        if self.sandbox.max_sessions < 1 or self.sandbox.max_output_bytes < 1:
            raise ConfigError("sandbox.max_sessions and sandbox.max_output_bytes must be positive")


def _build_section(cls, raw: Optional[Dict[str, Any]]):
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"{cls.__name__} section must be a mapping")
    known = cls.__dataclass_fields__
    unknown = set(raw) - set(known)
    if unknown:
        raise ConfigError(f"Unknown {cls.__name__} keys: {', '.join(sorted(unknown))}")
    values = {}
    for key, value in raw.items():
        values[key] = _coerce(known[key].type, value, key)
    return cls(**values)


def _to_bool(value: Union[str, bool]) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _to_list(value: Union[str, List[str]]) -> List[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(v) for v in value]


def _coerce(type_hint: Any, value: Any, key: str) -> Any:
    try:
        if value is None:
            if type_hint == Optional[int]:
                return None
            raise ValueError("must not be null")
        if type_hint in (int, Optional[int]):
            if isinstance(value, bool):
                raise ValueError("expected an integer")
            return int(value)
        if type_hint is bool:
            return _to_bool(value)
        if type_hint is Path:
            return Path(str(value)).expanduser()
        if type_hint == List[str]:
            return _to_list(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {value!r} ({e})") from e


# Environment variable -> (section, key)
_ENV_OVERRIDES: Dict[str, tuple] = {
    "CLAWBOX_MAX_CONCURRENT_AGENTS": ("host", "max_concurrent_agents"),
    "CLAWBOX_MAX_WAITING_AGENTS": ("host", "max_waiting_agents"),
    "CLAWBOX_AGENT_TIMEOUT_MS": ("host", "agent_timeout_ms"),
    "CLAWBOX_POLL_INTERVAL_MS": ("host", "poll_interval_ms"),
    "CLAWBOX_HEARTBEAT_STALE_MS": ("host", "heartbeat_stale_ms"),
    "CLAWBOX_IPC_DIR": ("host", "ipc_dir"),
    "CLAWBOX_TRACES_DIR": ("host", "traces_dir"),
    "CLAWBOX_LOGS_DIR": ("host", "logs_dir"),
    "CLAWBOX_SESSIONS_FILE": ("host", "sessions_file"),
    "CLAWBOX_LOG_LEVEL": ("host", "log_level"),
    "CLAWBOX_MAX_RETRIES": ("scheduler", "max_retries"),
    "CLAWBOX_RETRY_BASE_MS": ("scheduler", "retry_base_ms"),
    "CLAWBOX_RETRY_MAX_MS": ("scheduler", "retry_max_ms"),
    "CLAWBOX_WEBHOOK_ENABLED": ("webhook", "enabled"),
    "CLAWBOX_WEBHOOK_HOST": ("webhook", "host"),
    "CLAWBOX_WEBHOOK_PORT": ("webhook", "port"),
    "CLAWBOX_WEBHOOK_TOKEN": ("webhook", "token"),
    "CLAWBOX_WEBHOOK_GROUPS": ("webhook", "groups"),
    "CLAWBOX_SANDBOX_POLL_MS": ("sandbox", "poll_interval_ms"),
    "CLAWBOX_MAX_SESSIONS": ("sandbox", "max_sessions"),
    "CLAWBOX_MAX_OUTPUT_BYTES": ("sandbox", "max_output_bytes"),
    "CLAWBOX_PROCESS_TIMEOUT_MS": ("sandbox", "default_timeout_ms"),
}


def _apply_env_overrides(config: RuntimeConfig, environ: Dict[str, str]) -> None:
    for env_var, (section_name, key) in _ENV_OVERRIDES.items():
        raw = environ.get(env_var)
        if raw is None or raw == "":
            continue
        section = getattr(config, section_name)
        field_type = section.__dataclass_fields__[key].type
        setattr(section, key, _coerce(field_type, raw, env_var))


def _load_env_files(home: Path) -> None:
    env_path = home / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    # Project .env as fallback; never overrides what is already set
    load_dotenv()


def load_runtime_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Dict[str, str]] = None,
    load_env_files: bool = True,
) -> RuntimeConfig:
    """Build the runtime configuration.

    Args:
        path: explicit config.yaml. Defaults to ``$CLAWBOX_HOME/config.yaml``;
            a missing default file is fine, a missing explicit one is not.
        environ: environment mapping to read overrides from (tests pass a dict).
        load_env_files: load ``.env`` files into ``os.environ`` first.

    Raises:
        ConfigError: unreadable YAML, unknown keys or invalid values.
    """
    if load_env_files:
        _load_env_files(CLAWBOX_HOME)
    env = os.environ if environ is None else environ

    config_path = Path(path) if path else CLAWBOX_HOME / "config.yaml"
    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {config_path}: {e}") from e
        logger.debug("Loaded config from %s", config_path)
    elif path:
        raise ConfigError(f"Config file not found: {config_path}")

    config = RuntimeConfig.from_dict(data)
    _apply_env_overrides(config, env)
    config.validate()
    return config
