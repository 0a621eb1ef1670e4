"""Relay configuration: env vars first, then .relay/config.json, then defaults."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import os
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

CONFIG_FILE = Path(".relay") / "config.json"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _load_file_config(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("config_file_unreadable", path=str(path), error=str(exc))
        return {}
    return data if isinstance(data, dict) else {}


def _to_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    return default


def _to_list(value: object) -> list[str]:
    """Accept a JSON list or a ``;``-separated env string."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(";") if part.strip()]


@dataclass
class RelayConfig:
    """Runtime settings for the agent relay."""

    command: str = "claude"
    mcp_config: str = ".mcp.json"
    # Empty means "derive from .mcp.json" (see escalation.default_permission_patterns).
    permission_patterns: list[str] = field(default_factory=list)
    default_timeout: float = 60.0
    managed_tool_timeout: float = 180.0
    kill_grace: float = 10.0
    request_timeout: float = 185.0
    working_dir: str | None = None
    media_dir: str | None = None
    file_detection_minutes: int = 30
    http_proxy_enabled: bool = True
    http_allowed_hosts: list[str] = field(default_factory=list)
    http_timeout: float = 30.0
    http_preview_chars: int = 2000
    prefix: str = "!"
    chunk_delay: float = 1.0

    @property
    def cwd(self) -> str:
        return self.working_dir or os.getcwd()

    @property
    def media_path(self) -> Path:
        return Path(self.media_dir or self.cwd)

    @classmethod
    def load(cls, config_file: Path | None = None) -> RelayConfig:
        """Resolve settings: ``RELAY_*`` env var, then config file, then default."""
        file_config = _load_file_config(config_file or CONFIG_FILE)
        defaults = cls()

        def pick(key: str) -> object:
            env_value = os.environ.get(f"RELAY_{key.upper()}")
            if env_value is not None and env_value != "":
                return env_value
            return file_config.get(key)

        def pick_float(key: str, default: float) -> float:
            raw = pick(key)
            if raw is None:
                return default
            try:
                return float(raw)
            except (TypeError, ValueError):
                logger.warning("config_value_invalid", key=key, value=raw)
                return default

        def pick_str(key: str, default: str | None) -> str | None:
            raw = pick(key)
            return str(raw) if raw is not None else default

        return cls(
            command=pick_str("command", defaults.command) or defaults.command,
            mcp_config=pick_str("mcp_config", defaults.mcp_config) or defaults.mcp_config,
            permission_patterns=_to_list(pick("permission_patterns")),
            default_timeout=pick_float("default_timeout", defaults.default_timeout),
            managed_tool_timeout=pick_float("managed_tool_timeout", defaults.managed_tool_timeout),
            kill_grace=pick_float("kill_grace", defaults.kill_grace),
            request_timeout=pick_float("request_timeout", defaults.request_timeout),
            working_dir=pick_str("working_dir", None),
            media_dir=pick_str("media_dir", None),
            file_detection_minutes=int(pick_float("file_detection_minutes", defaults.file_detection_minutes)),
            http_proxy_enabled=_to_bool(pick("http_proxy_enabled"), defaults.http_proxy_enabled),
            http_allowed_hosts=_to_list(pick("http_allowed_hosts")),
            http_timeout=pick_float("http_timeout", defaults.http_timeout),
            http_preview_chars=int(pick_float("http_preview_chars", defaults.http_preview_chars)),
            prefix=pick_str("prefix", defaults.prefix) or defaults.prefix,
            chunk_delay=pick_float("chunk_delay", defaults.chunk_delay),
        )
