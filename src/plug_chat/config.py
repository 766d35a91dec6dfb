"""Configuration loading for the chat engine and the relay server.

Layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable PLUG_CHAT_CONFIG
3. Fallback to "config/default.yaml"

Environment variables with prefix ``PLUG_CHAT__`` override individual keys
(e.g., PLUG_CHAT__CLIENT__HISTORY_WINDOW=6 -> cfg["client"]["history_window"]).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "PLUG_CHAT__"
ENV_CONFIG_PATH = "PLUG_CHAT_CONFIG"
DEFAULT_CONFIG_PATH = "config/default.yaml"


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix PLUG_CHAT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        parts = [p for p in key[len(ENV_PREFIX):].lower().split("__") if p]
        if not parts:
            continue
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``PLUG_CHAT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get(ENV_CONFIG_PATH, DEFAULT_CONFIG_PATH)

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s, using defaults", path_obj)
        return _apply_env_overrides({})

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(cfg, dict):
        raise ConfigError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(cfg)


# -----------------------------
# Typed views
# -----------------------------
@dataclass
class ChatSettings:
    """Client-side knobs for one conversation engine."""

    endpoint: str = "http://127.0.0.1:8000/chat"
    connect_timeout: float = 5.0
    read_timeout: float = 120.0
    history_window: int = 10        # last K messages sent with each turn
    load_limit: int = 50            # most recent N messages loaded per session
    title_max_chars: int = 60
    preview_chars: int = 80
    max_context_items: int = 10
    source_timeout: float = 5.0     # per context source fetch
    max_residual_chars: int = 1_048_576
    data_dir: str = "data/chat"

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "ChatSettings":
        section = (cfg or {}).get("client", {}) or {}
        if not isinstance(section, dict):
            raise ConfigError("'client' section must be a mapping")
        store = (cfg or {}).get("store", {}) or {}
        defaults = cls()
        try:
            return cls(
                endpoint=str(section.get("endpoint", defaults.endpoint)),
                connect_timeout=float(section.get("connect_timeout", defaults.connect_timeout)),
                read_timeout=float(section.get("read_timeout", defaults.read_timeout)),
                history_window=int(section.get("history_window", defaults.history_window)),
                load_limit=int(section.get("load_limit", defaults.load_limit)),
                title_max_chars=int(section.get("title_max_chars", defaults.title_max_chars)),
                preview_chars=int(section.get("preview_chars", defaults.preview_chars)),
                max_context_items=int(section.get("max_context_items", defaults.max_context_items)),
                source_timeout=float(section.get("source_timeout", defaults.source_timeout)),
                max_residual_chars=int(section.get("max_residual_chars", defaults.max_residual_chars)),
                data_dir=str(store.get("data_dir", defaults.data_dir)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid client settings: {e}") from e


@dataclass
class RelaySettings:
    """Settings for the relay server in front of the model gateway."""

    upstream_url: str = "https://ai.gateway.lovable.dev/v1/chat/completions"
    model: str = "google/gemini-3-flash-preview"
    api_key_env: str = "LOVABLE_API_KEY"
    timeout: float = 120.0
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @property
    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env)

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "RelaySettings":
        section = (cfg or {}).get("relay", {}) or {}
        server = (cfg or {}).get("server", {}) or {}
        defaults = cls()
        return cls(
            upstream_url=str(section.get("upstream_url", defaults.upstream_url)),
            model=str(section.get("model", defaults.model)),
            api_key_env=str(section.get("api_key_env", defaults.api_key_env)),
            timeout=float(section.get("timeout", defaults.timeout)),
            cors_origins=list(server.get("cors_origins") or defaults.cors_origins),
        )
