"""3-layer configuration system for parley.

Loads and merges configuration from:
1. Default settings (built-in)
2. User config file (~/.parley/config.yaml, or an explicit path)
3. CLI parameters (override)
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG: dict = {
    "providers": {
        "timeout_seconds": 300,
        "max_tokens": 4096,
        "ollama": {
            "enabled": True,
            "endpoint": "http://localhost:11434",
            "num_ctx": 8192,
        },
        "openai": {"enabled": True, "api_key_env": "OPENAI_API_KEY"},
        "deepseek": {"enabled": True, "api_key_env": "DEEPSEEK_API_KEY"},
        "groq": {"enabled": True, "api_key_env": "GROQ_API_KEY"},
        "together": {"enabled": True, "api_key_env": "TOGETHER_API_KEY"},
        "openrouter": {"enabled": True, "api_key_env": "OPENROUTER_API_KEY"},
        "azure-openai": {
            "enabled": True,
            "endpoint": "",
            "deployments": ["gpt-4o"],
            "api_version": "2024-10-01-preview",
            "api_key_env": "AZURE_OPENAI_KEY",
        },
        "anthropic": {"enabled": True, "api_key_env": "ANTHROPIC_API_KEY"},
        "gemini": {"enabled": True, "api_key_env": "GEMINI_API_KEY"},
    },
    "orchestration": {
        "flush_interval_ms": 25,
        "pause_poll_ms": 100,
    },
    "storage": {
        "sessions_dir": "",
    },
}


def parley_home() -> Path:
    """Directory holding the user config and session store."""
    override = os.environ.get("PARLEY_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".parley"


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts. Arrays are replaced, not merged."""
    result = {}
    for key in base:
        result[key] = base[key]
    for key, value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            result[key] = deep_merge(base_value, value)
        else:
            result[key] = value
    return result


def load_config_file(config_path: Optional[Path] = None) -> dict:
    """Load a YAML config file; a missing or unreadable file yields {}."""
    config_path = config_path or parley_home() / "config.yaml"
    if not config_path.exists():
        return {}
    try:
        content = config_path.read_text(encoding="utf-8-sig")  # utf-8-sig strips BOM
        return yaml.safe_load(content) or {}
    except (OSError, yaml.YAMLError):
        return {}


def get_effective_config(
    config_path: Optional[Path] = None,
    cli_overrides: Optional[dict] = None,
) -> dict:
    """Get the fully resolved configuration."""
    config = copy.deepcopy(DEFAULT_CONFIG)

    file_config = load_config_file(config_path)
    if file_config:
        config = deep_merge(config, file_config)

    if cli_overrides:
        config = deep_merge(config, cli_overrides)

    if not config["storage"].get("sessions_dir"):
        config["storage"]["sessions_dir"] = str(parley_home() / "sessions")

    return config


def orchestration_timings(config: dict) -> tuple[float, float]:
    """(flush interval, pause poll interval) in seconds."""
    orch = config.get("orchestration", {})
    flush = orch.get("flush_interval_ms", 25) / 1000
    poll = orch.get("pause_poll_ms", 100) / 1000
    return flush, poll
