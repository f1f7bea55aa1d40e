"""Configuration loading utilities.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable STREAMCHAT_CONFIG
3. Fallback to "config/default.yaml"

Values from the file are merged over built-in defaults, then overridden from
environment variables with prefix ``STREAMCHAT__`` (e.g.,
STREAMCHAT__MODEL__BASE_URL=http://127.0.0.1:8000).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "STREAMCHAT__"

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "model": {"backend": "gguf", "model_path": "models/model.gguf", "n_ctx": 4096},
    "session": {"owner_id": "default", "placeholder_title": "New conversation"},
    "store": {"data_dir": "data"},
    "logging": {"level": "INFO", "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"},
}


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix STREAMCHAT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., STREAMCHAT__MODEL__MODEL_PATH -> cfg["model"]["model_path"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``STREAMCHAT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with defaults and environment
        overrides applied.
    """
    if path is None:
        path = os.environ.get("STREAMCHAT_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))


def configure_logging(cfg: Dict[str, Any]) -> None:
    """Set up root logging from the ``logging`` section."""
    log_cfg = cfg.get("logging", {}) or {}
    level = str(log_cfg.get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=log_cfg.get("format", DEFAULTS["logging"]["format"]),
    )
