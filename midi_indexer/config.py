"""Config file loading.

The config is a single JSON object. String values may reference environment
variables as ``$VAR`` or ``${VAR}`` so secrets such as RPC keys stay out of
the file.
"""

import json
import os
from typing import Any, Dict, Iterable

DEFAULTS: Dict[str, Any] = {
    "rpc_http": None,
    "rpc_ws": None,
    "db_path": "./midi.db",
    "abi_dir": "./abis",
    "midi_address": None,
    "market_address": None,
    "start_block": 7853362,
    "ipfs_gateway": "https://nftstorage.link/ipfs/",
    "http_timeout": 30,
    "queue_interval": 300,
    "reconcile_interval": 86400,
    "queue_max_attempts": 10,
    "event_workers": 4,
    "reconnect_delay": 5,
    "batch_size": 1000,
    "log_level": "INFO",
    "log_json": True,
}

_INT_KEYS = (
    "start_block",
    "http_timeout",
    "queue_interval",
    "reconcile_interval",
    "queue_max_attempts",
    "event_workers",
    "reconnect_delay",
    "batch_size",
)


class ConfigError(ValueError):
    pass


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        expanded = os.path.expandvars(value)
        return expanded or None
    return value


def load_config(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ConfigError(f"config root must be an object: {path}")
    return build_config(raw)


def build_config(raw: Dict[str, Any]) -> Dict[str, Any]:
    cfg = dict(DEFAULTS)
    for key, value in raw.items():
        cfg[key] = _expand(value)
    for key in _INT_KEYS:
        try:
            cfg[key] = int(cfg[key])
        except (TypeError, ValueError):
            raise ConfigError(f"config.{key} must be an integer, got {cfg[key]!r}")
    if cfg["queue_max_attempts"] < 1:
        raise ConfigError("config.queue_max_attempts must be >= 1")
    if cfg["event_workers"] < 1:
        raise ConfigError("config.event_workers must be >= 1")
    if isinstance(cfg["log_json"], str):
        cfg["log_json"] = cfg["log_json"].lower() not in ("0", "false", "no")
    return cfg


def require(cfg: Dict[str, Any], keys: Iterable[str]) -> None:
    missing = [key for key in keys if not cfg.get(key)]
    if missing:
        raise ConfigError(f"missing required config: {', '.join(missing)}")
