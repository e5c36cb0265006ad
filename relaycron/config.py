"""Configuration helpers for relaycron."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List

import yaml


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() not in ("0", "false", "no", "")
    return bool(value)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load configuration from ``path`` or the ``RELAYCRON_CONFIG`` env var.

    Values found in the YAML file are overridden by their ``RELAYCRON_*``
    environment variable counterparts. Missing keys fall back to defaults:

    ``state_dir``
        Directory holding one state file per task group
        (``~/.relaycron/state``).
    ``queue_interval``
        Seconds the execution queue waits between iterations (``1.0``).
    ``fallback_delay_ms``
        Delay used when a recurrence policy fails (``60000``).
    ``touch_sessions``
        Re-persist still valid sessions when a process restores them
        (``False``).
    ``identities``
        Identities tasks run for (``["default"]``).
    ``groups``
        ``module:attr`` references to task groups (``[]``).
    ``notify_webhook_url``
        Optional URL receiving notifications as JSON.
    ``log_level``
        Logging level used by the CLI (``INFO``).
    """

    cfg: Dict[str, Any] = {}
    path = path or os.getenv("RELAYCRON_CONFIG")
    if path and os.path.exists(path):
        with open(path, "r") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{path}: configuration must be a mapping")
        cfg.update(loaded)

    cfg["state_dir"] = str(
        os.getenv(
            "RELAYCRON_STATE_DIR",
            cfg.get("state_dir", Path.home() / ".relaycron" / "state"),
        )
    )
    cfg["queue_interval"] = float(
        os.getenv("RELAYCRON_QUEUE_INTERVAL", cfg.get("queue_interval", 1.0))
    )
    if cfg["queue_interval"] < 0:
        raise ValueError("queue_interval must not be negative")
    cfg["fallback_delay_ms"] = int(
        os.getenv("RELAYCRON_FALLBACK_DELAY_MS", cfg.get("fallback_delay_ms", 60_000))
    )
    if cfg["fallback_delay_ms"] < 0:
        raise ValueError("fallback_delay_ms must not be negative")

    touch_env = os.getenv("RELAYCRON_TOUCH_SESSIONS")
    if touch_env is not None:
        cfg["touch_sessions"] = _as_bool(touch_env)
    else:
        cfg["touch_sessions"] = _as_bool(cfg.get("touch_sessions", False))

    identities = _as_list(os.getenv("RELAYCRON_IDENTITIES", cfg.get("identities")))
    cfg["identities"] = identities or ["default"]
    cfg["groups"] = _as_list(os.getenv("RELAYCRON_GROUPS", cfg.get("groups")))

    if "RELAYCRON_NOTIFY_WEBHOOK" in os.environ:
        cfg["notify_webhook_url"] = os.environ["RELAYCRON_NOTIFY_WEBHOOK"]
    else:
        cfg.setdefault("notify_webhook_url", None)

    cfg["log_level"] = str(
        os.getenv("RELAYCRON_LOG_LEVEL", cfg.get("log_level", "INFO"))
    ).upper()

    return cfg
