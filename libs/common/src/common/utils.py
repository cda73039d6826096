from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def env_str(name: str, default: str = "") -> str:
    value = os.getenv(name, "").strip()
    return value or default


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def dig(document: Any, *path: str, default: Any = None) -> Any:
    """Walk nested mappings, returning ``default`` as soon as a level is missing.

    Non-mapping intermediate values count as missing, so a malformed document
    never raises here.
    """
    current = document
    for key in path:
        if not isinstance(current, Mapping):
            return default
        current = current.get(key, _MISSING)
        if current is _MISSING:
            return default
    return current


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    logger.log(level, json.dumps({"event": event, **fields}, default=str), exc_info=exc_info)
