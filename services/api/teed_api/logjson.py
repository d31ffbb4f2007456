from __future__ import annotations

import sys
from datetime import UTC, datetime
from typing import Any

import orjson

from teed_api.core.config import Settings


_ALWAYS_LEVELS = {"warning", "error"}


def log_json(level: str, event: str, **fields: Any) -> None:
    """
    Emit one structured log line on stdout.

    Info records are gated by TEED_LOG_JSON; warnings and errors always go out so
    operators can reconcile failed writes without turning on access logs.
    """
    lvl = str(level or "info").lower()
    if lvl not in _ALWAYS_LEVELS and not Settings().log_json:
        return

    payload: dict[str, Any] = {
        "ts": datetime.now(UTC).isoformat(),
        "level": lvl,
        "event": str(event),
    }
    for key, value in fields.items():
        if value is not None:
            payload[key] = value

    try:
        line = orjson.dumps(payload, default=str).decode("utf-8")
    except Exception:  # noqa: BLE001
        return
    sys.stdout.write(line + "\n")
    sys.stdout.flush()
