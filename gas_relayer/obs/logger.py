"""Structured JSON logging to stdout.

Low overhead, minimal dependencies, safe for production stdout collectors.
"""

from typing import Any, Dict
from datetime import datetime, timezone
import json

from gas_relayer.obs.context import request_id_var


_LEVELS: Dict[str, int] = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
    "CRITICAL": 50,
}

_min_level = _LEVELS["INFO"]


def configure(level: str = "INFO") -> None:
    """Set the minimum level written by log_event. Unknown names mean INFO."""
    global _min_level
    _min_level = _LEVELS.get(str(level).upper(), _LEVELS["INFO"])


def log_event(event: str, **fields: Any) -> None:
    level = str(fields.pop("level", "INFO")).upper()
    if _LEVELS.get(level, _LEVELS["INFO"]) < _min_level:
        return

    now = datetime.now(timezone.utc).isoformat()
    payload: Dict[str, Any] = {
        "ts": now,
        "level": level,
        "event": event,
        "request_id": request_id_var.get(),
    }

    # Merge remaining fields
    for k, v in fields.items():
        payload[k] = v

    try:
        print(json.dumps(payload, separators=(",", ":"), default=str), flush=True)
    except Exception:
        # As a last resort, avoid crashing the app due to logging
        pass
