"""Normalization helpers shared by the transcript formats."""

from __future__ import annotations

import copy
import json
from datetime import datetime, timezone
from typing import Any

# Key in Message.extra for format bookkeeping (unknown content blocks,
# per-tool leftovers). Never written back into a provider row.
PRIVATE_KEY = "_clihub"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse common provider timestamp formats into aware UTC datetimes."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return from_epoch_ms(value)
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def from_epoch_ms(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def to_epoch_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(round(value.timestamp() * 1000))


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def coerce_text(value: Any) -> str:
    """Render arbitrary values into stable text for transcript storage."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            else:
                parts.append(coerce_text(item))
        return "\n".join(p for p in parts if p)
    try:
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        return str(value)


def load_arguments(arguments: str) -> Any:
    """Inverse of the JSON text stored in ToolCall.arguments."""
    if not arguments:
        return {}
    try:
        return json.loads(arguments)
    except json.JSONDecodeError:
        return arguments


def split_fields(
    data: dict[str, Any],
    known: set[str],
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split *data* into (known fields, deep-copied leftovers)."""
    picked = {k: v for k, v in data.items() if k in known}
    leftover = {k: copy.deepcopy(v) for k, v in data.items() if k not in known}
    return picked, leftover


def deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    """Merge *extra* into *base* in place; nested dicts merge, base wins."""
    for key, value in extra.items():
        if key == PRIVATE_KEY:
            continue
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            deep_merge(current, value)
        elif key not in base:
            base[key] = copy.deepcopy(value)
    return base


def first_line(text: str, limit: int) -> str:
    stripped = text.strip()
    if not stripped:
        return ""
    return stripped.splitlines()[0][:limit]
