"""Tolerant readers for loosely-typed external JSON.

Catalog and workflow payloads vary between API versions: a field may be a
string in one response and an object in the next. These helpers normalize
the variants the hub understands and return ``None`` for everything else.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable


@dataclass(frozen=True)
class NamedRef:
    id: str | None
    name: str | None


def coerce_text(value: Any) -> str | None:
    # Scalars become their text form; objects and arrays keep their raw JSON.
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return json.dumps(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def first_string(payload: Any, *keys: str) -> str | None:
    # Return the first key that holds a non-empty string.
    if not isinstance(payload, dict):
        return None
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def decode_named_ref(value: Any, *name_keys: str) -> NamedRef | None:
    # A bare string is both id and name; an object contributes its id and display name.
    if isinstance(value, str):
        return NamedRef(id=value, name=value) if value else None
    if isinstance(value, dict):
        name = first_string(value, *(name_keys or ("name", "displayName")))
        return NamedRef(id=first_string(value, "id"), name=name)
    return None


def as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


def string_list(values: Any, *name_keys: str) -> list[str]:
    # Lists may hold strings or objects carrying a name.
    if not isinstance(values, list):
        return []
    result: list[str] = []
    for item in values:
        if isinstance(item, str) and item:
            result.append(item)
        elif isinstance(item, dict):
            name = first_string(item, *(name_keys or ("name", "displayName")))
            if name:
                result.append(name)
    return result


def dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered
