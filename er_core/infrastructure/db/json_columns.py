from __future__ import annotations

import json
from typing import Any


def to_json(value: object, *, default: str | None = None) -> str | None:
    if value is None:
        return default
    return json.dumps(value, ensure_ascii=False, default=str)


def from_json(value: object, *, default: Any = None) -> Any:
    if value is None:
        return default
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(str(value))
    except ValueError:
        return default
