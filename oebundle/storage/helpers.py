from __future__ import annotations

import contextlib
import json
from datetime import datetime, timezone
from typing import Any


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def dumps_compact(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def loads_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    with contextlib.suppress(ValueError):
        candidate = json.loads(raw)
        if isinstance(candidate, dict):
            return candidate
    return {}


def loads_str_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    with contextlib.suppress(ValueError):
        candidate = json.loads(raw)
        if isinstance(candidate, list):
            return [str(item) for item in candidate]
    return []
