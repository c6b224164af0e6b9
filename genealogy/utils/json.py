from __future__ import annotations

from typing import Any

import orjson

__all__ = ["dumps", "loads"]


def dumps(obj: Any) -> str:
    """Serialize *obj* to a ``str`` using orjson (bytes → str)."""
    return orjson.dumps(obj).decode()


def loads(data: str | bytes | bytearray) -> Any:
    return orjson.loads(data)
