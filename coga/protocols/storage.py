from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class StateStore(Protocol):
    """JSON key/value store for engine state. Keys are unprefixed logical names."""

    async def get(self, key: str) -> Any | None: ...

    async def get_many(self, keys: list[str]) -> dict[str, Any]: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def set_many(self, values: Mapping[str, Any]) -> None: ...

    async def remove(self, keys: list[str]) -> None: ...

    async def clear(self) -> None: ...


__all__ = ["StateStore"]
