from __future__ import annotations

from typing import Protocol, runtime_checkable

from coga.models.stress import InterventionSignal


@runtime_checkable
class InterventionPresenter(Protocol):
    async def present(self, signal: InterventionSignal) -> bool: ...


__all__ = ["InterventionPresenter"]
