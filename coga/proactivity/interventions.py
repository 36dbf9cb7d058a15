"""Intervention catalogue and the severity-to-intervention selection policy."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from coga.models.stress import StressSeverity


class InterventionKey(StrEnum):
    one_breath_reset = "oneBreathReset"
    box_breathing = "boxBreathing"
    twenty_twenty_gaze = "twentyTwentyGaze"
    figure_eight_smooth_pursuit = "figureEightSmoothPursuit"
    near_far_focus_shift = "nearFarFocusShift"
    micro_break = "microBreak"


class DisplayMode(StrEnum):
    corner = "corner"
    modal = "modal"
    fullscreen = "fullscreen"


class InterventionDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: InterventionKey
    id: str
    name: str
    category: str
    duration_seconds: int = Field(gt=0)
    display_mode: DisplayMode
    targets: frozenset[StressSeverity]


INTERVENTION_DEFINITIONS: dict[InterventionKey, InterventionDefinition] = {
    definition.key: definition
    for definition in (
        InterventionDefinition(
            key=InterventionKey.one_breath_reset,
            id="BR-01",
            name="One Breath Reset",
            category="breathing",
            duration_seconds=10,
            display_mode=DisplayMode.corner,
            targets=frozenset({StressSeverity.mild, StressSeverity.moderate}),
        ),
        InterventionDefinition(
            key=InterventionKey.box_breathing,
            id="BR-02",
            name="Box Breathing",
            category="breathing",
            duration_seconds=60,
            display_mode=DisplayMode.modal,
            targets=frozenset({StressSeverity.moderate, StressSeverity.severe}),
        ),
        InterventionDefinition(
            key=InterventionKey.twenty_twenty_gaze,
            id="OC-01",
            name="20-20-20 Gaze",
            category="eye",
            duration_seconds=20,
            display_mode=DisplayMode.corner,
            targets=frozenset({StressSeverity.mild, StressSeverity.moderate}),
        ),
        InterventionDefinition(
            key=InterventionKey.figure_eight_smooth_pursuit,
            id="OC-02",
            name="Figure-Eight Smooth Pursuit",
            category="eye",
            duration_seconds=30,
            display_mode=DisplayMode.fullscreen,
            targets=frozenset({StressSeverity.moderate}),
        ),
        InterventionDefinition(
            key=InterventionKey.near_far_focus_shift,
            id="OC-03",
            name="Near-Far Focus Shift",
            category="eye",
            duration_seconds=40,
            display_mode=DisplayMode.modal,
            targets=frozenset({StressSeverity.moderate}),
        ),
        InterventionDefinition(
            key=InterventionKey.micro_break,
            id="BRK-01",
            name="Micro Break",
            category="break",
            duration_seconds=180,
            display_mode=DisplayMode.fullscreen,
            targets=frozenset({StressSeverity.severe}),
        ),
    )
}

INTERVENTION_SEVERITY_PRIORITY: dict[StressSeverity, tuple[InterventionKey, ...]] = {
    StressSeverity.mild: (
        InterventionKey.one_breath_reset,
        InterventionKey.twenty_twenty_gaze,
    ),
    StressSeverity.moderate: (
        InterventionKey.twenty_twenty_gaze,
        InterventionKey.one_breath_reset,
        InterventionKey.box_breathing,
        InterventionKey.figure_eight_smooth_pursuit,
        InterventionKey.near_far_focus_shift,
    ),
    StressSeverity.severe: (
        InterventionKey.micro_break,
        InterventionKey.box_breathing,
        InterventionKey.near_far_focus_shift,
    ),
}

# Tier search order; a lower tier is only reached when a tier has no enabled
# intervention targeting it.
SEVERITY_SEARCH_ORDER: dict[StressSeverity, tuple[StressSeverity, ...]] = {
    StressSeverity.severe: (StressSeverity.severe, StressSeverity.moderate, StressSeverity.mild),
    StressSeverity.moderate: (StressSeverity.moderate, StressSeverity.mild, StressSeverity.severe),
    StressSeverity.mild: (StressSeverity.mild, StressSeverity.moderate),
}


class InterventionPolicy:
    """Pick an intervention for a severity, avoiding the most recently used ones.

    Tiers are searched in order and the first tier with any candidate decides:
    its candidates are the enabled entries of its priority list that target
    it. The first candidate not among the last ``recent_window`` picks wins;
    if every candidate was used recently the top one is returned anyway.
    Recency never pushes the search into a lower tier.
    """

    def __init__(
        self,
        *,
        enabled: Iterable[InterventionKey | str] | None = None,
        priority: Mapping[StressSeverity, tuple[InterventionKey, ...]] | None = None,
        definitions: Mapping[InterventionKey, InterventionDefinition] | None = None,
        recent_window: int = 3,
    ) -> None:
        self._definitions = dict(definitions or INTERVENTION_DEFINITIONS)
        self._priority = dict(priority or INTERVENTION_SEVERITY_PRIORITY)
        self._enabled = (
            frozenset(self._definitions)
            if enabled is None
            else frozenset(InterventionKey(key) for key in enabled)
        )
        self._recent: deque[InterventionKey] = deque(maxlen=max(0, recent_window))

    @property
    def recent(self) -> tuple[InterventionKey, ...]:
        return tuple(self._recent)

    def definition(self, key: InterventionKey | str) -> InterventionDefinition:
        return self._definitions[InterventionKey(key)]

    def tier_candidates(self, tier: StressSeverity) -> list[InterventionKey]:
        ordered: list[InterventionKey] = []
        for key in self._priority.get(tier, ()):
            definition = self._definitions.get(key)
            if definition is None or key not in self._enabled or key in ordered:
                continue
            if tier in definition.targets:
                ordered.append(key)
        return ordered

    def candidates(self, severity: StressSeverity) -> list[InterventionKey]:
        """Candidates of the first tier in search order that has any."""
        for tier in SEVERITY_SEARCH_ORDER[severity]:
            ordered = self.tier_candidates(tier)
            if ordered:
                return ordered
        return []

    def select(self, severity: StressSeverity) -> InterventionKey | None:
        candidates = self.candidates(severity)
        if not candidates:
            return None
        for key in candidates:
            if key not in self._recent:
                return key
        return candidates[0]

    def remember(self, key: InterventionKey | str) -> None:
        self._recent.append(InterventionKey(key))

    def forget_recent(self) -> None:
        self._recent.clear()


__all__ = [
    "DisplayMode",
    "INTERVENTION_DEFINITIONS",
    "INTERVENTION_SEVERITY_PRIORITY",
    "InterventionDefinition",
    "InterventionKey",
    "InterventionPolicy",
    "SEVERITY_SEARCH_ORDER",
]
