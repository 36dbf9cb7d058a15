from coga.proactivity.annoyance import AnnoyanceScheduler
from coga.proactivity.interventions import (
    INTERVENTION_DEFINITIONS,
    InterventionDefinition,
    InterventionKey,
    InterventionPolicy,
)

__all__ = [
    "INTERVENTION_DEFINITIONS",
    "AnnoyanceScheduler",
    "InterventionDefinition",
    "InterventionKey",
    "InterventionPolicy",
]
