from coga.protocols.presenter import InterventionPresenter
from coga.protocols.storage import StateStore

__all__ = [
    "InterventionPresenter",
    "StateStore",
]
