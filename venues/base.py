"""Venue snapshot adapter contract."""

import logging
import math
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from core.models import ExternalPositionSnapshot

logger = logging.getLogger(__name__)


def to_float(value: Any, default: float = 0.0) -> float:
    """Coerce loosely-typed venue JSON values (str/int/None) into floats."""
    if value is None or value == "":
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(result):
        return default
    return result


class VenueSnapshotSource(ABC):
    """
    One adapter per venue.

    ``fetch`` returns the venue's authoritative list of held positions,
    normalized into ``ExternalPositionSnapshot``, or raises
    ``VenueUnavailable``. Venue-specific JSON shapes never leave the adapter.
    """

    venue: str = ""

    def __init__(self, strategy_id: str, account: Optional[str] = None):
        self.strategy_id = strategy_id
        self.account = account

    @abstractmethod
    def fetch(self, account: Optional[str] = None) -> List[ExternalPositionSnapshot]:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(venue={self.venue!r}, strategy_id={self.strategy_id!r})"
