"""Venue snapshot adapters"""

from .base import VenueSnapshotSource  # noqa: F401
from .hyperliquid import HyperliquidSnapshotSource  # noqa: F401
from .polymarket import PolymarketSnapshotSource  # noqa: F401
from .static import StaticSnapshotSource  # noqa: F401

__all__ = [
	"VenueSnapshotSource",
	"HyperliquidSnapshotSource",
	"PolymarketSnapshotSource",
	"StaticSnapshotSource",
]
