"""
Hyperliquid adapter.

The perp venue plays three roles: it reports the hedge positions themselves
(as ledger snapshots and as ``HedgePosition`` rows for the decision engine),
and it publishes the listing set that decides which assets are hedgeable.
"""

import logging
from typing import Any, Dict, List, Optional, Set

from core.exceptions import VenueUnavailable
from core.models import ExternalPositionSnapshot, HedgePosition, HedgeSide
from venues.base import VenueSnapshotSource, to_float
from venues.http import VenueHttpClient

logger = logging.getLogger(__name__)

INFO_API_BASE = "https://api.hyperliquid.xyz"


def perp_key(coin: str) -> str:
    return f"{coin.upper()}-PERP"


class HyperliquidSnapshotSource(VenueSnapshotSource):
    venue = "hyperliquid"

    def __init__(self, strategy_id: str = "hyperliquid", account: Optional[str] = None,
                 client: Optional[VenueHttpClient] = None, timeout: float = 10.0):
        super().__init__(strategy_id, account)
        self.client = client or VenueHttpClient(self.venue, INFO_API_BASE, timeout=timeout)

    def _clearinghouse_state(self, account: Optional[str]) -> Dict[str, Any]:
        user = account or self.account
        if not user:
            raise VenueUnavailable(self.venue, ValueError("no account address configured"))
        state = self.client.post("/info", {"type": "clearinghouseState", "user": user})
        if not isinstance(state, dict):
            raise VenueUnavailable(self.venue, ValueError("unexpected clearinghouse payload"))
        return state

    @staticmethod
    def _positions(state: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows = []
        for entry in state.get("assetPositions") or []:
            position = entry.get("position") if isinstance(entry, dict) else None
            if isinstance(position, dict) and position.get("coin"):
                rows.append(position)
        return rows

    @staticmethod
    def _leverage(position: Dict[str, Any]) -> float:
        raw = position.get("leverage")
        if isinstance(raw, dict):
            raw = raw.get("value")
        return max(to_float(raw, 1.0), 1.0)

    def fetch(self, account: Optional[str] = None) -> List[ExternalPositionSnapshot]:
        state = self._clearinghouse_state(account)
        snapshots = []
        for position in self._positions(state):
            snapshot = self.normalize(position)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    @classmethod
    def normalize(cls, position: Dict[str, Any]) -> Optional[ExternalPositionSnapshot]:
        coin = str(position["coin"]).upper()
        signed_size = to_float(position.get("szi"))
        size = abs(signed_size)
        if size == 0:
            return None

        entry_price = to_float(position.get("entryPx"))
        notional = to_float(position.get("positionValue"))
        leverage = cls._leverage(position)
        unrealized = to_float(position.get("unrealizedPnl"))
        # Cost basis is the margin posted, not the notional
        margin = size * entry_price / leverage
        mark_price = notional / size if size else 0.0

        return ExternalPositionSnapshot(
            venue_asset_key=perp_key(coin),
            size=size,
            avg_entry_price=entry_price,
            current_price=mark_price,
            initial_value_usd=margin,
            current_value_usd=margin + unrealized,
            pnl_usd=unrealized,
            title=f"{'SHORT' if signed_size < 0 else 'LONG'} {coin} {leverage:g}x",
            metadata={
                "coin": coin,
                "side": HedgeSide.SHORT.value if signed_size < 0 else HedgeSide.LONG.value,
                "leverage": leverage,
                "notional_usd": notional,
                "mark_price": mark_price,
                "liquidation_price": to_float(position.get("liquidationPx")),
            },
        )

    def hedge_positions(self, account: Optional[str] = None) -> List[HedgePosition]:
        state = self._clearinghouse_state(account)
        hedges = []
        for position in self._positions(state):
            signed_size = to_float(position.get("szi"))
            if signed_size == 0:
                continue
            size = abs(signed_size)
            notional = to_float(position.get("positionValue"))
            hedges.append(HedgePosition(
                coin=str(position["coin"]).upper(),
                side=HedgeSide.SHORT if signed_size < 0 else HedgeSide.LONG,
                size_usd=notional,
                entry_price=to_float(position.get("entryPx")),
                mark_price=notional / size,
                liquidation_price=to_float(position.get("liquidationPx")),
                leverage=self._leverage(position),
                unrealized_pnl_usd=to_float(position.get("unrealizedPnl")),
            ))
        return hedges

    def listed_coins(self) -> Set[str]:
        meta = self.client.post("/info", {"type": "meta"})
        universe = meta.get("universe") if isinstance(meta, dict) else None
        if not isinstance(universe, list):
            raise VenueUnavailable(self.venue, ValueError("meta response has no universe"))
        coins = {
            str(asset["name"]).upper()
            for asset in universe
            if isinstance(asset, dict) and asset.get("name") and not asset.get("isDelisted")
        }
        logger.debug(f"Hyperliquid lists {len(coins)} perp(s)")
        return coins
