"""
Polymarket adapter.

Reads the public Data API positions view, which aggregates every fill for a
wallet into one row per outcome token. That aggregate is what the ledger is
reconciled against.
"""

import logging
from typing import Any, Dict, List, Optional

from core.exceptions import VenueUnavailable
from core.models import ExternalPositionSnapshot
from venues.base import VenueSnapshotSource, to_float
from venues.http import VenueHttpClient

logger = logging.getLogger(__name__)

DATA_API_BASE = "https://data-api.polymarket.com"


class PolymarketSnapshotSource(VenueSnapshotSource):
    venue = "polymarket"

    def __init__(self, strategy_id: str = "polymarket", account: Optional[str] = None,
                 client: Optional[VenueHttpClient] = None, timeout: float = 10.0):
        super().__init__(strategy_id, account)
        self.client = client or VenueHttpClient(self.venue, DATA_API_BASE, timeout=timeout)

    def fetch(self, account: Optional[str] = None) -> List[ExternalPositionSnapshot]:
        wallet = account or self.account
        if not wallet:
            raise VenueUnavailable(self.venue, ValueError("no wallet address configured"))

        payload = self.client.get("/positions", params={"user": wallet, "sizeThreshold": 0})
        raw_positions = self._extract_rows(payload)

        snapshots = []
        for raw in raw_positions:
            snapshot = self.normalize(raw)
            if snapshot is not None:
                snapshots.append(snapshot)

        logger.debug(f"Polymarket returned {len(snapshots)} position(s) for {wallet[:10]}...")
        return snapshots

    @staticmethod
    def _extract_rows(payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, list):
            return [row for row in payload if isinstance(row, dict)]
        if isinstance(payload, dict):
            for key in ("positions", "data"):
                rows = payload.get(key)
                if isinstance(rows, list):
                    return [row for row in rows if isinstance(row, dict)]
        raise VenueUnavailable("polymarket", ValueError(f"unexpected positions payload: {type(payload).__name__}"))

    @staticmethod
    def normalize(raw: Dict[str, Any]) -> Optional[ExternalPositionSnapshot]:
        token_id = raw.get("asset") or raw.get("tokenId")
        if not token_id:
            logger.debug(f"Skipping Polymarket row without token id: {raw}")
            return None

        initial_value = to_float(raw.get("initialValue"))
        current_value = to_float(raw.get("currentValue"))
        cash_pnl = raw.get("cashPnl")
        condition_id = raw.get("conditionId") or ""

        return ExternalPositionSnapshot(
            venue_asset_key=str(token_id),
            size=to_float(raw.get("size")),
            avg_entry_price=to_float(raw.get("avgPrice")),
            current_price=to_float(raw.get("curPrice")),
            initial_value_usd=initial_value,
            current_value_usd=current_value,
            pnl_usd=to_float(cash_pnl) if cash_pnl is not None else None,
            title=raw.get("title") or condition_id[:20],
            expiry=raw.get("endDate"),
            outcome=raw.get("outcome"),
            metadata={
                "condition_id": condition_id,
                "token_id": str(token_id),
                "redeemable": bool(raw.get("redeemable", False)),
            },
        )
