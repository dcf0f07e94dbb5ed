"""Asset symbol normalization for treasury exposure.

Provides a single source of truth for canonical asset handling so wallet
balances, LP legs, lending collateral and perp positions that name the same
asset differently (`wSOL`, `jitoSOL`, `SOL-PERP`, `sol/usdc`) all land on the
same key (`SOL`). Exposure aggregation and hedge matching depend on this.
"""

from __future__ import annotations

import math
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

# Pair/market suffixes stripped when a symbol arrives as a market name.
MARKET_SUFFIXES: Tuple[str, ...] = ("-PERP", "-USD", "-USDC", "-USDT", "/USD", "/USDC", "/USDT")

STABLECOINS: FrozenSet[str] = frozenset({
    "USD", "USDC", "USDT", "USDS", "USDP", "DAI", "PYUSD", "USDE", "FDUSD",
})

# Wrapped and liquid-staked variants that carry the underlying's price exposure.
_ASSET_ALIAS_MAP: Dict[str, str] = {
    "WSOL": "SOL",
    "JITOSOL": "SOL",
    "MSOL": "SOL",
    "BSOL": "SOL",
    "JUPSOL": "SOL",
    "WETH": "ETH",
    "STETH": "ETH",
    "WSTETH": "ETH",
    "WBTC": "BTC",
    "CBBTC": "BTC",
    "XBT": "BTC",
}


def canonical_asset(symbol: Optional[str]) -> str:
    """Return the canonical asset ticker (e.g., jitoSOL -> SOL, ETH-PERP -> ETH)."""

    if not symbol:
        return ""
    token = str(symbol).strip().upper().replace(" ", "")
    for suffix in MARKET_SUFFIXES:
        if token.endswith(suffix) and len(token) > len(suffix):
            token = token[: -len(suffix)]
            break
    return _ASSET_ALIAS_MAP.get(token, token)


def is_stablecoin(symbol: Optional[str]) -> bool:
    return canonical_asset(symbol) in STABLECOINS


def equivalent_assets(lhs: Optional[str], rhs: Optional[str]) -> bool:
    """Return True if two symbols resolve to the same canonical asset."""

    return canonical_asset(lhs) == canonical_asset(rhs)


def merge_asset_value_map(values: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    """Aggregate a mapping of symbol -> USD value using canonical keys.

    Non-numeric and NaN values are skipped.
    """

    merged: Dict[str, float] = {}
    if not values:
        return merged

    for raw_symbol, value in values.items():
        asset = canonical_asset(raw_symbol)
        if not asset:
            continue
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            continue
        if math.isnan(numeric):
            continue
        merged[asset] = merged.get(asset, 0.0) + numeric
    return merged


__all__ = [
    "MARKET_SUFFIXES",
    "STABLECOINS",
    "canonical_asset",
    "is_stablecoin",
    "equivalent_assets",
    "merge_asset_value_map",
]
