"""
Treasury Exposure Aggregation

Sums what the treasury holds of each asset across spot wallets, liquidity
pools and lending collateral into one TreasuryExposure per canonical symbol.
"""

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from core.exceptions import AggregationInconsistency
from core.models import AssetBalance, PositionRecord, TreasuryExposure
from infra.symbols import STABLECOINS, canonical_asset

logger = logging.getLogger(__name__)

SOURCES = ("spot", "lp", "collateral")

# Ledger rows from the hedge venue are the hedge, not exposure
DEFAULT_EXCLUDED_STRATEGIES = ("hyperliquid",)


@dataclass
class ExposureReport:
    exposures: List[TreasuryExposure]
    inconsistencies: List[AggregationInconsistency] = field(default_factory=list)


@dataclass
class _Accumulator:
    spot_usd: float = 0.0
    lp_usd: float = 0.0
    collateral_usd: float = 0.0
    invalid: bool = False

    def add(self, source: str, value: float) -> None:
        if source == "lp":
            self.lp_usd += value
        elif source == "collateral":
            self.collateral_usd += value
        else:
            self.spot_usd += value

    @property
    def total(self) -> float:
        return self.spot_usd + self.lp_usd + self.collateral_usd


class ExposureAggregator:
    """
    Per-asset net exposure from raw balances and the reconciled ledger.

    Ledger rows contribute only when their metadata carries
    ``exposure_weights`` (symbol -> fraction of current value), e.g. an LP
    position split across its two legs.
    """

    def __init__(self,
                 ignore_symbols: Optional[Iterable[str]] = None,
                 exclude_strategies: Optional[Iterable[str]] = None):
        ignore = STABLECOINS if ignore_symbols is None else ignore_symbols
        self.ignore_symbols: Set[str] = {canonical_asset(s) for s in ignore}
        excluded = DEFAULT_EXCLUDED_STRATEGIES if exclude_strategies is None else exclude_strategies
        self.exclude_strategies: Set[str] = set(excluded)

    def _ledger_components(self, rows: Iterable[PositionRecord]) -> List[AssetBalance]:
        components = []
        for row in rows:
            if not row.is_open or row.strategy_id in self.exclude_strategies:
                continue
            weights = row.metadata.get("exposure_weights")
            if not isinstance(weights, dict):
                continue
            source = row.metadata.get("exposure_source", "lp")
            for symbol, weight in weights.items():
                try:
                    value = row.current_value_usd * float(weight)
                except (TypeError, ValueError):
                    value = float("nan")
                components.append(AssetBalance(symbol=symbol, value_usd=value, source=source))
        return components

    def aggregate_report(self,
                         balances: Iterable[AssetBalance],
                         ledger_rows: Iterable[PositionRecord] = (),
                         listed_coins: Optional[Iterable[str]] = None) -> ExposureReport:
        listed = {canonical_asset(c) for c in listed_coins} if listed_coins is not None else set()
        acc: "OrderedDict[str, _Accumulator]" = OrderedDict()
        inconsistencies: List[AggregationInconsistency] = []

        for balance in list(balances) + self._ledger_components(ledger_rows):
            symbol = canonical_asset(balance.symbol)
            if not symbol or symbol in self.ignore_symbols:
                continue
            bucket = acc.setdefault(symbol, _Accumulator())
            value = balance.value_usd
            if value is None or not math.isfinite(value) or value < 0:
                issue = AggregationInconsistency(symbol, balance.source, value)
                logger.warning(f"Dropping {symbol} from exposure: {issue}")
                inconsistencies.append(issue)
                bucket.invalid = True
                continue
            if balance.source not in SOURCES:
                logger.debug(f"Unknown balance source {balance.source!r} for {symbol}, counting as spot")
            bucket.add(balance.source, value)

        exposures = []
        for symbol, bucket in acc.items():
            if bucket.invalid or bucket.total <= 0:
                continue
            exposures.append(TreasuryExposure(
                symbol=symbol,
                value_usd=bucket.total,
                hl_listed=symbol in listed,
                spot_usd=bucket.spot_usd,
                lp_usd=bucket.lp_usd,
                collateral_usd=bucket.collateral_usd,
            ))

        logger.debug(f"Aggregated {len(exposures)} exposure(s), {len(inconsistencies)} inconsistency(ies)")
        return ExposureReport(exposures=exposures, inconsistencies=inconsistencies)

    def aggregate(self,
                  balances: Iterable[AssetBalance],
                  ledger_rows: Iterable[PositionRecord] = (),
                  listed_coins: Optional[Iterable[str]] = None) -> List[TreasuryExposure]:
        return self.aggregate_report(balances, ledger_rows, listed_coins).exposures


def exposure_by_symbol(exposures: Iterable[TreasuryExposure]) -> Dict[str, TreasuryExposure]:
    return {e.symbol: e for e in exposures}
