"""
Hedge Decision Engine

Pure function from (exposures, existing perp hedges, config) to per-asset
hedge decisions. Execution is the caller's job; nothing here talks to a venue.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from core.exceptions import DecisionConfigInvalid
from core.models import HedgeAction, HedgeDecision, HedgePosition, HedgeSide, TreasuryExposure
from infra.symbols import canonical_asset

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HedgeConfig:
    """
    Hedge policy (policy.yaml ``hedge`` section).

    target_ratio: fraction of exposure to keep shorted, in [0, 1]
    rebalance_threshold: dead-band around the target, strictly positive
    min_exposure_usd: assets below this exposure are never hedged
    whitelist: when non-empty, only these assets are hedged
    max_short_usd: cap on the total short per asset (None = uncapped)
    min_action_usd: adjustments smaller than this are reported IN_RANGE
    """
    target_ratio: float = 0.5
    rebalance_threshold: float = 0.15
    min_exposure_usd: float = 100.0
    whitelist: tuple = field(default_factory=tuple)
    max_short_usd: Optional[float] = None
    min_action_usd: float = 0.0

    def __post_init__(self):
        def _finite(value) -> bool:
            return isinstance(value, (int, float)) and not math.isnan(value) and not math.isinf(value)

        if not _finite(self.target_ratio) or not 0.0 <= self.target_ratio <= 1.0:
            raise DecisionConfigInvalid(f"target_ratio must be within [0, 1], got {self.target_ratio!r}")
        if not _finite(self.rebalance_threshold) or self.rebalance_threshold <= 0:
            raise DecisionConfigInvalid(f"rebalance_threshold must be > 0, got {self.rebalance_threshold!r}")
        if not _finite(self.min_exposure_usd) or self.min_exposure_usd < 0:
            raise DecisionConfigInvalid(f"min_exposure_usd must be >= 0, got {self.min_exposure_usd!r}")
        if self.max_short_usd is not None and (not _finite(self.max_short_usd) or self.max_short_usd < 0):
            raise DecisionConfigInvalid(f"max_short_usd must be >= 0, got {self.max_short_usd!r}")
        if not _finite(self.min_action_usd) or self.min_action_usd < 0:
            raise DecisionConfigInvalid(f"min_action_usd must be >= 0, got {self.min_action_usd!r}")
        object.__setattr__(self, "whitelist", tuple(canonical_asset(s) for s in self.whitelist))

    @classmethod
    def from_policy(cls, policy: Optional[Dict[str, Any]]) -> "HedgeConfig":
        cfg = (policy or {}).get("hedge", {}) or {}
        max_short = cfg.get("max_short_usd")
        try:
            values = dict(
                target_ratio=float(cfg.get("target_ratio", 0.5)),
                rebalance_threshold=float(cfg.get("rebalance_threshold", 0.15)),
                min_exposure_usd=float(cfg.get("min_exposure_usd", 100.0)),
                whitelist=tuple(cfg.get("whitelist") or ()),
                max_short_usd=float(max_short) if max_short is not None else None,
                min_action_usd=float(cfg.get("min_action_usd", 0.0)),
            )
        except (TypeError, ValueError) as exc:
            raise DecisionConfigInvalid(f"hedge config is malformed: {exc}") from exc
        return cls(**values)


def short_notional_by_asset(hedge_positions: Iterable[HedgePosition]) -> Dict[str, float]:
    shorts: Dict[str, float] = {}
    for position in hedge_positions:
        if position.side != HedgeSide.SHORT:
            continue
        coin = canonical_asset(position.coin)
        shorts[coin] = shorts.get(coin, 0.0) + abs(position.size_usd)
    return shorts


def is_hedgeable(exposure: TreasuryExposure, config: HedgeConfig) -> bool:
    if not exposure.hl_listed:
        return False
    if exposure.value_usd < config.min_exposure_usd or exposure.value_usd <= 0:
        return False
    if config.whitelist and canonical_asset(exposure.symbol) not in config.whitelist:
        return False
    return True


def decide(exposures: Iterable[TreasuryExposure],
           hedge_positions: Iterable[HedgePosition],
           config: HedgeConfig) -> List[HedgeDecision]:
    """
    One decision per hedgeable asset, in exposure input order.

    currentRatio below target - threshold opens (increases) the short by
    target_usd - short_usd; above target + threshold closes (reduces) it by
    short_usd - target_usd; anything in between is IN_RANGE.
    """
    shorts = short_notional_by_asset(hedge_positions)
    target = config.target_ratio
    decisions: List[HedgeDecision] = []

    for exposure in exposures:
        if not is_hedgeable(exposure, config):
            continue

        symbol = canonical_asset(exposure.symbol)
        short_usd = shorts.get(symbol, 0.0)
        current_ratio = short_usd / exposure.value_usd
        target_usd = exposure.value_usd * target

        action, delta = HedgeAction.IN_RANGE, 0.0
        if current_ratio < target - config.rebalance_threshold:
            action, delta = HedgeAction.OPEN_HEDGE, target_usd - short_usd
            if config.max_short_usd is not None:
                headroom = config.max_short_usd - short_usd
                if headroom < delta:
                    logger.info(f"{symbol} hedge capped at ${config.max_short_usd:,.2f} total short")
                    delta = max(headroom, 0.0)
        elif current_ratio > target + config.rebalance_threshold:
            action, delta = HedgeAction.CLOSE_HEDGE, short_usd - target_usd

        if action != HedgeAction.IN_RANGE and delta <= max(config.min_action_usd, 0.0):
            logger.debug(f"{symbol} {action.value} of ${delta:,.2f} below minimum action size, holding")
            action, delta = HedgeAction.IN_RANGE, 0.0

        decision = HedgeDecision(
            symbol=symbol,
            action=action,
            delta_usd=delta,
            exposure_usd=exposure.value_usd,
            short_usd=short_usd,
            current_ratio=current_ratio,
            target_ratio=target,
        )
        logger.info(decision.describe())
        decisions.append(decision)

    return decisions


class HedgeDecisionEngine:
    """Binds a validated HedgeConfig to ``decide``."""

    def __init__(self, config: Optional[HedgeConfig] = None):
        self.config = config or HedgeConfig()

    def decide(self, exposures: Iterable[TreasuryExposure],
               hedge_positions: Iterable[HedgePosition]) -> List[HedgeDecision]:
        return decide(exposures, hedge_positions, self.config)
