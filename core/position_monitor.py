"""
Position Monitoring: Stop-Loss, Liquidation Proximity and Strategy Caps

Evaluates reconciled OPEN rows and emits advisory PositionActions for the
execution layer. Also answers "does a new position of $X fit under this
strategy's cap?" and summarizes the portfolio per strategy.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from core.models import PositionRecord

logger = logging.getLogger(__name__)

# Max fraction of total portfolio value per strategy
DEFAULT_STRATEGY_CAPS: Dict[str, float] = {
    "polymarket": 0.15,
    "hyperliquid": 0.20,
    "kamino": 0.30,
    "jito": 0.25,
    "jupiter_swap": 0.10,
}


@dataclass
class PositionAction:
    """Action the execution layer should take on a ledger row"""
    position_id: str
    action: str  # "STOP_LOSS", "TAKE_PROFIT", "EXPIRE"
    reason: str
    urgency: str  # "critical", "high", "medium", "low"


@dataclass
class ExposureCheck:
    allowed: bool
    current_exposure_usd: float
    cap_usd: float
    headroom_usd: float
    reason: Optional[str] = None


@dataclass
class StrategyMetrics:
    open_positions: int = 0
    total_value_usd: float = 0.0
    unrealized_pnl_usd: float = 0.0


@dataclass
class PortfolioMetrics:
    by_strategy: Dict[str, StrategyMetrics] = field(default_factory=dict)
    total_open_positions: int = 0
    total_value_usd: float = 0.0
    total_unrealized_pnl_usd: float = 0.0
    total_realized_pnl_usd: float = 0.0


def _parse_expiry(raw) -> Optional[datetime]:
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class PositionMonitor:
    """
    Watches OPEN ledger rows for exit conditions.

    Responsibilities:
    - Stop-loss on positions that lost more than stop_loss_pct of cost
    - Optional take-profit
    - Liquidation proximity on leveraged perp rows
    - Flag rows whose market expiry has passed but are still OPEN
    - Strategy cap gating and portfolio metrics
    """

    def __init__(self, policy: Dict):
        """
        Args:
            policy: Policy config dict (reads the ``monitor`` section)
        """
        self.policy = policy
        self.monitor_config = policy.get("monitor", {}) or {}

        self.enabled = self.monitor_config.get("enabled", True)
        self.stop_loss_pct = float(self.monitor_config.get("stop_loss_pct", 0.60))
        take_profit = self.monitor_config.get("take_profit_pct")
        self.take_profit_pct = float(take_profit) if take_profit is not None else None
        self.liquidation_warning_pct = float(self.monitor_config.get("liquidation_warning_pct", 0.20))
        self.strategy_caps: Dict[str, float] = dict(DEFAULT_STRATEGY_CAPS)
        self.strategy_caps.update(self.monitor_config.get("strategy_caps", {}) or {})

        logger.info(
            f"PositionMonitor initialized: enabled={self.enabled}, "
            f"stop_loss={self.stop_loss_pct:.0%}, take_profit={self.take_profit_pct}, "
            f"liquidation_warning={self.liquidation_warning_pct:.0%}"
        )

    def evaluate(self, rows: Iterable[PositionRecord],
                 now: Optional[datetime] = None) -> List[PositionAction]:
        """
        Evaluate OPEN rows and return at most one action per row.

        Priority order: liquidation proximity > stop_loss > expiry > take_profit
        """
        if not self.enabled:
            logger.debug("Position monitor disabled in config")
            return []

        now = now or datetime.now(timezone.utc)
        actions = []
        for row in rows:
            if not row.is_open:
                continue
            action = self._check_row(row, now)
            if action:
                logger.info(f"POSITION ACTION: {row.id} {action.action} ({action.urgency}) - {action.reason}")
                actions.append(action)

        if not actions:
            logger.debug("No positions met exit criteria")
        return actions

    def _check_row(self, row: PositionRecord, now: datetime) -> Optional[PositionAction]:
        # 1. Perp liquidation distance
        liquidation_price = float(row.metadata.get("liquidation_price") or 0.0)
        mark_price = float(row.metadata.get("mark_price") or row.current_price or 0.0)
        if liquidation_price > 0 and mark_price > 0:
            distance = abs(mark_price - liquidation_price) / mark_price
            if distance < self.liquidation_warning_pct:
                return PositionAction(
                    position_id=row.id,
                    action="STOP_LOSS",
                    reason=f"{row.venue_asset_key} within {distance:.1%} of liquidation",
                    urgency="critical",
                )

        # 2. Stop-loss on fraction of cost lost
        if row.cost_basis_usd > 0:
            loss_pct = (row.cost_basis_usd - row.current_value_usd) / row.cost_basis_usd
            if loss_pct > self.stop_loss_pct:
                return PositionAction(
                    position_id=row.id,
                    action="STOP_LOSS",
                    reason=f"Position down {loss_pct:.1%}, exceeds {self.stop_loss_pct:.0%} stop-loss",
                    urgency="critical",
                )

        # 3. Market end date passed but venue still reports it
        expiry = _parse_expiry(row.metadata.get("expiry"))
        if expiry is not None and expiry <= now:
            return PositionAction(
                position_id=row.id,
                action="EXPIRE",
                reason=f"Market end date {expiry.date().isoformat()} has passed, awaiting resolution",
                urgency="high",
            )

        # 4. Take-profit
        if self.take_profit_pct is not None and row.cost_basis_usd > 0:
            gain_pct = (row.current_value_usd - row.cost_basis_usd) / row.cost_basis_usd
            if gain_pct >= self.take_profit_pct:
                return PositionAction(
                    position_id=row.id,
                    action="TAKE_PROFIT",
                    reason=f"Position up {gain_pct:.1%}, reached {self.take_profit_pct:.0%} target",
                    urgency="medium",
                )

        return None

    def check_strategy_cap(self, strategy_id: str, new_position_usd: float,
                           total_portfolio_usd: float,
                           open_rows: Iterable[PositionRecord]) -> ExposureCheck:
        """Check whether a new position of ``new_position_usd`` fits under the strategy cap."""
        fraction = self.strategy_caps.get(strategy_id)
        current = sum(r.current_value_usd for r in open_rows if r.is_open and r.strategy_id == strategy_id)

        if fraction is None:
            return ExposureCheck(
                allowed=False,
                current_exposure_usd=current,
                cap_usd=0.0,
                headroom_usd=0.0,
                reason=f"No cap configured for strategy {strategy_id}",
            )

        cap_usd = fraction * total_portfolio_usd
        headroom = cap_usd - current
        if new_position_usd > headroom:
            return ExposureCheck(
                allowed=False,
                current_exposure_usd=current,
                cap_usd=cap_usd,
                headroom_usd=max(0.0, headroom),
                reason=(
                    f"{strategy_id} cap: current ${current:.2f} + new ${new_position_usd:.2f} "
                    f"exceeds cap ${cap_usd:.2f}"
                ),
            )
        return ExposureCheck(allowed=True, current_exposure_usd=current, cap_usd=cap_usd, headroom_usd=headroom)


def portfolio_metrics(rows: Iterable[PositionRecord]) -> PortfolioMetrics:
    """Aggregate open value and PnL per strategy; realized PnL from CLOSED rows."""
    metrics = PortfolioMetrics()
    for row in rows:
        if not row.is_open:
            metrics.total_realized_pnl_usd += row.realized_pnl_usd
            continue
        bucket = metrics.by_strategy.setdefault(row.strategy_id, StrategyMetrics())
        bucket.open_positions += 1
        bucket.total_value_usd += row.current_value_usd
        bucket.unrealized_pnl_usd += row.unrealized_pnl_usd
        metrics.total_open_positions += 1
        metrics.total_value_usd += row.current_value_usd
        metrics.total_unrealized_pnl_usd += row.unrealized_pnl_usd
    return metrics
