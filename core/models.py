"""
Treasury data model.

Position records persisted by the ledger, ephemeral venue snapshots, and the
derived exposure / decision rows computed every cycle.
"""

import copy
import hashlib
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class CloseReason(str, Enum):
    EXTERNALLY_CLOSED = "EXTERNALLY_CLOSED"
    EXPIRED = "EXPIRED"
    STOP_LOSS = "STOP_LOSS"
    MANUAL = "MANUAL"


class HedgeAction(str, Enum):
    IN_RANGE = "IN_RANGE"
    OPEN_HEDGE = "OPEN_HEDGE"
    CLOSE_HEDGE = "CLOSE_HEDGE"


class HedgeSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


# Fields that define which logical position a row belongs to
IDENTITY_FIELDS = ("strategy_id", "venue_asset_key")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def synthetic_position_id(venue: str, strategy_id: str, venue_asset_key: str) -> str:
    """
    Deterministic row id for positions discovered from a venue snapshot.

    Repeated inserts for the same key resolve to the same id, so an upsert
    deduplicates them naturally.
    """
    input_str = f"{venue}|{strategy_id}|{venue_asset_key}"
    hash_hex = hashlib.sha256(input_str.encode("utf-8")).hexdigest()[:16]
    return f"{venue}-{hash_hex}"


@dataclass
class PositionRecord:
    """A logical position held by the treasury (one ledger row)."""
    id: str
    strategy_id: str
    venue_asset_key: str
    venue: str = ""
    status: PositionStatus = PositionStatus.OPEN
    description: str = ""
    cost_basis_usd: float = 0.0
    current_value_usd: float = 0.0
    entry_price: float = 0.0
    current_price: float = 0.0
    size_units: float = 0.0
    realized_pnl_usd: float = 0.0
    unrealized_pnl_usd: float = 0.0
    external_id: Optional[str] = None
    opened_at: datetime = field(default_factory=utc_now)
    closed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> tuple:
        return (self.strategy_id, self.venue_asset_key)

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def copy(self, **changes: Any) -> "PositionRecord":
        clone = replace(self, **changes)
        if "metadata" not in changes:
            clone.metadata = copy.deepcopy(self.metadata)
        return clone

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            elif f.name == "metadata":
                value = copy.deepcopy(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PositionRecord":
        kwargs = dict(data)
        for name in ("opened_at", "closed_at", "updated_at"):
            raw = kwargs.get(name)
            if isinstance(raw, str):
                kwargs[name] = datetime.fromisoformat(raw)
        if "status" in kwargs:
            kwargs["status"] = PositionStatus(kwargs["status"])
        kwargs["metadata"] = dict(kwargs.get("metadata") or {})
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in kwargs.items() if k in known})


@dataclass
class ExternalPositionSnapshot:
    """Venue-reported truth for one asset key. Never persisted directly."""
    venue_asset_key: str
    size: float
    avg_entry_price: float = 0.0
    current_price: float = 0.0
    initial_value_usd: float = 0.0
    current_value_usd: float = 0.0
    pnl_usd: Optional[float] = None
    title: str = ""
    expiry: Optional[str] = None
    outcome: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def effective_pnl_usd(self) -> float:
        if self.pnl_usd is not None:
            return self.pnl_usd
        return self.current_value_usd - self.initial_value_usd

    def is_terminal(self, terminal_price: float) -> bool:
        """Venue still lists the key but it is worth nothing at a settled price."""
        return self.current_value_usd == 0 and self.current_price <= terminal_price


@dataclass
class AssetBalance:
    """Raw per-asset value reported by a wallet, LP or lending collaborator."""
    symbol: str
    value_usd: float
    source: str = "spot"  # "spot", "lp", "collateral"


@dataclass
class TreasuryExposure:
    symbol: str
    value_usd: float
    hl_listed: bool = False
    spot_usd: float = 0.0
    lp_usd: float = 0.0
    collateral_usd: float = 0.0


@dataclass
class HedgePosition:
    """Perpetual position reported by the hedging venue."""
    coin: str
    side: HedgeSide
    size_usd: float
    entry_price: float = 0.0
    mark_price: float = 0.0
    liquidation_price: float = 0.0
    leverage: float = 1.0
    unrealized_pnl_usd: float = 0.0


@dataclass
class HedgeDecision:
    symbol: str
    action: HedgeAction
    delta_usd: float = 0.0
    exposure_usd: float = 0.0
    short_usd: float = 0.0
    current_ratio: float = 0.0
    target_ratio: float = 0.0

    def describe(self) -> str:
        if self.action == HedgeAction.IN_RANGE:
            return (
                f"{self.symbol} IN_RANGE: hedge {self.current_ratio:.0%} "
                f"vs target {self.target_ratio:.0%}"
            )
        return (
            f"{self.symbol} {self.action.value}(${self.delta_usd:,.2f}): "
            f"short ${self.short_usd:,.2f} on exposure ${self.exposure_usd:,.2f} "
            f"({self.current_ratio:.0%} vs target {self.target_ratio:.0%})"
        )
