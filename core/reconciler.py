"""
Position Reconciliation: merge venue snapshots into the ledger

For one venue and one reporting cycle, makes the ledger's OPEN rows for that
venue match the venue's snapshot:

1. Keys the venue no longer reports (or reports as settled at zero) are closed
2. Unknown keys are inserted under a deterministic synthetic id
3. Single rows are refreshed from the snapshot
4. Fragmented keys (N>1 rows) are merged into one row carrying the venue's
   aggregate values

Planning is a pure diff of snapshot vs ledger rows; applying takes the
(strategy_id, venue_asset_key) lock and executes each mutation as one atomic
ledger operation. Running the same snapshot twice plans nothing the second time.
"""

import logging
import math
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.exceptions import LedgerConflict, VenueUnavailable
from core.models import (
    CloseReason,
    ExternalPositionSnapshot,
    PositionRecord,
    PositionStatus,
    synthetic_position_id,
    utc_now,
)
from infra.position_ledger import InMemoryPositionLedger, PositionLedger

logger = logging.getLogger(__name__)

KEEP_POLICIES = ("oldest", "richest_metadata")


class MutationKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    MERGE = "MERGE"
    CLOSE = "CLOSE"


@dataclass
class LedgerMutation:
    kind: MutationKind
    strategy_id: str
    venue_asset_key: str
    position_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    record: Optional[PositionRecord] = None
    remove_ids: List[str] = field(default_factory=list)
    final_value_usd: float = 0.0
    final_price: float = 0.0
    reason: str = ""

    @property
    def lock_key(self) -> Tuple[str, str]:
        return (self.strategy_id, self.venue_asset_key)

    def describe(self) -> str:
        if self.kind == MutationKind.INSERT and self.record is not None:
            return (
                f"INSERT {self.position_id} key={self.venue_asset_key} "
                f"cost=${self.record.cost_basis_usd:.2f} value=${self.record.current_value_usd:.2f}"
            )
        if self.kind == MutationKind.MERGE:
            return (
                f"MERGE {len(self.remove_ids)} row(s) into {self.position_id} key={self.venue_asset_key} "
                f"cost=${self.fields.get('cost_basis_usd', 0.0):.2f} "
                f"value=${self.fields.get('current_value_usd', 0.0):.2f}"
            )
        if self.kind == MutationKind.CLOSE:
            return (
                f"CLOSE {self.position_id} key={self.venue_asset_key} "
                f"final=${self.final_value_usd:.2f} reason={self.reason}"
            )
        changed = ", ".join(sorted(k for k in self.fields if k != "metadata"))
        return f"UPDATE {self.position_id} key={self.venue_asset_key} ({changed})"


@dataclass
class ReconcileConfig:
    """Reconciliation tunables (policy.yaml ``reconcile`` section)."""
    cost_basis_tolerance_usd: float = 0.5
    cost_basis_tolerance_pct: float = 0.0
    terminal_price: float = 0.01
    keep_policy: str = "oldest"

    def __post_init__(self):
        if self.keep_policy not in KEEP_POLICIES:
            raise ValueError(f"keep_policy must be one of {KEEP_POLICIES}, got {self.keep_policy!r}")
        if self.cost_basis_tolerance_usd < 0 or self.cost_basis_tolerance_pct < 0:
            raise ValueError("cost basis tolerances must be non-negative")

    @classmethod
    def from_policy(cls, policy: Optional[Dict[str, Any]]) -> "ReconcileConfig":
        cfg = (policy or {}).get("reconcile", {}) or {}
        return cls(
            cost_basis_tolerance_usd=float(cfg.get("cost_basis_tolerance_usd", 0.5)),
            cost_basis_tolerance_pct=float(cfg.get("cost_basis_tolerance_pct", 0.0)),
            terminal_price=float(cfg.get("terminal_price", 0.01)),
            keep_policy=str(cfg.get("keep_policy", "oldest")),
        )

    def cost_tolerance(self, snapshot_cost: float) -> float:
        return max(self.cost_basis_tolerance_usd, self.cost_basis_tolerance_pct * abs(snapshot_cost))


@dataclass
class ReconcileSummary:
    """Counters for one reconciliation pass. Never shared across passes."""
    dry_run: bool = False
    inserted: int = 0
    updated: int = 0
    merged: int = 0
    rows_removed: int = 0
    closed: int = 0
    unchanged: int = 0
    skipped: int = 0
    errored: int = 0
    venues_ok: int = 0
    venues_failed: int = 0
    errors: List[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.errored += 1
        self.errors.append(message)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "inserted": self.inserted,
            "updated": self.updated,
            "merged": self.merged,
            "rows_removed": self.rows_removed,
            "closed": self.closed,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "errored": self.errored,
            "venues_ok": self.venues_ok,
            "venues_failed": self.venues_failed,
            "errors": list(self.errors),
        }


@dataclass
class VenueReconcileResult:
    venue: str
    strategy_id: str
    ok: bool
    mutations: List[LedgerMutation] = field(default_factory=list)
    applied: int = 0
    failed_keys: List[str] = field(default_factory=list)
    error: Optional[str] = None


class KeyedLocks:
    """One lock per (strategy_id, venue_asset_key) group."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def get(self, key: Tuple[str, str]) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock


def _same(a: float, b: float) -> bool:
    return math.isclose(a, b, rel_tol=1e-9, abs_tol=1e-9)


def _describe_snapshot(snapshot: ExternalPositionSnapshot) -> str:
    if snapshot.outcome:
        return f"{snapshot.outcome} | {snapshot.title[:80]}"
    return snapshot.title[:100]


def _snapshot_metadata(snapshot: ExternalPositionSnapshot) -> Dict[str, Any]:
    meta = dict(snapshot.metadata)
    if snapshot.title:
        meta["title"] = snapshot.title
    if snapshot.outcome:
        meta["outcome"] = snapshot.outcome
    if snapshot.expiry:
        meta["expiry"] = snapshot.expiry
    return meta


def aggregate_snapshots(snapshots: Iterable[ExternalPositionSnapshot]) -> "OrderedDict[str, ExternalPositionSnapshot]":
    """
    Index a venue snapshot by key.

    Entries with size <= 0 are dropped (not held). A key reported more than
    once is collapsed into one entry: sizes and USD values are summed, the
    entry price is size-weighted.
    """
    indexed: "OrderedDict[str, ExternalPositionSnapshot]" = OrderedDict()
    for snap in snapshots:
        if snap.size <= 0:
            continue
        existing = indexed.get(snap.venue_asset_key)
        if existing is None:
            indexed[snap.venue_asset_key] = snap
            continue

        logger.warning(f"Venue reported {snap.venue_asset_key} more than once; aggregating entries")
        size = existing.size + snap.size
        indexed[snap.venue_asset_key] = ExternalPositionSnapshot(
            venue_asset_key=snap.venue_asset_key,
            size=size,
            avg_entry_price=(existing.avg_entry_price * existing.size + snap.avg_entry_price * snap.size) / size,
            current_price=snap.current_price,
            initial_value_usd=existing.initial_value_usd + snap.initial_value_usd,
            current_value_usd=existing.current_value_usd + snap.current_value_usd,
            pnl_usd=existing.effective_pnl_usd + snap.effective_pnl_usd,
            title=existing.title or snap.title,
            expiry=existing.expiry or snap.expiry,
            outcome=existing.outcome or snap.outcome,
            metadata={**snap.metadata, **existing.metadata},
        )
    return indexed


def execute_mutation(ledger: PositionLedger, mutation: LedgerMutation) -> bool:
    """Apply one planned mutation. Returns False when a CLOSE found the row already CLOSED."""
    if mutation.kind == MutationKind.INSERT:
        ledger.upsert(mutation.record)
    elif mutation.kind == MutationKind.UPDATE:
        ledger.update(mutation.position_id, mutation.fields)
    elif mutation.kind == MutationKind.MERGE:
        ledger.merge(mutation.position_id, mutation.remove_ids, mutation.fields)
    elif mutation.kind == MutationKind.CLOSE:
        return ledger.close(mutation.position_id, mutation.final_value_usd,
                            mutation.final_price, mutation.reason)
    return True


def project_open_rows(rows: Iterable[PositionRecord],
                      mutations: Iterable[LedgerMutation]) -> List[PositionRecord]:
    """
    OPEN rows the ledger would hold once ``mutations`` are applied.

    Works on an in-memory copy, so a dry run can feed exposure and monitoring
    the reconciled state without writing anything. A mutation that would
    conflict is left out, as its key group would be in a live pass.
    """
    projected = InMemoryPositionLedger(rows)
    failed = set()
    for mutation in mutations:
        if mutation.lock_key in failed:
            continue
        try:
            execute_mutation(projected, mutation)
        except LedgerConflict as exc:
            logger.warning(f"DRY_RUN: {mutation.describe()} would conflict: {exc}")
            failed.add(mutation.lock_key)
    return projected.list_rows(status=PositionStatus.OPEN)


class Reconciler:
    """
    Venue snapshot → ledger reconciliation.

    Responsibilities:
    - Diff a venue snapshot against the strategy's OPEN rows for that venue
    - Collapse fragmented rows into one row per logical position
    - Apply mutations atomically per key, isolating per-key failures
    - Fail closed when the venue cannot be read
    """

    def __init__(self, ledger: PositionLedger, config: Optional[ReconcileConfig] = None,
                 locks: Optional[KeyedLocks] = None):
        self.ledger = ledger
        self.config = config or ReconcileConfig()
        self.locks = locks or KeyedLocks()

    # ── Fetch ────────────────────────────────────────────────────────

    @staticmethod
    def fetch_snapshot(source, account: Optional[str] = None) -> List[ExternalPositionSnapshot]:
        try:
            return list(source.fetch(account))
        except VenueUnavailable:
            raise
        except Exception as exc:
            raise VenueUnavailable(getattr(source, "venue", "unknown"), exc) from exc

    def reconcile_venue(self, source, account: Optional[str] = None,
                        summary: Optional[ReconcileSummary] = None,
                        dry_run: bool = False) -> VenueReconcileResult:
        """Fetch one venue's snapshot and reconcile the ledger against it."""
        summary = summary if summary is not None else ReconcileSummary(dry_run=dry_run)
        try:
            snapshots = self.fetch_snapshot(source, account)
        except VenueUnavailable as exc:
            return self.record_venue_failure(source.venue, source.strategy_id, exc, summary)
        return self.apply_snapshot(source.venue, source.strategy_id, snapshots, summary, dry_run)

    @staticmethod
    def record_venue_failure(venue: str, strategy_id: str, exc: Exception,
                             summary: ReconcileSummary) -> VenueReconcileResult:
        logger.warning(f"Skipping {venue} this cycle, ledger left unchanged: {exc}")
        summary.venues_failed += 1
        summary.skipped += 1
        summary.errors.append(f"{venue}: {exc}")
        return VenueReconcileResult(venue=venue, strategy_id=strategy_id, ok=False, error=str(exc))

    # ── Plan ─────────────────────────────────────────────────────────

    def _venue_rows(self, venue: str, strategy_id: str,
                    reported_keys: Iterable[str] = ()) -> List[PositionRecord]:
        # Rows written before venue tagging carry an empty venue; a venue only
        # claims one when it reports that key, so other venues never close it
        reported = set(reported_keys)
        return [
            row for row in self.ledger.list_open(strategy_id)
            if row.venue == venue or (row.venue == "" and row.venue_asset_key in reported)
        ]

    def plan(self, venue: str, strategy_id: str,
             snapshots: Iterable[ExternalPositionSnapshot],
             ledger_rows: List[PositionRecord]) -> List[LedgerMutation]:
        """Compute the minimal mutation set making ``ledger_rows`` match ``snapshots``."""
        indexed = aggregate_snapshots(snapshots)
        active = OrderedDict(
            (key, snap) for key, snap in indexed.items()
            if not snap.is_terminal(self.config.terminal_price)
        )
        terminal = {key: snap for key, snap in indexed.items() if key not in active}

        groups: "OrderedDict[str, List[PositionRecord]]" = OrderedDict()
        for row in ledger_rows:
            groups.setdefault(row.venue_asset_key, []).append(row)

        mutations: List[LedgerMutation] = []

        for key, rows in groups.items():
            if key in active:
                continue
            settled = terminal.get(key)
            for row in rows:
                mutations.append(LedgerMutation(
                    kind=MutationKind.CLOSE,
                    strategy_id=strategy_id,
                    venue_asset_key=key,
                    position_id=row.id,
                    final_value_usd=settled.current_value_usd if settled else 0.0,
                    final_price=settled.current_price if settled else 0.0,
                    reason=(CloseReason.EXPIRED if settled else CloseReason.EXTERNALLY_CLOSED).value,
                ))

        for key, snap in active.items():
            rows = groups.get(key, [])
            if not rows:
                mutations.append(self._plan_insert(venue, strategy_id, snap))
            elif len(rows) == 1:
                mutation = self._plan_update(rows[0], snap, venue)
                if mutation is not None:
                    mutations.append(mutation)
            else:
                mutations.append(self._plan_merge(rows, snap, venue))

        return mutations

    def _insert_id(self, venue: str, strategy_id: str, key: str) -> str:
        base_id = synthetic_position_id(venue, strategy_id, key)
        candidate, generation = base_id, 1
        # A CLOSED row keeps its id forever; a re-entered position gets the next generation
        while True:
            existing = self.ledger.get(candidate)
            if existing is None or existing.is_open:
                return candidate
            generation += 1
            candidate = f"{base_id}-{generation}"

    def _plan_insert(self, venue: str, strategy_id: str,
                     snap: ExternalPositionSnapshot) -> LedgerMutation:
        position_id = self._insert_id(venue, strategy_id, snap.venue_asset_key)
        now = utc_now()
        record = PositionRecord(
            id=position_id,
            strategy_id=strategy_id,
            venue_asset_key=snap.venue_asset_key,
            venue=venue,
            status=PositionStatus.OPEN,
            description=_describe_snapshot(snap),
            cost_basis_usd=snap.initial_value_usd,
            current_value_usd=snap.current_value_usd,
            entry_price=snap.avg_entry_price,
            current_price=snap.current_price,
            size_units=snap.size,
            opened_at=now,
            updated_at=now,
            metadata={**_snapshot_metadata(snap), "backfilled_at": now.isoformat()},
        )
        return LedgerMutation(
            kind=MutationKind.INSERT,
            strategy_id=strategy_id,
            venue_asset_key=snap.venue_asset_key,
            position_id=position_id,
            record=record,
        )

    def _plan_update(self, row: PositionRecord, snap: ExternalPositionSnapshot,
                     venue: str = "") -> Optional[LedgerMutation]:
        fields: Dict[str, Any] = {}
        if venue and row.venue != venue:
            fields["venue"] = venue
        for name, value in (
            ("current_value_usd", snap.current_value_usd),
            ("current_price", snap.current_price),
            ("size_units", snap.size),
        ):
            if not _same(getattr(row, name), value):
                fields[name] = value

        cost_gap = abs(row.cost_basis_usd - snap.initial_value_usd)
        if cost_gap > self.config.cost_tolerance(snap.initial_value_usd):
            logger.info(
                f"Cost basis for {row.id}: ${row.cost_basis_usd:.2f} -> "
                f"${snap.initial_value_usd:.2f} (venue aggregate)"
            )
            fields["cost_basis_usd"] = snap.initial_value_usd
            fields["entry_price"] = snap.avg_entry_price

        venue_meta = _snapshot_metadata(snap)
        meta_changed = any(row.metadata.get(k) != v for k, v in venue_meta.items())
        if not fields and not meta_changed:
            return None

        fields["metadata"] = {**venue_meta, "synced_at": utc_now().isoformat()}
        return LedgerMutation(
            kind=MutationKind.UPDATE,
            strategy_id=row.strategy_id,
            venue_asset_key=row.venue_asset_key,
            position_id=row.id,
            fields=fields,
        )

    def _pick_keep(self, rows: List[PositionRecord]) -> PositionRecord:
        if self.config.keep_policy == "richest_metadata":
            # max() returns the first maximal row, rows are oldest first
            return max(rows, key=lambda r: len(r.metadata))
        return rows[0]

    def _plan_merge(self, rows: List[PositionRecord], snap: ExternalPositionSnapshot,
                    venue: str = "") -> LedgerMutation:
        keep = self._pick_keep(rows)
        removed = [row for row in rows if row.id != keep.id]
        now = utc_now().isoformat()
        local_cost = sum(row.cost_basis_usd for row in rows)

        audit_entry = {
            "merged_at": now,
            "kept_id": keep.id,
            "removed_ids": [row.id for row in removed],
            "removed_opened_at": [row.opened_at.isoformat() for row in removed],
            "local_cost_basis_usd": round(local_cost, 6),
            "venue_cost_basis_usd": snap.initial_value_usd,
            "keep_policy": self.config.keep_policy,
        }
        history = list(keep.metadata.get("merge_history", []))
        history.append(audit_entry)

        fields = {
            "cost_basis_usd": snap.initial_value_usd,
            "current_value_usd": snap.current_value_usd,
            "entry_price": snap.avg_entry_price,
            "current_price": snap.current_price,
            "size_units": snap.size,
            "description": _describe_snapshot(snap) or keep.description,
            "venue": venue or keep.venue,
            "metadata": {
                **_snapshot_metadata(snap),
                "merged_at": now,
                "merged_ids": audit_entry["removed_ids"],
                "merged_cost_basis_usd": audit_entry["local_cost_basis_usd"],
                "merge_history": history,
            },
        }
        return LedgerMutation(
            kind=MutationKind.MERGE,
            strategy_id=keep.strategy_id,
            venue_asset_key=keep.venue_asset_key,
            position_id=keep.id,
            fields=fields,
            remove_ids=[row.id for row in removed],
        )

    # ── Apply ────────────────────────────────────────────────────────

    def apply_snapshot(self, venue: str, strategy_id: str,
                       snapshots: Iterable[ExternalPositionSnapshot],
                       summary: Optional[ReconcileSummary] = None,
                       dry_run: bool = False) -> VenueReconcileResult:
        summary = summary if summary is not None else ReconcileSummary(dry_run=dry_run)
        snapshots = list(snapshots)
        ledger_rows = self._venue_rows(venue, strategy_id, (s.venue_asset_key for s in snapshots))
        mutations = self.plan(venue, strategy_id, snapshots, ledger_rows)

        touched_keys = {m.venue_asset_key for m in mutations}
        summary.unchanged += len({row.venue_asset_key for row in ledger_rows} - touched_keys)
        result = VenueReconcileResult(venue=venue, strategy_id=strategy_id, ok=True, mutations=mutations)

        by_key: "OrderedDict[Tuple[str, str], List[LedgerMutation]]" = OrderedDict()
        for mutation in mutations:
            by_key.setdefault(mutation.lock_key, []).append(mutation)

        for lock_key, group in by_key.items():
            with self.locks.get(lock_key):
                for mutation in group:
                    try:
                        self._apply(mutation, summary, dry_run)
                        result.applied += 1
                    except LedgerConflict as exc:
                        logger.error(f"Ledger conflict on {venue}/{lock_key[1]}, leaving group for next cycle: {exc}")
                        summary.record_error(f"{venue}/{lock_key[1]}: {exc}")
                        result.failed_keys.append(lock_key[1])
                        break
                    except Exception as exc:
                        logger.error(f"Failed to apply {mutation.kind.value} for {venue}/{lock_key[1]}: {exc}", exc_info=True)
                        summary.record_error(f"{venue}/{lock_key[1]}: {exc}")
                        result.failed_keys.append(lock_key[1])
                        break

        summary.venues_ok += 1
        logger.info(
            f"Reconciled {venue} ({strategy_id}): {len(snapshots)} snapshot row(s), "
            f"{len(ledger_rows)} open ledger row(s), {len(mutations)} mutation(s)"
            f"{' [DRY_RUN]' if dry_run else ''}"
        )
        return result

    def _apply(self, mutation: LedgerMutation, summary: ReconcileSummary, dry_run: bool) -> None:
        if dry_run:
            logger.info(f"DRY_RUN: would {mutation.describe()}")
            self._count(mutation, summary)
            return

        if not execute_mutation(self.ledger, mutation):
            logger.debug(f"{mutation.position_id} already CLOSED")
            return

        logger.info(mutation.describe())
        self._count(mutation, summary)

    @staticmethod
    def _count(mutation: LedgerMutation, summary: ReconcileSummary) -> None:
        if mutation.kind == MutationKind.INSERT:
            summary.inserted += 1
        elif mutation.kind == MutationKind.UPDATE:
            summary.updated += 1
        elif mutation.kind == MutationKind.MERGE:
            summary.merged += 1
            summary.rows_removed += len(mutation.remove_ids)
        elif mutation.kind == MutationKind.CLOSE:
            summary.closed += 1
