"""
Treasury Cycle Pipeline - Shared Core Logic

One treasury cycle, reused by:
- The scheduled runner (runner/main_loop.py)
- Dry-run verification before enabling live ledger writes

Flow:
1. Reconciliation pass (venue snapshots -> ledger)
2. Exposure aggregation (balances + reconciled ledger, projected in dry run)
3. Hedge decisions
4. Position monitor actions
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from core.audit_log import AuditLogger
from core.exceptions import AggregationInconsistency
from core.exposure import ExposureAggregator
from core.hedge_engine import HedgeDecisionEngine
from core.models import (
    AssetBalance,
    HedgeDecision,
    HedgePosition,
    PositionRecord,
    PositionStatus,
    TreasuryExposure,
    utc_now,
)
from core.position_monitor import PositionAction, PositionMonitor
from core.reconciler import project_open_rows
from core.reconciliation_pass import PassResult, ReconciliationPass
from infra.metrics import MetricsRecorder, PassStats
from infra.position_ledger import PositionLedger

logger = logging.getLogger(__name__)

BalanceProvider = Callable[[], Iterable[AssetBalance]]
ListingProvider = Callable[[], Iterable[str]]
HedgeProvider = Callable[[], Iterable[HedgePosition]]


@dataclass
class CycleResult:
    """Result of a treasury cycle execution"""
    success: bool
    dry_run: bool
    reconcile: Optional[PassResult]
    exposures: List[TreasuryExposure] = field(default_factory=list)
    decisions: List[HedgeDecision] = field(default_factory=list)
    actions: List[PositionAction] = field(default_factory=list)
    open_rows: List[PositionRecord] = field(default_factory=list)
    inconsistencies: List[AggregationInconsistency] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None


class TreasuryCyclePipeline:
    """
    Reusable treasury cycle pipeline.

    Collaborators that read balances, listings and live hedges are plain
    callables; a failing collaborator is recorded and the stages that depend
    on it are skipped for this cycle, never fed partial data.
    """

    def __init__(self,
                 reconciliation_pass: ReconciliationPass,
                 ledger: PositionLedger,
                 hedge_engine: HedgeDecisionEngine,
                 aggregator: Optional[ExposureAggregator] = None,
                 monitor: Optional[PositionMonitor] = None,
                 balance_provider: Optional[BalanceProvider] = None,
                 listing_provider: Optional[ListingProvider] = None,
                 hedge_provider: Optional[HedgeProvider] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 audit: Optional[AuditLogger] = None):
        """
        Initialize pipeline with core components.

        Args:
            reconciliation_pass: Venue reconciliation across all sources
            ledger: Position ledger (read after reconciliation)
            hedge_engine: Hedge decision engine with validated config
            aggregator: Exposure aggregator (default: ignore stablecoins)
            monitor: Position monitor (optional)
            balance_provider: Returns AssetBalance rows (spot, LP, collateral)
            listing_provider: Returns coins listed on the hedge venue
            hedge_provider: Returns live perp hedge positions
            metrics: Prometheus recorder (optional)
            audit: JSONL audit logger (optional)
        """
        self.reconciliation_pass = reconciliation_pass
        self.ledger = ledger
        self.hedge_engine = hedge_engine
        self.aggregator = aggregator or ExposureAggregator()
        self.monitor = monitor
        self.balance_provider = balance_provider
        self.listing_provider = listing_provider
        self.hedge_provider = hedge_provider
        self.metrics = metrics
        self.audit = audit

        logger.info("Initialized TreasuryCyclePipeline")

    def _call(self, name: str, provider: Optional[Callable], errors: List[str]):
        if provider is None:
            return []
        try:
            return list(provider())
        except Exception as e:
            logger.warning(f"{name} provider failed, dependent stages skipped this cycle: {e}")
            errors.append(f"{name}: {e}")
            return None

    def _timed(self, stage: str, started: float, latencies: Dict[str, float]) -> None:
        duration = time.monotonic() - started
        latencies[stage] = round(duration, 4)
        if self.metrics:
            self.metrics.record_stage_duration(stage, duration)

    def _reconciled_open_rows(self, pass_result: PassResult, dry_run: bool) -> List[PositionRecord]:
        if not dry_run:
            return self.ledger.list_rows(status=PositionStatus.OPEN)
        # Nothing was written: project the planned mutations onto a copy
        mutations = [m for venue in pass_result.venues for m in venue.mutations]
        return project_open_rows(self.ledger.list_rows(), mutations)

    def execute_cycle(self, dry_run: bool = False) -> CycleResult:
        """
        Execute one treasury cycle through the pipeline.

        Args:
            dry_run: Plan and log ledger mutations without writing them

        Returns:
            CycleResult with reconciliation summary, exposures, decisions and actions
        """
        cycle_start = time.monotonic()
        ts = utc_now()
        latencies: Dict[str, float] = {}
        errors: List[str] = []

        try:
            # Step 1: Reconcile venues into the ledger
            logger.debug("Pipeline Step 1: Reconciliation pass")
            started = time.monotonic()
            pass_result = self.reconciliation_pass.run(dry_run=dry_run)
            self._timed("reconcile", started, latencies)

            # Step 2: Exposure from balances + reconciled ledger rows
            logger.debug("Pipeline Step 2: Exposure aggregation")
            started = time.monotonic()
            open_rows = self._reconciled_open_rows(pass_result, dry_run)
            balances = self._call("balances", self.balance_provider, errors)
            listed = self._call("listings", self.listing_provider, errors)

            exposures: List[TreasuryExposure] = []
            inconsistencies: List[AggregationInconsistency] = []
            if balances is not None:
                report = self.aggregator.aggregate_report(
                    balances,
                    ledger_rows=open_rows,
                    listed_coins=listed if listed is not None else (),
                )
                exposures, inconsistencies = report.exposures, report.inconsistencies
            self._timed("exposure", started, latencies)

            # Step 3: Hedge decisions (skipped on incomplete inputs)
            logger.debug("Pipeline Step 3: Hedge decisions")
            started = time.monotonic()
            hedges = self._call("hedges", self.hedge_provider, errors)
            decisions: List[HedgeDecision] = []
            if balances is None or listed is None or hedges is None:
                logger.warning("Skipping hedge decisions: exposure or hedge inputs unavailable")
            else:
                decisions = self.hedge_engine.decide(exposures, hedges)
            self._timed("decide", started, latencies)

            # Step 4: Position monitor
            actions: List[PositionAction] = []
            if self.monitor:
                logger.debug("Pipeline Step 4: Position monitor")
                started = time.monotonic()
                actions = self.monitor.evaluate(open_rows)
                self._timed("monitor", started, latencies)

            result = CycleResult(
                success=pass_result.success and not errors,
                dry_run=dry_run,
                reconcile=pass_result,
                exposures=exposures,
                decisions=decisions,
                actions=actions,
                open_rows=open_rows,
                inconsistencies=inconsistencies,
                errors=errors,
            )

        except Exception as e:
            logger.error(f"Pipeline cycle failed: {e}", exc_info=True)
            result = CycleResult(success=False, dry_run=dry_run, reconcile=None, errors=errors, error=str(e))

        self._record(result, ts, time.monotonic() - cycle_start, latencies)
        return result

    def _record(self, result: CycleResult, ts, duration: float, latencies: Dict[str, float]) -> None:
        summary = result.reconcile.summary if result.reconcile else None

        if self.metrics:
            if summary is not None:
                self.metrics.observe_pass(PassStats(
                    status="ok" if result.success else "partial",
                    inserted=summary.inserted,
                    updated=summary.updated,
                    merged=summary.merged,
                    closed=summary.closed,
                    errored=summary.errored,
                    venues_failed=summary.venues_failed,
                    duration_seconds=duration,
                ))
                for venue in result.reconcile.venues:
                    if not venue.ok:
                        self.metrics.record_venue_failure(venue.venue)
            try:
                counts: Dict[str, int] = {}
                rows = result.open_rows
                if result.reconcile is None:
                    rows = self.ledger.list_rows(status=PositionStatus.OPEN)
                for row in rows:
                    counts[row.strategy_id] = counts.get(row.strategy_id, 0) + 1
                self.metrics.record_open_positions(counts)
            except Exception as e:
                logger.warning(f"Failed to count open positions for metrics: {e}")
            self.metrics.record_exposures(result.exposures)
            self.metrics.record_hedge_decisions(result.decisions)
            self.metrics.record_inconsistencies(len(result.inconsistencies))
            for action in result.actions:
                self.metrics.record_position_action(action.action)

        if self.audit:
            errors = list(result.errors)
            if result.error:
                errors.append(result.error)
            self.audit.log_cycle(
                ts=ts,
                mode="DRY_RUN" if result.dry_run else "LIVE",
                summary=summary,
                venue_results=result.reconcile.venues if result.reconcile else None,
                exposures=result.exposures,
                decisions=result.decisions,
                actions=result.actions,
                errors=errors,
                stage_latencies=latencies,
            )
