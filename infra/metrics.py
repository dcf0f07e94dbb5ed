"""Prometheus-backed metrics hooks for reconciliation passes and hedge decisions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIX = "treasury_"


@dataclass
class PassStats:
    status: str
    inserted: int
    updated: int
    merged: int
    closed: int
    errored: int
    venues_failed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose treasury cycle stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9108):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9108) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_pass_stats: Optional[PassStats] = None
        self._last_stage_durations: Dict[str, float] = {}
        self._last_exposures: Dict[str, float] = {}

        if not self._enabled:
            self._pass_summary = None
            self._pass_counter = None
            self._mutation_counter = None
            self._stage_summary = None
            self._venue_failures_counter = None
            self._open_positions_gauge = None
            self._exposure_gauge = None
            self._hedge_ratio_gauge = None
            self._hedge_decisions_counter = None
            self._position_actions_counter = None
            self._inconsistency_counter = None
            return

        self._pass_summary = Summary(
            "treasury_pass_duration_seconds",
            "Duration of a full treasury cycle",
        )
        self._pass_counter = Counter(
            "treasury_pass_total",
            "Total treasury cycles by status",
            labelnames=("status",),
        )
        self._mutation_counter = Counter(
            "treasury_ledger_mutations_total",
            "Ledger mutations applied by reconciliation",
            labelnames=("kind",),  # inserted, updated, merged, rows_removed, closed, errored
        )
        self._stage_summary = Summary(
            "treasury_stage_duration_seconds",
            "Duration of major cycle stages",
            labelnames=("stage",),
        )
        self._venue_failures_counter = Counter(
            "treasury_venue_fetch_failures_total",
            "Venue snapshot fetches that failed or timed out",
            labelnames=("venue",),
        )
        self._open_positions_gauge = Gauge(
            "treasury_open_positions",
            "Number of OPEN ledger rows",
            labelnames=("strategy",),
        )
        self._exposure_gauge = Gauge(
            "treasury_exposure_usd",
            "Aggregated treasury exposure per asset",
            labelnames=("symbol",),
        )
        self._hedge_ratio_gauge = Gauge(
            "treasury_hedge_ratio",
            "Current short notional / exposure per asset",
            labelnames=("symbol",),
        )
        self._hedge_decisions_counter = Counter(
            "treasury_hedge_decisions_total",
            "Hedge decisions emitted",
            labelnames=("action",),
        )
        self._position_actions_counter = Counter(
            "treasury_position_actions_total",
            "Position monitor actions emitted",
            labelnames=("action",),
        )
        self._inconsistency_counter = Counter(
            "treasury_exposure_inconsistencies_total",
            "Exposure components dropped as negative or NaN",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            collectors_to_remove = []
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(_METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)

            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                if port != ports_to_try[-1]:
                    logger.debug("Port %s in use, trying next port...", port)
                continue

        # All ports exhausted
        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_pass(self, stats: PassStats) -> None:
        if self._enabled:
            assert self._pass_summary and self._pass_counter and self._mutation_counter
            self._pass_summary.observe(stats.duration_seconds)
            self._pass_counter.labels(status=stats.status).inc()
            for kind in ("inserted", "updated", "merged", "closed", "errored"):
                count = getattr(stats, kind)
                if count:
                    self._mutation_counter.labels(kind=kind).inc(count)

        self._last_pass_stats = stats

    def record_stage_duration(self, stage: str, duration: float) -> None:
        self._last_stage_durations[stage] = duration
        if self._enabled and self._stage_summary:
            self._stage_summary.labels(stage=stage).observe(duration)

    def record_venue_failure(self, venue: str) -> None:
        if self._enabled and self._venue_failures_counter:
            self._venue_failures_counter.labels(venue=venue).inc()

    def record_open_positions(self, counts: Dict[str, int]) -> None:
        """Record OPEN row counts per strategy"""
        if self._enabled and self._open_positions_gauge:
            for strategy, count in counts.items():
                self._open_positions_gauge.labels(strategy=strategy).set(max(count, 0))

    def record_exposures(self, exposures: Iterable) -> None:
        """Record per-asset exposure (TreasuryExposure rows)"""
        for exposure in exposures:
            self._last_exposures[exposure.symbol] = exposure.value_usd
            if self._enabled and self._exposure_gauge:
                self._exposure_gauge.labels(symbol=exposure.symbol).set(max(exposure.value_usd, 0.0))

    def record_hedge_decisions(self, decisions: Iterable) -> None:
        """Record HedgeDecision rows: ratio gauge plus action counter"""
        if not self._enabled:
            return
        assert self._hedge_ratio_gauge and self._hedge_decisions_counter
        for decision in decisions:
            self._hedge_ratio_gauge.labels(symbol=decision.symbol).set(decision.current_ratio)
            self._hedge_decisions_counter.labels(action=decision.action.value).inc()

    def record_position_action(self, action: str) -> None:
        if self._enabled and self._position_actions_counter:
            self._position_actions_counter.labels(action=action).inc()

    def record_inconsistencies(self, count: int) -> None:
        if self._enabled and self._inconsistency_counter and count > 0:
            self._inconsistency_counter.inc(count)

    def last_pass(self) -> Optional[PassStats]:
        return self._last_pass_stats

    def stage_snapshot(self) -> Dict[str, float]:
        return dict(self._last_stage_durations)

    def exposure_snapshot(self) -> Dict[str, float]:
        return dict(self._last_exposures)


__all__ = ["MetricsRecorder", "PassStats"]
