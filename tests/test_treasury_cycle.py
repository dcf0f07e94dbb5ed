"""
Tests for the treasury cycle pipeline.

Verifies:
- Full cycle: reconcile -> exposure -> decisions -> monitor actions
- A failing exposure or hedge collaborator skips decisions, never feeds partial data
- Dry run leaves the ledger untouched but later stages see the reconciled rows
- Audit trail and metrics are recorded per cycle
"""

import json

import pytest
from prometheus_client import REGISTRY

from core.audit_log import AuditLogger
from core.exposure import ExposureAggregator
from core.hedge_engine import HedgeConfig, HedgeDecisionEngine
from core.models import AssetBalance, HedgeAction, HedgePosition, HedgeSide, utc_now
from core.position_monitor import PositionMonitor
from core.reconciler import Reconciler, ReconcileSummary
from core.reconciliation_pass import ReconciliationPass
from core.treasury_cycle import TreasuryCyclePipeline
from infra.metrics import MetricsRecorder
from tests.helpers import FailingSource, ListSource, make_row, make_snapshot


def _raise(message):
    def provider():
        raise ConnectionError(message)
    return provider


class TestTreasuryCyclePipeline:
    def setup_method(self):
        self.balances = [AssetBalance("SOL", 1000.0, "spot"), AssetBalance("USDC", 5000.0, "spot")]
        self.hedges = [HedgePosition(coin="SOL", side=HedgeSide.SHORT, size_usd=300.0)]

    def _pipeline(self, ledger, sources, tmp_path=None, **overrides):
        recon_pass = ReconciliationPass(Reconciler(ledger), sources, fetch_timeout_seconds=2.0)
        kwargs = dict(
            reconciliation_pass=recon_pass,
            ledger=ledger,
            hedge_engine=HedgeDecisionEngine(HedgeConfig()),
            aggregator=ExposureAggregator(),
            monitor=PositionMonitor({}),
            balance_provider=lambda: self.balances,
            listing_provider=lambda: ["SOL", "ETH"],
            hedge_provider=lambda: self.hedges,
        )
        if tmp_path is not None:
            kwargs["audit"] = AuditLogger(str(tmp_path / "audit.jsonl"))
        kwargs.update(overrides)
        return TreasuryCyclePipeline(**kwargs)

    def test_full_cycle(self, memory_ledger):
        memory_ledger.upsert(make_row("a", cost=3.0, opened_minutes=0))
        memory_ledger.upsert(make_row("b", cost=4.0, opened_minutes=1))
        source = ListSource(snapshots=[make_snapshot(initial=7.0, current=2.0)])

        result = self._pipeline(memory_ledger, [source]).execute_cycle()

        assert result.success
        assert result.reconcile.summary.merged == 1
        assert [e.symbol for e in result.exposures] == ["SOL"]
        [decision] = result.decisions
        assert decision.action == HedgeAction.OPEN_HEDGE
        assert decision.delta_usd == pytest.approx(200.0)
        # $7 cost now worth $2: past the 60% stop-loss
        assert [a.action for a in result.actions] == ["STOP_LOSS"]

    @pytest.mark.parametrize("failing", ["balance_provider", "listing_provider", "hedge_provider"])
    def test_failed_inputs_skip_decisions(self, memory_ledger, failing):
        pipeline = self._pipeline(memory_ledger, [], **{failing: _raise("rpc timeout")})

        result = pipeline.execute_cycle()

        assert result.success is False
        assert result.decisions == []
        assert len(result.errors) == 1
        assert "rpc timeout" in result.errors[0]

    def test_venue_failure_does_not_stop_cycle(self, memory_ledger):
        memory_ledger.upsert(make_row("a"))

        result = self._pipeline(memory_ledger, [FailingSource()]).execute_cycle()

        assert result.success is False
        assert result.reconcile.summary.venues_failed == 1
        assert memory_ledger.get("a").is_open
        assert len(result.decisions) == 1

    def test_dry_run_cycle_writes_nothing(self, memory_ledger):
        source = ListSource(snapshots=[make_snapshot("token-9")])

        result = self._pipeline(memory_ledger, [source]).execute_cycle(dry_run=True)

        assert result.dry_run is True
        assert result.reconcile.summary.inserted == 1
        assert memory_ledger.count() == 0

    def test_dry_run_matches_live_for_absent_key(self, memory_ledger):
        memory_ledger.upsert(make_row("lp-1", key="lp-1", cost=500.0, value=100.0,
                                      metadata={"exposure_weights": {"SOL": 1.0}}))
        pipeline = self._pipeline(memory_ledger, [ListSource()], balance_provider=lambda: [])

        dry = pipeline.execute_cycle(dry_run=True)
        assert memory_ledger.get("lp-1").is_open
        live = pipeline.execute_cycle()

        assert dry.reconcile.summary.closed == live.reconcile.summary.closed == 1
        assert dry.exposures == live.exposures == []
        assert dry.decisions == live.decisions == []
        assert dry.actions == live.actions == []

    def test_dry_run_monitors_merged_fragments(self, memory_ledger):
        memory_ledger.upsert(make_row("a", cost=3.0, opened_minutes=0))
        memory_ledger.upsert(make_row("b", cost=4.0, opened_minutes=1))
        source = ListSource(snapshots=[make_snapshot(initial=7.0, current=2.0)])

        result = self._pipeline(memory_ledger, [source]).execute_cycle(dry_run=True)

        assert [r.id for r in result.open_rows] == ["a"]
        assert [(a.position_id, a.action) for a in result.actions] == [("a", "STOP_LOSS")]
        assert memory_ledger.count() == 2
        assert memory_ledger.get("a").cost_basis_usd == 3.0

    def test_unexpected_error_is_contained(self, memory_ledger):
        pipeline = self._pipeline(memory_ledger, [])
        pipeline.hedge_engine = None

        result = pipeline.execute_cycle()

        assert result.success is False
        assert result.error is not None

    def test_audit_entry_written(self, memory_ledger, tmp_path):
        source = ListSource(snapshots=[make_snapshot("token-9")])
        pipeline = self._pipeline(memory_ledger, [source], tmp_path=tmp_path,
                                  hedge_provider=_raise("hl down"))

        pipeline.execute_cycle()

        lines = (tmp_path / "audit.jsonl").read_text().splitlines()
        entry = json.loads(lines[-1])
        assert entry["mode"] == "LIVE"
        assert entry["status"] == "PARTIAL"
        assert entry["reconcile"]["inserted"] == 1
        assert entry["venues"][0]["mutations"][0].startswith("INSERT")
        assert entry["exposures"][0]["symbol"] == "SOL"
        assert entry["decisions"] == []
        assert "hedges: hl down" in entry["errors"]
        assert set(entry["stage_latencies"]) == {"reconcile", "exposure", "decide", "monitor"}

    def test_metrics_recorded(self, memory_ledger):
        metrics = MetricsRecorder(enabled=True)
        source = ListSource(snapshots=[make_snapshot("token-9")])
        pipeline = self._pipeline(memory_ledger, [source, FailingSource(venue="kamino", strategy_id="kamino")],
                                  metrics=metrics)

        pipeline.execute_cycle()

        assert metrics.last_pass().inserted == 1
        assert metrics.last_pass().status == "partial"
        assert metrics.exposure_snapshot() == {"SOL": 1000.0}
        assert set(metrics.stage_snapshot()) == {"reconcile", "exposure", "decide", "monitor"}
        assert REGISTRY.get_sample_value(
            "treasury_venue_fetch_failures_total", {"venue": "kamino"}) == 1.0
        assert REGISTRY.get_sample_value(
            "treasury_open_positions", {"strategy": "polymarket"}) == 1.0
        assert REGISTRY.get_sample_value(
            "treasury_hedge_decisions_total", {"action": "OPEN_HEDGE"}) == 1.0


class TestAuditLogger:
    def test_recent_cycles_most_recent_first(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "nested" / "audit.jsonl"))

        audit.log_cycle(ts=utc_now(), mode="DRY_RUN", summary=ReconcileSummary(inserted=1))
        audit.log_cycle(ts=utc_now(), mode="LIVE", summary=None, errors=["boom"])

        first, second = audit.get_recent_cycles()
        assert first["status"] == "FAILED"
        assert second["status"] == "OK"
        assert second["reconcile"]["inserted"] == 1

    def test_missing_file_returns_empty(self, tmp_path):
        assert AuditLogger(str(tmp_path / "audit.jsonl")).get_recent_cycles() == []
