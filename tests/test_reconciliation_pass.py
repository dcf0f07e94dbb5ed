"""
Tests for the multi-venue reconciliation pass.

A hung or failing venue must be skipped without blocking the others, and its
ledger rows must not change.
"""

import time

import pytest

from core.models import PositionStatus
from core.reconciler import Reconciler
from core.reconciliation_pass import ReconciliationPass
from tests.helpers import FailingSource, HangingSource, ListSource, make_row, make_snapshot


class TestReconciliationPass:
    def setup_method(self):
        self.hanging = HangingSource()

    def teardown_method(self):
        self.hanging.release.set()

    def test_all_venues_reconciled(self, memory_ledger):
        memory_ledger.upsert(make_row("pm-1", key="token-1"))
        sources = [
            ListSource(snapshots=[make_snapshot("token-1", current=12.0)]),
            ListSource(venue="kamino", strategy_id="kamino", snapshots=[make_snapshot("usdc-vault")]),
        ]

        result = ReconciliationPass(Reconciler(memory_ledger), sources).run()

        assert result.success
        assert result.summary.venues_ok == 2
        assert result.summary.updated == 1
        assert result.summary.inserted == 1
        assert [v.venue for v in result.venues] == ["polymarket", "kamino"]

    def test_hung_venue_times_out_and_others_proceed(self, memory_ledger):
        memory_ledger.upsert(make_row("slow-1", key="slow-key", strategy_id="slow", venue="slowvenue"))
        good = ListSource(snapshots=[make_snapshot("token-1")])
        recon_pass = ReconciliationPass(Reconciler(memory_ledger), [self.hanging, good],
                                        fetch_timeout_seconds=0.2)

        start = time.monotonic()
        result = recon_pass.run()
        elapsed = time.monotonic() - start

        assert elapsed < 2.0
        assert result.success is False
        assert result.summary.venues_failed == 1
        assert result.summary.venues_ok == 1
        assert result.venues[0].ok is False
        assert "fetch exceeded" in result.venues[0].error
        # Untouched: the hung venue's row is not closed as "absent"
        assert memory_ledger.get("slow-1").status == PositionStatus.OPEN
        assert len(memory_ledger.list_open("polymarket")) == 1

    def test_hung_fetch_runs_on_daemon_thread(self, memory_ledger):
        recon_pass = ReconciliationPass(Reconciler(memory_ledger), [self.hanging],
                                        fetch_timeout_seconds=0.2)

        recon_pass.run()

        # A fetch that never returns must not keep the process alive
        assert self.hanging.fetch_thread is not None
        assert self.hanging.fetch_thread.daemon is True

    def test_untagged_row_survives_venues_sharing_a_strategy(self, ledger):
        ledger.upsert(make_row("legacy", key="token-1", venue="", strategy_id="treasury"))
        sources = [
            ListSource(venue="kamino", strategy_id="treasury", snapshots=[make_snapshot("usdc-reserve")]),
            ListSource(venue="polymarket", strategy_id="treasury",
                       snapshots=[make_snapshot("token-1", current=12.0)]),
        ]

        result = ReconciliationPass(Reconciler(ledger), sources).run()

        row = ledger.get("legacy")
        assert row.status == PositionStatus.OPEN
        assert row.venue == "polymarket"
        assert row.current_value_usd == 12.0
        assert result.summary.closed == 0
        assert result.summary.inserted == 1

    def test_failing_venue_is_skipped(self, ledger):
        ledger.upsert(make_row("pm-1", key="token-1", cost=3.0))
        ledger.upsert(make_row("pm-2", key="token-1", cost=4.0, opened_minutes=1))

        result = ReconciliationPass(Reconciler(ledger), [FailingSource()]).run()

        assert result.summary.venues_failed == 1
        assert result.summary.skipped == 1
        assert len(ledger.list_open("polymarket")) == 2

    def test_adapter_bug_is_treated_as_unavailable(self, memory_ledger):
        source = FailingSource(error=ValueError("unexpected payload"))

        result = ReconciliationPass(Reconciler(memory_ledger), [source]).run()

        assert result.venues[0].ok is False
        assert "unexpected payload" in result.venues[0].error

    def test_dry_run_pass_writes_nothing(self, memory_ledger):
        source = ListSource(snapshots=[make_snapshot("token-1"), make_snapshot("token-2")])

        result = ReconciliationPass(Reconciler(memory_ledger), [source]).run(dry_run=True)

        assert result.summary.dry_run is True
        assert result.summary.inserted == 2
        assert memory_ledger.count() == 0

    def test_no_sources(self, memory_ledger):
        result = ReconciliationPass(Reconciler(memory_ledger), []).run()

        assert result.success
        assert result.venues == []

    def test_invalid_timeout_rejected(self, memory_ledger):
        with pytest.raises(ValueError):
            ReconciliationPass(Reconciler(memory_ledger), [], fetch_timeout_seconds=0)
