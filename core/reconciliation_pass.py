"""
Reconciliation Pass

One pass over every configured venue:
1. Fetch all venue snapshots concurrently, each bounded by a timeout
2. Reconcile venues one at a time against the ledger
3. Return a summary, whatever failed along the way

A venue whose fetch fails or times out is skipped for this pass; its ledger
rows are left exactly as they were.
"""

import logging
import threading
import time
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Sequence, Union

from core.exceptions import VenueUnavailable
from core.models import ExternalPositionSnapshot, utc_now
from core.reconciler import Reconciler, ReconcileSummary, VenueReconcileResult

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT_SECONDS = 20.0

FetchOutcome = Union[List[ExternalPositionSnapshot], VenueUnavailable]


@dataclass
class PassResult:
    """Result of one reconciliation pass"""
    started_at: datetime
    duration_seconds: float
    summary: ReconcileSummary
    venues: List[VenueReconcileResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.summary.venues_failed == 0 and self.summary.errored == 0


class ReconciliationPass:
    """
    Runs the Reconciler across all venue sources.

    Fetches are I/O bound and independent, so each runs on its own daemon thread.
    Ledger mutations are not: each venue's mutation phase completes before the
    next one starts.
    """

    def __init__(self,
                 reconciler: Reconciler,
                 sources: Sequence,
                 fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS):
        """
        Args:
            reconciler: Reconciler bound to the ledger
            sources: VenueSnapshotSource instances (one per venue/strategy)
            fetch_timeout_seconds: Budget for each venue fetch
        """
        if fetch_timeout_seconds <= 0:
            raise ValueError("fetch_timeout_seconds must be positive")
        self.reconciler = reconciler
        self.sources = list(sources)
        self.fetch_timeout_seconds = fetch_timeout_seconds

    def _spawn_fetch(self, source) -> Future:
        # Daemon thread: a fetch that never returns must not hold up interpreter exit
        future: Future = Future()

        def target():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.reconciler.fetch_snapshot(source, source.account))
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=target, name=f"venue-fetch-{source.venue}", daemon=True).start()
        return future

    def _fetch_all(self) -> Dict[int, FetchOutcome]:
        outcomes: Dict[int, FetchOutcome] = {}
        if not self.sources:
            return outcomes

        futures = {self._spawn_fetch(source): idx for idx, source in enumerate(self.sources)}
        done, not_done = wait(futures, timeout=self.fetch_timeout_seconds)

        for future in done:
            idx = futures[future]
            try:
                outcomes[idx] = future.result()
            except VenueUnavailable as exc:
                outcomes[idx] = exc
            except Exception as exc:
                outcomes[idx] = VenueUnavailable(self.sources[idx].venue, exc)

        for future in not_done:
            idx = futures[future]
            logger.warning(f"Abandoning {self.sources[idx].venue} fetch after {self.fetch_timeout_seconds:.1f}s")
            outcomes[idx] = VenueUnavailable(
                self.sources[idx].venue,
                TimeoutError(f"fetch exceeded {self.fetch_timeout_seconds:.1f}s"),
            )
        return outcomes

    def run(self, dry_run: bool = False) -> PassResult:
        started_at = utc_now()
        start = time.monotonic()
        summary = ReconcileSummary(dry_run=dry_run)
        results: List[VenueReconcileResult] = []

        logger.info(f"Reconciliation pass starting: {len(self.sources)} venue(s){' [DRY_RUN]' if dry_run else ''}")
        outcomes = self._fetch_all()

        for idx, source in enumerate(self.sources):
            outcome = outcomes.get(idx)
            if outcome is None:
                outcome = VenueUnavailable(source.venue, RuntimeError("no fetch result"))
            if isinstance(outcome, VenueUnavailable):
                results.append(self.reconciler.record_venue_failure(
                    source.venue, source.strategy_id, outcome, summary))
                continue
            try:
                results.append(self.reconciler.apply_snapshot(
                    source.venue, source.strategy_id, outcome, summary, dry_run))
            except Exception as exc:
                # Reading the ledger itself failed; keep the other venues going
                logger.error(f"Reconciliation of {source.venue} failed: {exc}", exc_info=True)
                summary.venues_failed += 1
                summary.record_error(f"{source.venue}: {exc}")
                results.append(VenueReconcileResult(
                    venue=source.venue, strategy_id=source.strategy_id, ok=False, error=str(exc)))

        duration = time.monotonic() - start
        logger.info(
            f"Reconciliation pass done in {duration:.2f}s: "
            f"inserted={summary.inserted} updated={summary.updated} merged={summary.merged} "
            f"closed={summary.closed} unchanged={summary.unchanged} errored={summary.errored} "
            f"venues_failed={summary.venues_failed}"
        )
        return PassResult(started_at=started_at, duration_seconds=duration, summary=summary, venues=results)
