"""
Treasury Runner: Single Cycle

Builds the reconciliation + hedge pipeline from config and runs one cycle.
Scheduling is the caller's job (cron, systemd timer); each invocation is one
pass, so passes for the same strategy never overlap.

Flow:
1. Validate config/app.yaml and config/policy.yaml
2. Reconcile every enabled venue into the ledger
3. Aggregate exposure, decide hedges, check open positions
4. Write audit trail and metrics
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.audit_log import AuditLogger
from core.exposure import ExposureAggregator
from core.hedge_engine import HedgeConfig, HedgeDecisionEngine
from core.position_monitor import PositionMonitor
from core.reconciler import ReconcileConfig, Reconciler
from core.reconciliation_pass import ReconciliationPass
from core.treasury_cycle import BalanceProvider, CycleResult, TreasuryCyclePipeline
from infra.metrics import MetricsRecorder
from infra.position_ledger import create_ledger_from_config
from tools.config_validator import load_app_config, load_policy_config, validate_all_configs
from venues.http import VenueHttpClient
from venues.hyperliquid import INFO_API_BASE, HyperliquidSnapshotSource
from venues.polymarket import DATA_API_BASE, PolymarketSnapshotSource

logger = logging.getLogger(__name__)


def _resolve_account(venue_cfg: Dict[str, Any]) -> Optional[str]:
    if venue_cfg.get("account"):
        return venue_cfg["account"]
    env_name = venue_cfg.get("account_env")
    return os.getenv(env_name) if env_name else None


class TreasuryLoop:
    """
    Wires config into a TreasuryCyclePipeline.

    Mode & safety: DRY_RUN (config or --dry-run) plans and logs every ledger
    mutation without writing it.

    Wallet, LP and collateral balances are read by collaborators outside this
    service; pass them in as ``balance_provider``.
    """

    def __init__(self, config_dir: str = "config", dry_run: bool = False,
                 balance_provider: Optional[BalanceProvider] = None):
        self.config_dir = Path(config_dir)

        errors = validate_all_configs(str(self.config_dir))
        if errors:
            raise ValueError("Invalid configuration:\n  " + "\n  ".join(errors))

        self.app_config = load_app_config(str(self.config_dir))
        self.policy_config = load_policy_config(str(self.config_dir))

        self.mode = "DRY_RUN" if dry_run else self.app_config["app"]["mode"].upper()
        self.dry_run = self.mode == "DRY_RUN"

        # Logging setup
        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/treasury.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.basicConfig(
            level=getattr(logging, log_cfg.get("level", "INFO").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

        logger.info(f"Starting treasury reconciler in mode={self.mode}")

        self.ledger = create_ledger_from_config(self.app_config.get("ledger"))
        logger.info(f"Ledger backend: {self.ledger.describe()}")

        # Hedge config errors are fatal here, before any venue is touched
        self.hedge_engine = HedgeDecisionEngine(HedgeConfig.from_policy(self.policy_config))
        self.reconciler = Reconciler(self.ledger, ReconcileConfig.from_policy(self.policy_config))

        venues_cfg = self.app_config.get("venues", {}) or {}
        self.sources: List[Any] = []
        self.hyperliquid: Optional[HyperliquidSnapshotSource] = None
        self._build_sources(venues_cfg)

        self.pass_runner = ReconciliationPass(
            self.reconciler,
            self.sources,
            fetch_timeout_seconds=float(venues_cfg.get("fetch_timeout_seconds", 20.0)),
        )

        exposure_cfg = self.policy_config.get("exposure", {}) or {}
        monitoring_cfg = self.app_config.get("monitoring", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9108)),
        )
        self.metrics.start()

        self.pipeline = TreasuryCyclePipeline(
            reconciliation_pass=self.pass_runner,
            ledger=self.ledger,
            hedge_engine=self.hedge_engine,
            aggregator=ExposureAggregator(
                ignore_symbols=exposure_cfg.get("ignore_symbols"),
                exclude_strategies=exposure_cfg.get("exclude_strategies"),
            ),
            monitor=PositionMonitor(self.policy_config),
            balance_provider=balance_provider,
            listing_provider=self.hyperliquid.listed_coins if self.hyperliquid else None,
            hedge_provider=self.hyperliquid.hedge_positions if self.hyperliquid else None,
            metrics=self.metrics,
            audit=AuditLogger((self.app_config.get("audit", {}) or {}).get("file")),
        )

    def _build_sources(self, venues_cfg: Dict[str, Any]) -> None:
        http_timeout = float(venues_cfg.get("http_timeout_seconds", 10.0))
        max_retries = int(venues_cfg.get("max_retries", 3))

        poly_cfg = venues_cfg.get("polymarket") or {}
        if poly_cfg.get("enabled"):
            client = VenueHttpClient("polymarket", DATA_API_BASE, timeout=http_timeout, max_retries=max_retries)
            self.sources.append(PolymarketSnapshotSource(
                strategy_id=poly_cfg["strategy_id"],
                account=_resolve_account(poly_cfg),
                client=client,
            ))

        hl_cfg = venues_cfg.get("hyperliquid") or {}
        if hl_cfg.get("enabled"):
            client = VenueHttpClient("hyperliquid", INFO_API_BASE, timeout=http_timeout, max_retries=max_retries)
            self.hyperliquid = HyperliquidSnapshotSource(
                strategy_id=hl_cfg["strategy_id"],
                account=_resolve_account(hl_cfg),
                client=client,
            )
            self.sources.append(self.hyperliquid)

        for source in self.sources:
            if not source.account:
                logger.warning(f"{source.venue}: no account configured, venue will be skipped each cycle")

    def run_cycle(self) -> CycleResult:
        result = self.pipeline.execute_cycle(dry_run=self.dry_run)
        if result.reconcile:
            logger.info(f"Cycle summary: {result.reconcile.summary.as_dict()}")
        if result.error:
            logger.error(f"Cycle failed: {result.error}")
        logger.info(
            f"Cycle done: {len(result.decisions)} hedge decision(s), "
            f"{len(result.actions)} position action(s), {len(result.errors)} collaborator error(s)"
        )
        return result


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Treasury position reconciler and hedge decision engine")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--dry-run", action="store_true", help="Log intended ledger mutations without writing")

    args = parser.parse_args()

    loop = TreasuryLoop(config_dir=args.config_dir, dry_run=args.dry_run)
    result = loop.run_cycle()
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
