"""
Treasury Core: Audit Logger

Structured logging of every reconciliation and hedge cycle for audit and debugging.
"""

import json
import logging
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Logs every cycle including:
    - Reconciliation counters and per-venue outcomes
    - Planned or applied ledger mutations
    - Exposure per asset
    - Hedge decisions
    - Position monitor actions

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/audit.jsonl")

        self.audit_file.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_cycle(self,
                  ts: datetime,
                  mode: str,
                  summary: Optional[Any],
                  venue_results: Optional[List[Any]] = None,
                  exposures: Optional[List[Any]] = None,
                  decisions: Optional[List[Any]] = None,
                  actions: Optional[List[Any]] = None,
                  errors: Optional[List[str]] = None,
                  stage_latencies: Optional[Dict[str, float]] = None) -> None:
        """
        Log a complete treasury cycle.

        Args:
            ts: Cycle timestamp
            mode: DRY_RUN or LIVE
            summary: ReconcileSummary for the pass
            venue_results: VenueReconcileResult per venue
            exposures: TreasuryExposure rows
            decisions: HedgeDecision rows
            actions: PositionAction rows
            errors: Non-reconciliation errors (exposure/listing collaborators)
            stage_latencies: Optional per-stage timing snapshot for the cycle
        """
        try:
            entry: Dict[str, Any] = {
                "timestamp": ts.isoformat(),
                "mode": mode,
                "status": self._determine_status(summary, errors),
            }

            if stage_latencies:
                entry["stage_latencies"] = stage_latencies

            entry["reconcile"] = summary.as_dict() if summary is not None else None

            entry["venues"] = [
                {
                    "venue": result.venue,
                    "strategy_id": result.strategy_id,
                    "ok": result.ok,
                    "error": result.error,
                    "failed_keys": list(result.failed_keys),
                    "mutations": [m.describe() for m in result.mutations],
                }
                for result in (venue_results or [])
            ]

            entry["exposures"] = [
                {
                    "symbol": e.symbol,
                    "value_usd": round(e.value_usd, 2),
                    "hl_listed": e.hl_listed,
                }
                for e in (exposures or [])
            ]

            entry["decisions"] = [
                {
                    "symbol": d.symbol,
                    "action": d.action.value,
                    "delta_usd": round(d.delta_usd, 2),
                    "current_ratio": round(d.current_ratio, 4),
                    "target_ratio": d.target_ratio,
                }
                for d in (decisions or [])
            ]

            entry["actions"] = [
                {
                    "position_id": a.position_id,
                    "action": a.action,
                    "urgency": a.urgency,
                    "reason": a.reason,
                }
                for a in (actions or [])
            ]

            if errors:
                entry["errors"] = errors

            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")

            logger.debug(f"Audited cycle: status={entry['status']}")

        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")

    def _determine_status(self, summary: Optional[Any], errors: Optional[List[str]]) -> str:
        """Determine cycle status"""
        if summary is None:
            return "FAILED"
        if summary.venues_failed or summary.errored or errors:
            return "PARTIAL"
        return "OK"

    def get_recent_cycles(self, n: int = 10) -> List[Dict[str, Any]]:
        """
        Get the N most recent cycle logs.

        Args:
            n: Number of cycles to retrieve

        Returns:
            List of cycle log entries (most recent first)
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()

            cycles = []
            for line in lines[-n:]:
                try:
                    cycles.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

            return list(reversed(cycles))  # Most recent first

        except Exception as e:
            logger.error(f"Failed to read audit log: {e}")
            return []
