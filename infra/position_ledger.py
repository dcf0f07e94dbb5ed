"""
Treasury Infrastructure: Position Ledger

Persistent store of logical positions with atomic mutations.

Every mutation (upsert, merge, close) is applied as a single all-or-nothing
unit: the in-memory and JSON backends build the new row set on a copy and
swap it in only after a successful write (temp file + rename), the SQLite
backend wraps each operation in one transaction.
"""

import json
import logging
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from core.exceptions import LedgerConflict
from core.models import (
    IDENTITY_FIELDS,
    PositionRecord,
    PositionStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

# Fields callers may never set through merge()
_PROTECTED_FIELDS = ("id", "status", "opened_at", "closed_at") + IDENTITY_FIELDS


def _sort_key(record: PositionRecord):
    return (record.opened_at, record.id)


def _merge_metadata(existing: Dict[str, Any], incoming: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merged = dict(existing or {})
    merged.update(incoming or {})
    return merged


def _refresh_unrealized(record: PositionRecord) -> PositionRecord:
    if record.is_open:
        record.unrealized_pnl_usd = record.current_value_usd - record.cost_basis_usd
    return record


def apply_upsert(existing: Optional[PositionRecord], record: PositionRecord,
                 now: datetime) -> PositionRecord:
    """Compute the row that results from upserting ``record`` over ``existing``."""
    if existing is None:
        row = record.copy(updated_at=now)
        return _refresh_unrealized(row)

    if not existing.is_open:
        raise LedgerConflict(existing.id, "CLOSED rows are frozen and cannot be upserted")

    for name in IDENTITY_FIELDS:
        if getattr(existing, name) != getattr(record, name):
            raise LedgerConflict(
                existing.id,
                f"upsert may not change {name} "
                f"({getattr(existing, name)!r} -> {getattr(record, name)!r})",
            )

    row = record.copy(
        opened_at=existing.opened_at,
        metadata=_merge_metadata(existing.metadata, record.metadata),
        updated_at=now,
    )
    return _refresh_unrealized(row)


def apply_merge(keep: Optional[PositionRecord], keep_id: str,
                removes: Dict[str, Optional[PositionRecord]],
                merged_fields: Dict[str, Any], now: datetime) -> PositionRecord:
    """Validate a merge and compute the surviving row."""
    if keep_id in removes:
        raise LedgerConflict(keep_id, "merge target is among the rows to remove")
    if keep is None:
        raise LedgerConflict(keep_id, "merge target does not exist")
    if not keep.is_open:
        raise LedgerConflict(keep_id, "merge target is not OPEN")

    for remove_id, row in removes.items():
        if row is None:
            raise LedgerConflict(remove_id, "row scheduled for removal does not exist")
        if not row.is_open:
            raise LedgerConflict(remove_id, "CLOSED rows cannot be merged away")
        if row.identity != keep.identity:
            raise LedgerConflict(
                remove_id,
                f"identity {row.identity} differs from merge target {keep.identity}",
            )

    protected = [name for name in merged_fields if name in _PROTECTED_FIELDS]
    if protected:
        raise LedgerConflict(keep_id, f"merge may not change {', '.join(protected)}")

    fields = dict(merged_fields)
    metadata = _merge_metadata(keep.metadata, fields.pop("metadata", None))
    row = keep.copy(metadata=metadata, updated_at=now)
    for name, value in fields.items():
        if not hasattr(row, name):
            raise LedgerConflict(keep_id, f"unknown field {name!r}")
        setattr(row, name, value)
    return _refresh_unrealized(row)


def apply_close(row: PositionRecord, final_value_usd: float, final_price: float,
                reason: str, now: datetime) -> PositionRecord:
    closed = row.copy(
        status=PositionStatus.CLOSED,
        current_value_usd=final_value_usd,
        current_price=final_price,
        realized_pnl_usd=final_value_usd - row.cost_basis_usd,
        unrealized_pnl_usd=0.0,
        closed_at=now,
        updated_at=now,
        metadata=_merge_metadata(row.metadata, {"close_reason": reason}),
    )
    return closed


class PositionLedger(ABC):
    """Contract shared by all ledger backends."""

    @abstractmethod
    def get(self, position_id: str) -> Optional[PositionRecord]:
        ...

    @abstractmethod
    def list_rows(self, strategy_id: Optional[str] = None,
                  status: Optional[PositionStatus] = None) -> List[PositionRecord]:
        """Rows ordered by opened_at ascending (id breaks ties)."""

    @abstractmethod
    def upsert(self, record: PositionRecord) -> PositionRecord:
        ...

    @abstractmethod
    def merge(self, keep_id: str, remove_ids: Iterable[str],
              merged_fields: Dict[str, Any]) -> PositionRecord:
        ...

    @abstractmethod
    def close(self, position_id: str, final_value_usd: float, final_price: float,
              reason: str) -> bool:
        """Close a row. Returns False when it was already CLOSED."""

    @abstractmethod
    def describe(self) -> str:
        ...

    def update(self, position_id: str, fields: Dict[str, Any]) -> PositionRecord:
        """Atomically overwrite fields of an OPEN row (metadata merges additively)."""
        return self.merge(position_id, [], fields)

    def list_open(self, strategy_id: str) -> List[PositionRecord]:
        return self.list_rows(strategy_id=strategy_id, status=PositionStatus.OPEN)

    def count(self) -> int:
        return len(self.list_rows())


class InMemoryPositionLedger(PositionLedger):
    """
    Dict-backed ledger.

    Rows are never mutated in place: each operation builds a new mapping and
    hands it to ``_commit``; callers always receive copies.
    """

    def __init__(self, rows: Optional[Iterable[PositionRecord]] = None):
        self._lock = threading.RLock()
        self._rows: Dict[str, PositionRecord] = {}
        for row in rows or []:
            self._rows[row.id] = row.copy()

    def _commit(self, rows: Dict[str, PositionRecord]) -> None:
        self._rows = rows

    def describe(self) -> str:
        return "memory"

    def get(self, position_id: str) -> Optional[PositionRecord]:
        with self._lock:
            row = self._rows.get(position_id)
            return row.copy() if row else None

    def list_rows(self, strategy_id: Optional[str] = None,
                  status: Optional[PositionStatus] = None) -> List[PositionRecord]:
        with self._lock:
            rows = [
                row.copy() for row in self._rows.values()
                if (strategy_id is None or row.strategy_id == strategy_id)
                and (status is None or row.status == status)
            ]
        return sorted(rows, key=_sort_key)

    def upsert(self, record: PositionRecord) -> PositionRecord:
        with self._lock:
            row = apply_upsert(self._rows.get(record.id), record, utc_now())
            rows = dict(self._rows)
            rows[row.id] = row
            self._commit(rows)
            return row.copy()

    def merge(self, keep_id: str, remove_ids: Iterable[str],
              merged_fields: Dict[str, Any]) -> PositionRecord:
        remove_ids = list(remove_ids)
        with self._lock:
            removes = {rid: self._rows.get(rid) for rid in remove_ids}
            row = apply_merge(self._rows.get(keep_id), keep_id, removes, merged_fields, utc_now())
            rows = {rid: r for rid, r in self._rows.items() if rid not in removes}
            rows[keep_id] = row
            self._commit(rows)
            return row.copy()

    def close(self, position_id: str, final_value_usd: float, final_price: float,
              reason: str) -> bool:
        with self._lock:
            row = self._rows.get(position_id)
            if row is None:
                raise LedgerConflict(position_id, "cannot close a row that does not exist")
            if not row.is_open:
                return False
            rows = dict(self._rows)
            rows[position_id] = apply_close(row, final_value_usd, final_price, reason, utc_now())
            self._commit(rows)
            return True


class JsonFilePositionLedger(InMemoryPositionLedger):
    """Ledger persisted to a JSON file with atomic writes (temp file + rename)."""

    def __init__(self, path: Optional[str] = None):
        if path:
            self.path = Path(path)
        else:
            self.path = Path(os.getenv("LEDGER_FILE", "data/positions.json"))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(self._load())
        logger.info(f"Initialized JsonFilePositionLedger at {self.path}")

    def describe(self) -> str:
        return f"json:{self.path}"

    def _load(self) -> List[PositionRecord]:
        if not self.path.exists():
            logger.debug("No ledger file found, starting empty")
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return [PositionRecord.from_dict(item) for item in data.get("positions", [])]

    def _commit(self, rows: Dict[str, PositionRecord]) -> None:
        payload = {
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "positions": [row.to_dict() for row in sorted(rows.values(), key=_sort_key)],
        }
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".positions_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        super()._commit(rows)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS positions (
  id                 TEXT PRIMARY KEY,
  strategy_id        TEXT NOT NULL,
  venue_asset_key    TEXT NOT NULL,
  venue              TEXT NOT NULL DEFAULT '',
  status             TEXT NOT NULL DEFAULT 'OPEN',
  description        TEXT NOT NULL DEFAULT '',
  cost_basis_usd     REAL NOT NULL DEFAULT 0,
  current_value_usd  REAL NOT NULL DEFAULT 0,
  entry_price        REAL NOT NULL DEFAULT 0,
  current_price      REAL NOT NULL DEFAULT 0,
  size_units         REAL NOT NULL DEFAULT 0,
  realized_pnl_usd   REAL NOT NULL DEFAULT 0,
  unrealized_pnl_usd REAL NOT NULL DEFAULT 0,
  external_id        TEXT,
  opened_at          TEXT NOT NULL,
  closed_at          TEXT,
  updated_at         TEXT NOT NULL,
  metadata           TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS positions_identity_idx ON positions (strategy_id, venue_asset_key);
CREATE INDEX IF NOT EXISTS positions_status_idx ON positions (status);
"""

_COLUMNS = (
    "id", "strategy_id", "venue_asset_key", "venue", "status", "description",
    "cost_basis_usd", "current_value_usd", "entry_price", "current_price",
    "size_units", "realized_pnl_usd", "unrealized_pnl_usd", "external_id",
    "opened_at", "closed_at", "updated_at", "metadata",
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class SQLitePositionLedger(PositionLedger):
    """SQLite-backed ledger; every public mutation runs in one transaction."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or os.getenv("LEDGER_DB", "data/positions.db"))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.path), isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        logger.info(f"Initialized SQLitePositionLedger at {self.path}")

    def describe(self) -> str:
        return f"sqlite:{self.path}"

    def close_connection(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self):
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    @staticmethod
    def _to_row(record: PositionRecord) -> tuple:
        return (
            record.id, record.strategy_id, record.venue_asset_key, record.venue,
            record.status.value, record.description,
            record.cost_basis_usd, record.current_value_usd, record.entry_price,
            record.current_price, record.size_units, record.realized_pnl_usd,
            record.unrealized_pnl_usd, record.external_id,
            _iso(record.opened_at), _iso(record.closed_at), _iso(record.updated_at),
            json.dumps(record.metadata, sort_keys=True),
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> PositionRecord:
        data = {name: row[name] for name in _COLUMNS}
        data["metadata"] = json.loads(data["metadata"] or "{}")
        return PositionRecord.from_dict(data)

    def _fetch(self, conn, position_id: str) -> Optional[PositionRecord]:
        row = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
        return self._from_row(row) if row else None

    def _write(self, conn, record: PositionRecord) -> None:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        conn.execute(
            f"INSERT OR REPLACE INTO positions ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            self._to_row(record),
        )

    def get(self, position_id: str) -> Optional[PositionRecord]:
        with self._lock:
            return self._fetch(self._conn, position_id)

    def list_rows(self, strategy_id: Optional[str] = None,
                  status: Optional[PositionStatus] = None) -> List[PositionRecord]:
        clauses, params = [], []
        if strategy_id is not None:
            clauses.append("strategy_id = ?")
            params.append(strategy_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM positions {where} ORDER BY opened_at ASC, id ASC", params
            ).fetchall()
        return [self._from_row(row) for row in rows]

    def upsert(self, record: PositionRecord) -> PositionRecord:
        with self._transaction() as conn:
            row = apply_upsert(self._fetch(conn, record.id), record, utc_now())
            self._write(conn, row)
        return row

    def merge(self, keep_id: str, remove_ids: Iterable[str],
              merged_fields: Dict[str, Any]) -> PositionRecord:
        remove_ids = list(remove_ids)
        with self._transaction() as conn:
            removes = {rid: self._fetch(conn, rid) for rid in remove_ids}
            row = apply_merge(self._fetch(conn, keep_id), keep_id, removes, merged_fields, utc_now())
            conn.executemany("DELETE FROM positions WHERE id = ?", [(rid,) for rid in removes])
            self._write(conn, row)
        return row

    def close(self, position_id: str, final_value_usd: float, final_price: float,
              reason: str) -> bool:
        with self._transaction() as conn:
            row = self._fetch(conn, position_id)
            if row is None:
                raise LedgerConflict(position_id, "cannot close a row that does not exist")
            if not row.is_open:
                return False
            self._write(conn, apply_close(row, final_value_usd, final_price, reason, utc_now()))
        return True


def create_ledger_from_config(config: Optional[Dict[str, Any]] = None) -> PositionLedger:
    """
    Build a ledger from the ``ledger`` section of app.yaml.

    Args:
        config: {"store": "memory" | "json" | "sqlite", "path": ...}
    """
    config = config or {}
    store = str(config.get("store", "sqlite")).lower()
    path = config.get("path")

    if store == "memory":
        return InMemoryPositionLedger()
    if store == "json":
        return JsonFilePositionLedger(path)
    if store == "sqlite":
        return SQLitePositionLedger(path)
    raise ValueError(f"Unknown ledger store: {store}")
