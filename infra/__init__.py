"""Infrastructure modules for the treasury reconciler"""

from .metrics import MetricsRecorder, PassStats  # noqa: F401
from .position_ledger import (  # noqa: F401
	InMemoryPositionLedger,
	JsonFilePositionLedger,
	PositionLedger,
	SQLitePositionLedger,
	create_ledger_from_config,
)

__all__ = [
	"MetricsRecorder",
	"PassStats",
	"PositionLedger",
	"InMemoryPositionLedger",
	"JsonFilePositionLedger",
	"SQLitePositionLedger",
	"create_ledger_from_config",
]
