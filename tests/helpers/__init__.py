"""Test helpers for the treasury reconciler test suite"""

from tests.helpers.ledger_stubs import (
	BASE_TIME,
	FailingSource,
	HangingSource,
	ListSource,
	make_row,
	make_snapshot,
)

__all__ = [
	"BASE_TIME",
	"FailingSource",
	"HangingSource",
	"ListSource",
	"make_row",
	"make_snapshot",
]
