"""Callable-backed source for venues whose data arrives from another collaborator."""

import logging
from typing import Callable, Iterable, List, Optional, Union

from core.exceptions import VenueUnavailable
from core.models import ExternalPositionSnapshot
from venues.base import VenueSnapshotSource

logger = logging.getLogger(__name__)

SnapshotLoader = Callable[[Optional[str]], Iterable[ExternalPositionSnapshot]]


class StaticSnapshotSource(VenueSnapshotSource):
    """
    Wraps a fixed snapshot list or a loader callable.

    Used for lending and NFT-LP protocols whose on-chain readers live outside
    this service, and for replaying recorded snapshots in dry runs.
    Any exception from the loader is reported as ``VenueUnavailable``.
    """

    def __init__(self, venue: str, strategy_id: str,
                 snapshots: Union[Iterable[ExternalPositionSnapshot], SnapshotLoader],
                 account: Optional[str] = None):
        super().__init__(strategy_id, account)
        self.venue = venue
        if callable(snapshots):
            self._loader = snapshots
        else:
            frozen = list(snapshots)
            self._loader = lambda _account: list(frozen)

    def fetch(self, account: Optional[str] = None) -> List[ExternalPositionSnapshot]:
        try:
            return list(self._loader(account or self.account))
        except VenueUnavailable:
            raise
        except Exception as exc:
            raise VenueUnavailable(self.venue, exc) from exc
