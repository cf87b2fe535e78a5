"""
Tracked Record Store

Long-lived processes that follow many bounties keep the latest known record
of each here. Entries are keyed by control token and versioned by the id of
the box that holds them, so replacing a record is a compare-and-swap on the
box id the caller last saw: if another transition consumed that box first,
the swap fails and the caller must re-fetch.

Records are never edited. A successful transition swaps in the successor; a
terminal one leaves a spent marker so later reads can tell "ended" from
"never seen".
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from bountiful.errors import RecordNotFound, StaleRecord
from bountiful.observability import BountyLayer, get_logger
from bountiful.records import BountyRecord

logger = get_logger("store", BountyLayer.STORE)


@dataclass(frozen=True)
class TrackedRecord:
    """One store entry: the live record, or the marker of an ended bounty."""
    token_id: bytes
    box_id: Optional[str]
    record: Optional[BountyRecord]
    revision: int
    updated_at: str
    # Box ids this bounty has lived in, oldest first.
    history: Tuple[str, ...] = ()

    @property
    def spent(self) -> bool:
        return self.record is None


@dataclass
class StoreStats:
    swaps: int = 0
    conflicts: int = 0


class RecordStore:
    """Thread-safe store with optimistic compare-and-swap on box ids."""

    def __init__(self):
        self._data: Dict[bytes, TrackedRecord] = {}
        self._lock = threading.RLock()
        self._revision = 0
        self.stats = StoreStats()

    def _entry(
        self,
        token_id: bytes,
        record: Optional[BountyRecord],
        previous: Optional[TrackedRecord],
    ) -> TrackedRecord:
        self._revision += 1
        box_id = record.box_id if record is not None else None
        history = previous.history if previous else ()
        if box_id is not None and (not history or history[-1] != box_id):
            history = history + (box_id,)
        return TrackedRecord(
            token_id=token_id,
            box_id=box_id,
            record=record,
            revision=self._revision,
            updated_at=datetime.now(timezone.utc).isoformat(),
            history=history,
        )

    def get(self, token_id: bytes) -> Optional[TrackedRecord]:
        with self._lock:
            return self._data.get(token_id)

    def current(self, token_id: bytes) -> BountyRecord:
        """The live record for a bounty.

        Raises:
            RecordNotFound: never tracked, or already ended
        """
        entry = self.get(token_id)
        if entry is None or entry.record is None:
            raise RecordNotFound("no live record tracked for bounty", token_id=token_id.hex())
        return entry.record

    def track(self, record: BountyRecord) -> TrackedRecord:
        """Insert or overwrite unconditionally (fresh reads from the ledger)."""
        with self._lock:
            entry = self._entry(record.token_id, record, self._data.get(record.token_id))
            self._data[record.token_id] = entry
            return entry

    def compare_and_swap(
        self,
        token_id: bytes,
        expected_box_id: Optional[str],
        successor: Optional[BountyRecord],
    ) -> Tuple[bool, Optional[TrackedRecord]]:
        """
        Replace the record held in ``expected_box_id`` by ``successor``.

        ``successor=None`` marks the bounty ended. Returns (swapped, entry),
        where entry is the new one on success and the current one otherwise.
        """
        with self._lock:
            current = self._data.get(token_id)
            current_box = current.box_id if current else None
            if current is not None and (current.spent or current_box != expected_box_id):
                self.stats.conflicts += 1
                logger.debug(
                    "Compare-and-swap conflict",
                    token_id=token_id.hex(),
                    expected=expected_box_id,
                    actual=current_box,
                )
                return False, current
            entry = self._entry(token_id, successor, current)
            self._data[token_id] = entry
            self.stats.swaps += 1
            return True, entry

    def replace(
        self,
        token_id: bytes,
        expected_box_id: Optional[str],
        successor: Optional[BountyRecord],
    ) -> TrackedRecord:
        """Like compare_and_swap, but raises StaleRecord on conflict."""
        swapped, entry = self.compare_and_swap(token_id, expected_box_id, successor)
        if swapped and entry is not None:
            return entry
        raise StaleRecord(
            "record was replaced concurrently",
            token_id=token_id.hex(),
            expected_box_id=expected_box_id,
            actual_box_id=entry.box_id if entry else None,
        )

    def forget(self, token_id: bytes) -> bool:
        with self._lock:
            return self._data.pop(token_id, None) is not None

    def live(self) -> List[BountyRecord]:
        with self._lock:
            return [e.record for e in self._data.values() if e.record is not None]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
