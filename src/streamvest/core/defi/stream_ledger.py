"""
Stream Ledger - vesting allocations keyed by composite stream id.

Maps a packed stream id (see ``streamvest.core.stream_id``) to a
``StreamRecord`` of ``total`` and ``claimed`` amounts. Absent keys read as
the zero record.

Merge precondition: two records are only ever merged when they share a
start time, and therefore an identical vesting curve. Creation-time merges
hit the same id by construction; transfer-time merges keep the start time
of the source id. Summing (total, claimed) of two records on one curve
yields a record that is still on that curve.

Thread-safe implementation with RLock. snapshot()/restore() let the caller
roll the ledger back when a later step of the same operation fails.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from threading import RLock
from typing import Any, Iterator

from ..stream_id import StreamKey, decode_stream_id
from ..vm.exceptions import VMExecutionError

logger = logging.getLogger(__name__)

UINT128_MAX = 2**128 - 1


def _require_uint128(value: int, field_name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise VMExecutionError(f"{field_name} must be an integer")
    if value < 0:
        raise VMExecutionError(f"{field_name} cannot be negative")
    if value > UINT128_MAX:
        raise VMExecutionError(f"{field_name} exceeds uint128")
    return value


@dataclass
class StreamRecord:
    """One vesting allocation. Invariant: claimed <= total."""

    total: int = 0
    claimed: int = 0

    @property
    def unclaimed(self) -> int:
        return self.total - self.claimed

    @property
    def is_empty(self) -> bool:
        return self.total == 0 and self.claimed == 0

    def copy(self) -> "StreamRecord":
        return StreamRecord(self.total, self.claimed)

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "claimed": self.claimed}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StreamRecord":
        record = cls(
            total=_require_uint128(int(data.get("total", 0)), "total"),
            claimed=_require_uint128(int(data.get("claimed", 0)), "claimed"),
        )
        if record.claimed > record.total:
            raise VMExecutionError("StreamRecord: claimed exceeds total")
        return record


class StreamLedger:
    """
    Durable store of stream records.

    The ledger is the only writer of its records; converters hold it as a
    dependency and call the four operations below.
    """

    def __init__(self) -> None:
        self._records: dict[int, StreamRecord] = {}
        self._lock = RLock()

    # ==================== Reads ====================

    def read(self, stream_id: int) -> StreamRecord:
        """Return a copy of the record at ``stream_id`` (zero record if absent)."""
        with self._lock:
            record = self._records.get(stream_id)
            return record.copy() if record else StreamRecord()

    def __contains__(self, stream_id: object) -> bool:
        with self._lock:
            return stream_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def stream_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._records)

    def streams_of(self, owner: str) -> Iterator[tuple[int, StreamRecord]]:
        """Yield (id, record) pairs owned by ``owner``, oldest first."""
        owner_norm = owner.lower()
        for stream_id in self.stream_ids():
            if decode_stream_id(stream_id).owner == owner_norm:
                yield stream_id, self.read(stream_id)

    # ==================== Mutations ====================

    def upsert_add(self, stream_id: int, amount: int) -> StreamRecord:
        """
        Add ``amount`` to the total of the record at ``stream_id``.

        Creates ``{total: amount, claimed: 0}`` when absent. ``claimed`` is
        never touched: the added principal has not been claimed against.

        Returns:
            Copy of the updated record

        Raises:
            VMExecutionError: If amount is invalid or total would overflow
        """
        decode_stream_id(stream_id)
        _require_uint128(amount, "amount")
        with self._lock:
            record = self._records.get(stream_id)
            if record is None:
                record = StreamRecord(total=amount)
                self._records[stream_id] = record
                merged = False
            else:
                if record.total + amount > UINT128_MAX:
                    raise VMExecutionError("StreamLedger: total exceeds uint128")
                record.total += amount
                merged = True

            logger.debug(
                "Stream upserted",
                extra={
                    "event": "ledger.upsert",
                    "stream_id": hex(stream_id),
                    "amount": amount,
                    "merged": merged,
                    "total": record.total,
                },
            )
            return record.copy()

    def settle_claim(self, stream_id: int, amount: int) -> StreamRecord:
        """
        Record ``amount`` as claimed on the stream.

        Returns:
            Copy of the updated record

        Raises:
            VMExecutionError: If amount exceeds the unclaimed balance
        """
        _require_uint128(amount, "amount")
        with self._lock:
            record = self._records.get(stream_id)
            unclaimed = record.unclaimed if record else 0
            if amount > unclaimed:
                raise VMExecutionError(
                    f"StreamLedger: claim exceeds unclaimed balance ({amount} > {unclaimed})"
                )
            if record is None:
                # Zero claim on an absent stream leaves the ledger untouched.
                return StreamRecord()
            record.claimed += amount

            logger.debug(
                "Stream claim settled",
                extra={
                    "event": "ledger.settle_claim",
                    "stream_id": hex(stream_id),
                    "amount": amount,
                    "claimed": record.claimed,
                },
            )
            return record.copy()

    def transfer_ownership(self, old_id: int, new_owner: str) -> int:
        """
        Move the record at ``old_id`` to ``new_owner``, keeping its start time.

        If a record already exists under the new id the two are merged by
        summing total and claimed. The old key is deleted.

        Returns:
            The new stream id
        """
        old_key = decode_stream_id(old_id)
        new_id = StreamKey(new_owner, old_key.start_time).to_id()
        if new_id == old_id:
            return old_id

        with self._lock:
            source = self._records.get(old_id, StreamRecord())
            target = self._records.get(new_id)
            if target is None:
                target = StreamRecord()
            if target.total + source.total > UINT128_MAX:
                raise VMExecutionError("StreamLedger: merged total exceeds uint128")

            merged = not target.is_empty
            target.total += source.total
            target.claimed += source.claimed
            if not target.is_empty:
                self._records[new_id] = target
            self._records.pop(old_id, None)

            logger.info(
                "Stream ownership moved",
                extra={
                    "event": "ledger.transfer",
                    "old_id": hex(old_id),
                    "new_id": hex(new_id),
                    "merged": merged,
                    "total": target.total,
                },
            )
        return new_id

    # ==================== Snapshots & Serialization ====================

    def snapshot(self) -> dict[int, tuple[int, int]]:
        """Capture the full ledger state for rollback."""
        with self._lock:
            return {sid: (r.total, r.claimed) for sid, r in self._records.items()}

    def restore(self, snapshot: dict[int, tuple[int, int]]) -> None:
        """Replace the ledger state with a snapshot taken by snapshot()."""
        with self._lock:
            self._records = {
                sid: StreamRecord(total, claimed) for sid, (total, claimed) in snapshot.items()
            }

    def state_digest(self) -> str:
        """Deterministic hash of all records, for integrity comparisons."""
        with self._lock:
            payload = "|".join(
                f"{sid:064x}:{r.total}:{r.claimed}" for sid, r in sorted(self._records.items())
            )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {str(sid): r.to_dict() for sid, r in sorted(self._records.items())}

    @classmethod
    def from_dict(cls, data: dict[str, dict[str, Any]]) -> "StreamLedger":
        ledger = cls()
        for key, value in data.items():
            stream_id = int(key)
            decode_stream_id(stream_id)
            record = StreamRecord.from_dict(value)
            if not record.is_empty:
                ledger._records[stream_id] = record
        return ledger
