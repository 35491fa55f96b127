"""
Composite stream identifiers.

A stream is keyed by the pair (owner, start_time). The pair is the primary
in-memory form; the packed integer is only its storage/interop encoding:

    id = owner << 96 | start_time

The high 160 bits hold the owner address and the low 96 bits hold the start
time (which always fits in 64 bits). Equal pairs always give equal ids, which
is what lets the ledger merge two deposits landing in the same second.
"""

from __future__ import annotations

from dataclasses import dataclass

from .vm.exceptions import VMExecutionError

ADDRESS_BITS = 160
TIME_BITS = 96

ADDRESS_MAX = 2**ADDRESS_BITS - 1
UINT64_MAX = 2**64 - 1
UINT256_MAX = 2**256 - 1
TIME_MASK = 2**TIME_BITS - 1

ZERO_ADDRESS = "0x" + "0" * 40


def normalize_address(address: str) -> str:
    """Validate a 0x-prefixed 20-byte address and return it lowercased."""
    if not isinstance(address, str) or len(address) != 42 or not address[:2].lower() == "0x":
        raise VMExecutionError(f"Invalid address: {address!r}")
    try:
        int(address[2:], 16)
    except ValueError as exc:
        raise VMExecutionError(f"Invalid address: {address!r}") from exc
    return address.lower()


def is_zero_address(address: str | None) -> bool:
    return not address or address.lower() == ZERO_ADDRESS


def address_to_int(address: str) -> int:
    return int(normalize_address(address)[2:], 16)


def int_to_address(value: int) -> str:
    if value < 0 or value > ADDRESS_MAX:
        raise VMExecutionError(f"Address value out of range: {value}")
    return f"0x{value:040x}"


@dataclass(frozen=True)
class StreamKey:
    """Owner and start time of a vesting stream."""

    owner: str
    start_time: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "owner", normalize_address(self.owner))
        if not isinstance(self.start_time, int) or isinstance(self.start_time, bool):
            raise VMExecutionError("Start time must be an integer timestamp")
        if self.start_time < 0 or self.start_time > UINT64_MAX:
            raise VMExecutionError(f"Start time out of uint64 range: {self.start_time}")

    def to_id(self) -> int:
        return (address_to_int(self.owner) << TIME_BITS) | self.start_time

    @classmethod
    def from_id(cls, stream_id: int) -> "StreamKey":
        return decode_stream_id(stream_id)


def encode_stream_id(owner: str, start_time: int) -> int:
    """Pack (owner, start_time) into a single uint256 stream id."""
    return StreamKey(owner, start_time).to_id()


def decode_stream_id(stream_id: int) -> StreamKey:
    """
    Unpack a stream id into its owner and start time.

    Raises:
        VMExecutionError: If the id is not a uint256 or its time field
            does not fit in 64 bits
    """
    if not isinstance(stream_id, int) or isinstance(stream_id, bool):
        raise VMExecutionError("Stream id must be an integer")
    if stream_id < 0 or stream_id > UINT256_MAX:
        raise VMExecutionError(f"Stream id out of uint256 range: {stream_id}")
    start_time = stream_id & TIME_MASK
    if start_time > UINT64_MAX:
        raise VMExecutionError(f"Stream id {stream_id:#x} has a malformed start time")
    return StreamKey(int_to_address(stream_id >> TIME_BITS), start_time)
