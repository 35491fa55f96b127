"""
Vesting Converter - fixed-rate conversion into linearly vesting streams.

A depositor burns units of the input asset and receives a stream of the
output asset that unlocks linearly over ``config.duration`` from the moment
of conversion. Streams are keyed by (recipient, conversion time), so two
conversions for the same recipient in the same second share one stream.

Every state-changing call:
- runs under the converter lock, one operation at a time
- rejects re-entry from the same thread (e.g. from an asset callback)
- commits ledger changes before calling out to an asset
- restores the ledger snapshot if anything fails, so no partial effect
  survives
- publishes its events only once everything succeeded
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from ..config import ConverterConfig
from ..contracts.erc20 import InputAsset, OutputAsset
from ..stream_id import (
    StreamKey,
    decode_stream_id,
    encode_stream_id,
    is_zero_address,
    normalize_address,
)
from ..vesting_exceptions import (
    Expired,
    InsufficientReserves,
    InvalidRecipient,
    ReentrancyError,
    Unauthorized,
)
from ..vm.exceptions import VMExecutionError
from .access_control import SingleAdminControl
from .stream_ledger import StreamLedger, StreamRecord
from .vesting_schedule import claimable_amount

logger = logging.getLogger(__name__)

UINT256_MAX = 2**256 - 1

STREAM_CREATED = "StreamCreated"
STREAM_CLAIMED = "StreamClaimed"
STREAM_OWNERSHIP_TRANSFERRED = "StreamOwnershipTransferred"
ADMIN_WITHDRAWAL = "AdminWithdrawal"


@dataclass
class VestingEvent:
    """Log entry for off-chain observers."""

    event_type: str
    args: dict[str, Any]
    timestamp: int = 0


@dataclass
class _Operation:
    name: str
    now: int
    events: list[VestingEvent] = field(default_factory=list)

    def emit(self, event_type: str, **args: Any) -> None:
        self.events.append(VestingEvent(event_type, args, self.now))


class VestingConverter:
    """
    Converts input-asset deposits into vesting streams of the output asset.

    Args:
        config: Conversion offer parameters
        input_asset: Asset burned on conversion (needs burn_from)
        output_asset: Asset paid out of custody (needs transfer, balance_of)
        admin: Principal (or SingleAdminControl) allowed to withdraw reserves
        address: Custody address of this converter; derived when omitted
        ledger: Stream ledger; a fresh in-memory one when omitted
        time_provider: Returns the current unix timestamp
    """

    def __init__(
        self,
        config: ConverterConfig,
        input_asset: InputAsset,
        output_asset: OutputAsset,
        admin: str | SingleAdminControl,
        address: str = "",
        ledger: StreamLedger | None = None,
        time_provider: Callable[[], int] | None = None,
    ) -> None:
        self.config = config
        self.input_asset = input_asset
        self.output_asset = output_asset
        self.access = admin if isinstance(admin, SingleAdminControl) else SingleAdminControl(admin=admin)
        self.ledger = ledger if ledger is not None else StreamLedger()
        self.events: list[VestingEvent] = []
        self._time_provider = time_provider or (lambda: int(time.time()))
        self._lock = threading.RLock()
        self._entered = False

        if not address:
            seed = f"streamvest:{self.access.admin}:{config.rate}:{config.expiration}"
            address = "0x" + hashlib.sha3_256(seed.encode()).digest()[-20:].hex()
        self.address = normalize_address(address)

        logger.info(
            "VestingConverter initialized",
            extra={
                "event": "converter.initialized",
                "address": self.address[:10],
                "rate": config.rate,
                "duration": config.duration,
                "expiration": config.expiration,
                "policy": config.start_time_policy.value,
            },
        )

    # ==================== Internals ====================

    def _current_time(self) -> int:
        timestamp = self._time_provider()
        try:
            return int(timestamp)
        except (TypeError, ValueError) as exc:
            raise ValueError("time_provider must return an integer timestamp") from exc

    @contextmanager
    def _operation(self, name: str) -> Iterator[_Operation]:
        with self._lock:
            if self._entered:
                raise ReentrancyError(f"Reentrant call to {name}")
            self._entered = True
            op = _Operation(name=name, now=self._current_time())
            snapshot = self.ledger.snapshot()
            try:
                yield op
            except Exception as exc:
                self.ledger.restore(snapshot)
                logger.warning(
                    "Operation reverted",
                    extra={
                        "event": "converter.reverted",
                        "operation": name,
                        "error": type(exc).__name__,
                        "reason": str(exc),
                    },
                )
                raise
            else:
                self.events.extend(op.events)
            finally:
                self._entered = False

    @staticmethod
    def _validate_amount(amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise VMExecutionError("Amount must be an integer")
        if amount <= 0:
            raise VMExecutionError("Amount must be positive")
        if amount > UINT256_MAX:
            raise VMExecutionError("Amount exceeds uint256")

    @staticmethod
    def _require_owner(caller: str, key: StreamKey, stream_id: int) -> None:
        if caller.lower() != key.owner:
            logger.warning(
                "Access denied: caller does not own stream",
                extra={
                    "event": "converter.unauthorized",
                    "stream_id": hex(stream_id),
                    "caller": caller.lower()[:10],
                },
            )
            raise Unauthorized(
                f"Unauthorized: caller {caller[:10]} does not own stream {stream_id:#x}",
                details={"stream_id": stream_id},
            )

    def _pay_out(self, recipient: str, amount: int) -> None:
        """Send ``amount`` of the output asset from custody."""
        reserves = self.output_asset.balance_of(self.address)
        if reserves < amount:
            raise InsufficientReserves(
                f"Insufficient reserves ({amount} > {reserves})",
                details={"requested": amount, "available": reserves},
            )
        self.output_asset.transfer(self.address, recipient, amount)

    # ==================== Views ====================

    @staticmethod
    def encode_stream_id(owner: str, start_time: int) -> int:
        return encode_stream_id(owner, start_time)

    @staticmethod
    def decode_stream_id(stream_id: int) -> StreamKey:
        return decode_stream_id(stream_id)

    def preview_convert(self, amount: int) -> int:
        """Output units a deposit of ``amount`` input units would buy."""
        self._validate_amount(amount)
        config = self.config
        return (amount * config.output_scale) // (config.rate * config.input_scale)

    def get_stream(self, stream_id: int) -> StreamRecord:
        with self._lock:
            return self.ledger.read(stream_id)

    def claimable_balance(self, stream_id: int, now: int | None = None) -> int:
        """
        Amount of ``stream_id`` that can be claimed right now.

        Raises:
            InvalidStartTime: Before the stream starts, under the strict policy
        """
        key = decode_stream_id(stream_id)
        with self._lock:
            record = self.ledger.read(stream_id)
        return claimable_amount(
            record.total,
            record.claimed,
            key.start_time,
            self.config.duration,
            self._current_time() if now is None else now,
            self.config.start_time_policy,
        )

    @property
    def admin(self) -> str:
        return self.access.admin

    # ==================== Conversion ====================

    def convert(self, caller: str, amount: int, recipient: str) -> int:
        """
        Burn ``amount`` of the caller's input asset and open a stream for recipient.

        The converter must hold an allowance of at least ``amount`` from
        the caller on the input asset.

        Args:
            caller: Depositor (msg.sender)
            amount: Input units to convert
            recipient: Owner of the resulting stream

        Returns:
            Id of the stream credited

        Raises:
            Expired: If the offer window has closed
            InvalidRecipient: If recipient is the zero address
            VMExecutionError: If amount buys no output or the burn fails
        """
        with self._operation("convert") as op:
            if op.now > self.config.expiration:
                raise Expired(
                    "Conversion offer has expired",
                    details={"expiration": self.config.expiration, "now": op.now},
                )
            if is_zero_address(recipient):
                raise InvalidRecipient("Recipient cannot be the zero address")

            caller_norm = normalize_address(caller)
            amount_out = self.preview_convert(amount)
            if amount_out == 0:
                raise VMExecutionError(
                    f"Amount {amount} is below the price of one output unit"
                )

            stream_id = encode_stream_id(recipient, op.now)
            self.ledger.upsert_add(stream_id, amount_out)
            self.input_asset.burn_from(self.address, caller_norm, amount)

            op.emit(
                STREAM_CREATED,
                stream_id=stream_id,
                sender=caller_norm,
                recipient=recipient.lower(),
                amount_in=amount,
                amount_out=amount_out,
            )

        logger.info(
            "Stream created",
            extra={
                "event": "converter.stream_created",
                "stream_id": hex(stream_id),
                "sender": caller_norm[:10],
                "recipient": recipient.lower()[:10],
                "amount_in": amount,
                "amount_out": amount_out,
            },
        )
        return stream_id

    # ==================== Claims ====================

    def claim(self, caller: str, stream_id: int) -> int:
        """Pay the unlocked balance of ``stream_id`` to its owner."""
        key = decode_stream_id(stream_id)
        return self._claim(caller, stream_id, key.owner)

    def claim_to(self, caller: str, stream_id: int, recipient: str) -> int:
        """
        Pay the unlocked balance of ``stream_id`` to ``recipient``.

        Raises:
            InvalidRecipient: If recipient is the zero address
        """
        return self._claim(caller, stream_id, recipient)

    def _claim(self, caller: str, stream_id: int, recipient: str) -> int:
        with self._operation("claim") as op:
            key = decode_stream_id(stream_id)
            self._require_owner(caller, key, stream_id)
            if is_zero_address(recipient):
                raise InvalidRecipient("Recipient cannot be the zero address")
            recipient = normalize_address(recipient)

            record = self.ledger.read(stream_id)
            amount = claimable_amount(
                record.total,
                record.claimed,
                key.start_time,
                self.config.duration,
                op.now,
                self.config.start_time_policy,
            )
            self.ledger.settle_claim(stream_id, amount)
            self._pay_out(recipient, amount)

            op.emit(STREAM_CLAIMED, stream_id=stream_id, recipient=recipient, amount=amount)

        logger.info(
            "Stream claimed",
            extra={
                "event": "converter.stream_claimed",
                "stream_id": hex(stream_id),
                "recipient": recipient[:10],
                "amount": amount,
            },
        )
        return amount

    # ==================== Ownership ====================

    def transfer_stream_ownership(self, caller: str, stream_id: int, new_owner: str) -> int:
        """
        Hand ``stream_id`` to ``new_owner``, keeping its start time.

        If ``new_owner`` already has a stream with the same start time the
        two are merged.

        Returns:
            Id of the stream now holding the allocation

        Raises:
            Unauthorized: If caller is not the stream owner
            InvalidRecipient: If new_owner is the zero address
        """
        with self._operation("transfer_stream_ownership") as op:
            key = decode_stream_id(stream_id)
            self._require_owner(caller, key, stream_id)
            if is_zero_address(new_owner):
                raise InvalidRecipient("New owner cannot be the zero address")

            new_id = self.ledger.transfer_ownership(stream_id, new_owner)
            op.emit(STREAM_OWNERSHIP_TRANSFERRED, old_stream_id=stream_id, new_stream_id=new_id)

        logger.info(
            "Stream ownership transferred",
            extra={
                "event": "converter.ownership_transferred",
                "old_stream_id": hex(stream_id),
                "new_stream_id": hex(new_id),
            },
        )
        return new_id

    # ==================== Administration ====================

    def withdraw(self, caller: str, amount: int) -> None:
        """
        Move ``amount`` of output-asset reserves from custody to the admin.

        Raises:
            Unauthorized: If caller is not the admin
            InsufficientReserves: If custody holds less than amount
        """
        with self._operation("withdraw") as op:
            self.access.require_admin(caller)
            self._validate_amount(amount)
            self._pay_out(self.access.admin, amount)
            op.emit(ADMIN_WITHDRAWAL, recipient=self.access.admin, amount=amount)

        logger.info(
            "Reserves withdrawn",
            extra={
                "event": "converter.admin_withdrawal",
                "admin": self.access.admin[:10],
                "amount": amount,
            },
        )

    def transfer_admin(self, caller: str, new_admin: str) -> None:
        with self._lock:
            self.access.transfer_admin(caller, new_admin, timestamp=self._current_time())

    def renounce_admin(self, caller: str) -> None:
        with self._lock:
            self.access.renounce_admin(caller, timestamp=self._current_time())

    # ==================== Serialization ====================

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "address": self.address,
                "admin": self.access.admin,
                "admin_renounced": self.access.renounced,
                "config": self.config.to_dict(),
                "streams": self.ledger.to_dict(),
            }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        input_asset: InputAsset,
        output_asset: OutputAsset,
        time_provider: Callable[[], int] | None = None,
    ) -> "VestingConverter":
        """Rebuild a converter from to_dict() output and live asset handles."""
        return cls(
            config=ConverterConfig.from_dict(data["config"]),
            input_asset=input_asset,
            output_asset=output_asset,
            admin=SingleAdminControl(
                admin=data["admin"],
                renounced=data.get("admin_renounced", False),
            ),
            address=data["address"],
            ledger=StreamLedger.from_dict(data.get("streams", {})),
            time_provider=time_provider,
        )
