"""
ERC20 assets used by the vesting converter.

The converter only needs two things from its assets:
- the input asset can debit a depositor and destroy the value (burnFrom)
- the output asset can pay a recipient out of custody and report a balance

``InputAsset`` and ``OutputAsset`` spell out that surface so any ledger can
be plugged in. ``ERC20Token`` is an in-memory implementation with uint256
arithmetic, zero-address checks and a Transfer/Approval event log.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..stream_id import ZERO_ADDRESS
from ..vm.exceptions import VMExecutionError

logger = logging.getLogger(__name__)

UINT256_MAX = 2**256 - 1


class InputAsset(Protocol):
    """Asset deposited into the converter and burned."""

    def burn_from(self, spender: str, from_addr: str, amount: int) -> bool: ...


class OutputAsset(Protocol):
    """Asset held in converter custody and paid out to stream owners."""

    def balance_of(self, account: str) -> int: ...

    def transfer(self, sender: str, recipient: str, amount: int) -> bool: ...


@dataclass
class TokenEvent:
    """A Transfer or Approval log entry."""

    event_type: str
    from_address: str
    to_address: str
    value: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class ERC20Token:
    """
    Fungible token with mint (owner only), burn and allowance-based burnFrom.

    Balances and allowances live in memory and round-trip through
    to_dict()/from_dict().
    """

    name: str
    symbol: str
    decimals: int = 18
    total_supply: int = 0
    address: str = ""
    owner: str = ""

    balances: dict[str, int] = field(default_factory=dict)
    allowances: dict[str, dict[str, int]] = field(default_factory=dict)
    events: list[TokenEvent] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.address:
            digest = hashlib.sha3_256(f"{self.name}:{self.symbol}".encode()).digest()
            self.address = f"0x{digest[-20:].hex()}"
        self.address = self.address.lower()
        self.owner = self.owner.lower()

    # ==================== Views ====================

    def balance_of(self, account: str) -> int:
        return self.balances.get(account.lower(), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get(owner.lower(), {}).get(spender.lower(), 0)

    # ==================== Transfers ====================

    def transfer(self, sender: str, recipient: str, amount: int) -> bool:
        """
        Move ``amount`` from sender to recipient.

        Raises:
            VMExecutionError: On zero recipient, bad amount or short balance
        """
        sender_norm = sender.lower()
        recipient_norm = recipient.lower()
        self._validate_address(recipient_norm, "recipient")
        self._validate_amount(amount)
        self._debit(sender_norm, amount, "transfer")
        self.balances[recipient_norm] = self.balances.get(recipient_norm, 0) + amount
        self._emit("Transfer", sender_norm, recipient_norm, amount)

        logger.debug(
            "ERC20 transfer",
            extra={
                "event": "erc20.transfer",
                "token": self.symbol,
                "from": sender_norm[:10],
                "to": recipient_norm[:10],
                "amount": amount,
            },
        )
        return True

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        owner_norm = owner.lower()
        spender_norm = spender.lower()
        self._validate_address(spender_norm, "spender")
        self._validate_amount(amount)
        self.allowances.setdefault(owner_norm, {})[spender_norm] = amount
        self._emit("Approval", owner_norm, spender_norm, amount)
        return True

    def transfer_from(self, spender: str, from_addr: str, to_addr: str, amount: int) -> bool:
        """
        Move ``amount`` from ``from_addr`` to ``to_addr`` using spender's allowance.

        Raises:
            VMExecutionError: On zero recipient, short allowance or short balance
        """
        spender_norm = spender.lower()
        from_norm = from_addr.lower()
        to_norm = to_addr.lower()
        self._validate_address(to_norm, "recipient")
        self._validate_amount(amount)

        current_allowance = self._check_allowance(from_norm, spender_norm, amount, "transfer")
        self._debit(from_norm, amount, "transfer")
        self._spend_allowance(from_norm, spender_norm, current_allowance, amount)
        self.balances[to_norm] = self.balances.get(to_norm, 0) + amount
        self._emit("Transfer", from_norm, to_norm, amount)
        return True

    # ==================== Supply ====================

    def mint(self, minter: str, to: str, amount: int) -> bool:
        """Mint new tokens to ``to`` (owner only)."""
        if minter.lower() != self.owner:
            raise VMExecutionError("ERC20: caller is not owner")
        to_norm = to.lower()
        self._validate_address(to_norm, "recipient")
        self._validate_amount(amount)
        if self.total_supply + amount > UINT256_MAX:
            raise VMExecutionError("ERC20: total supply exceeds uint256")

        self.total_supply += amount
        self.balances[to_norm] = self.balances.get(to_norm, 0) + amount
        self._emit("Transfer", ZERO_ADDRESS, to_norm, amount)

        logger.info(
            "ERC20 mint",
            extra={
                "event": "erc20.mint",
                "token": self.symbol,
                "to": to_norm[:10],
                "amount": amount,
                "new_supply": self.total_supply,
            },
        )
        return True

    def burn(self, holder: str, amount: int) -> bool:
        """Destroy ``amount`` of the holder's own tokens."""
        holder_norm = holder.lower()
        self._validate_amount(amount)
        self._debit(holder_norm, amount, "burn")
        self.total_supply -= amount
        self._emit("Transfer", holder_norm, ZERO_ADDRESS, amount)

        logger.info(
            "ERC20 burn",
            extra={
                "event": "erc20.burn",
                "token": self.symbol,
                "from": holder_norm[:10],
                "amount": amount,
                "new_supply": self.total_supply,
            },
        )
        return True

    def burn_from(self, spender: str, from_addr: str, amount: int) -> bool:
        """
        Destroy ``amount`` of ``from_addr``'s tokens using spender's allowance.

        Allowance and balance are both checked before either is touched.
        """
        spender_norm = spender.lower()
        from_norm = from_addr.lower()
        self._validate_amount(amount)

        current_allowance = self._check_allowance(from_norm, spender_norm, amount, "burn")
        self._debit(from_norm, amount, "burn")
        self._spend_allowance(from_norm, spender_norm, current_allowance, amount)
        self.total_supply -= amount
        self._emit("Transfer", from_norm, ZERO_ADDRESS, amount)

        logger.info(
            "ERC20 burn",
            extra={
                "event": "erc20.burn",
                "token": self.symbol,
                "from": from_norm[:10],
                "amount": amount,
                "new_supply": self.total_supply,
            },
        )
        return True

    # ==================== Helpers ====================

    def _check_allowance(self, owner: str, spender: str, amount: int, action: str) -> int:
        current_allowance = self.allowance(owner, spender)
        if current_allowance < amount:
            raise VMExecutionError(
                f"ERC20: {action} amount exceeds allowance ({amount} > {current_allowance})"
            )
        return current_allowance

    def _spend_allowance(self, owner: str, spender: str, current_allowance: int, amount: int) -> None:
        # Unlimited approvals are never decremented
        if current_allowance != UINT256_MAX:
            self.allowances[owner][spender] = current_allowance - amount

    def _debit(self, account: str, amount: int, action: str) -> None:
        balance = self.balances.get(account, 0)
        if balance < amount:
            raise VMExecutionError(
                f"ERC20: {action} amount exceeds balance ({amount} > {balance})"
            )
        self.balances[account] = balance - amount

    @staticmethod
    def _validate_address(address: str, field_name: str) -> None:
        if not address or address == ZERO_ADDRESS:
            raise VMExecutionError(f"ERC20: {field_name} is zero address")

    @staticmethod
    def _validate_amount(amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise VMExecutionError("ERC20: amount must be an integer")
        if amount < 0:
            raise VMExecutionError("ERC20: amount cannot be negative")
        if amount > UINT256_MAX:
            raise VMExecutionError("ERC20: amount exceeds uint256")

    def _emit(self, event_type: str, from_addr: str, to_addr: str, amount: int) -> None:
        self.events.append(TokenEvent(event_type, from_addr, to_addr, amount))

    # ==================== Serialization ====================

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "total_supply": self.total_supply,
            "address": self.address,
            "owner": self.owner,
            "balances": dict(self.balances),
            "allowances": {k: dict(v) for k, v in self.allowances.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ERC20Token":
        token = cls(
            name=data["name"],
            symbol=data["symbol"],
            decimals=data.get("decimals", 18),
            total_supply=data.get("total_supply", 0),
            address=data.get("address", ""),
            owner=data.get("owner", ""),
        )
        token.balances = dict(data.get("balances", {}))
        token.allowances = {k: dict(v) for k, v in data.get("allowances", {}).items()}
        return token
