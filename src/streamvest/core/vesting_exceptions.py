"""
Vesting-specific exception hierarchy for streamvest.

Provides typed failures for conversion, claim, transfer and administrative
operations. All of them abort the surrounding call, which then rolls back
every ledger mutation made so far.
"""

from __future__ import annotations

from .vm.exceptions import VMExecutionError


class VestingError(VMExecutionError):
    """Base exception for all vesting converter failures.

    Catch this to handle any typed converter failure while letting
    generic VMExecutionErrors (bad amounts, overflow) pass through.
    """
    pass


class Expired(VestingError):
    """Raised when a conversion is attempted after the offer window closed."""
    pass


class Unauthorized(VestingError):
    """Raised when the caller is not the stream owner or the admin."""
    pass


class InvalidRecipient(VestingError):
    """Raised when the null principal is supplied as a recipient or owner."""
    pass


class InsufficientReserves(VestingError):
    """Raised when custody holds less of the output asset than a payout needs."""
    pass


class InvalidStartTime(VestingError):
    """Raised when a stream is queried before its vesting start.

    Only raised under StartTimePolicy.STRICT; the default policy reports
    zero instead.
    """
    pass


class ReentrancyError(VestingError):
    """Raised when a state-changing call re-enters the converter."""
    pass
