"""
Linear vesting schedule math.

All values are integers. Division floors, so a stream is always
under-allocated by at most one unit and successive claims can never push
``claimed`` above ``total``.
"""

from __future__ import annotations

from ..config import StartTimePolicy
from ..vesting_exceptions import InvalidStartTime
from ..vm.exceptions import VMExecutionError

__all__ = ["StartTimePolicy", "claimable_amount", "vested_amount"]


def vested_amount(total: int, start_time: int, duration: int, now: int) -> int:
    """
    Amount of ``total`` unlocked at ``now``, ignoring claims.

    Args:
        total: Total stream allocation
        start_time: Vesting start timestamp
        duration: Vesting duration in seconds
        now: Query timestamp

    Returns:
        Unlocked amount in [0, total]
    """
    if duration <= 0:
        raise VMExecutionError("Vesting duration must be positive")
    if now <= start_time:
        return 0
    elapsed = now - start_time
    if elapsed >= duration:
        return total
    return total * elapsed // duration


def claimable_amount(
    total: int,
    claimed: int,
    start_time: int,
    duration: int,
    now: int,
    policy: StartTimePolicy = StartTimePolicy.ZERO,
) -> int:
    """
    Amount unlocked but not yet claimed.

    Args:
        total: Total stream allocation
        claimed: Amount already paid out
        start_time: Vesting start timestamp
        duration: Vesting duration in seconds
        now: Query timestamp
        policy: Behaviour when ``now <= start_time``

    Returns:
        Claimable amount, never negative and never above ``total - claimed``

    Raises:
        InvalidStartTime: If ``now <= start_time`` under StartTimePolicy.STRICT
    """
    if claimed > total:
        raise VMExecutionError(f"Claimed {claimed} exceeds total {total}")

    if now <= start_time:
        if policy is StartTimePolicy.STRICT:
            raise InvalidStartTime(
                "Vesting has not started",
                details={"start_time": start_time, "now": now},
            )
        return 0

    if now >= start_time + duration:
        return total - claimed

    # floor(a) + floor(b) <= floor(a + b), so merged records keep
    # claimed <= vested; the clamp only guards hand-built records.
    return max(0, vested_amount(total, start_time, duration, now) - claimed)
