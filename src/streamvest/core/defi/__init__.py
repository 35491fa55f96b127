"""
streamvest DeFi components.

This module provides:
- Vesting Schedule: linear unlock math with floor rounding
- Stream Ledger: records keyed by composite (owner, start time) ids
- Access Control: single transferable admin capability
- Vesting Converter: fixed-rate conversion, claims and stream transfers
"""

from .access_control import SingleAdminControl
from .stream_ledger import StreamLedger, StreamRecord
from .vesting_converter import VestingConverter, VestingEvent
from .vesting_schedule import StartTimePolicy, claimable_amount, vested_amount

__all__ = [
    # Vesting Schedule
    "StartTimePolicy",
    "claimable_amount",
    "vested_amount",
    # Stream Ledger
    "StreamLedger",
    "StreamRecord",
    # Access Control
    "SingleAdminControl",
    # Converter
    "VestingConverter",
    "VestingEvent",
]
