"""
Single-admin access control for converter administration.

Holds exactly one authorized principal. The admin is set at construction
and can only be handed over (or renounced) by the current holder. Stream
ownership is a separate, per-stream concern handled by the converter.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..stream_id import ZERO_ADDRESS, is_zero_address, normalize_address
from ..vesting_exceptions import InvalidRecipient, Unauthorized

logger = logging.getLogger(__name__)


@dataclass
class SingleAdminControl:
    """
    Capability object for the process-wide admin.

    Usage:
        admin = SingleAdminControl(admin="0x...")
        admin.require_admin(caller)  # raises Unauthorized otherwise
    """

    admin: str

    # Set once the admin gave the capability up; admin is then ZERO_ADDRESS
    renounced: bool = False

    # Audit log of admin changes
    admin_changes: list[dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.renounced:
            self.admin = ZERO_ADDRESS
            return
        if is_zero_address(self.admin):
            raise InvalidRecipient("Admin cannot be the zero address")
        self.admin = normalize_address(self.admin)

    def is_admin(self, caller: str) -> bool:
        return not self.renounced and caller.lower() == self.admin

    def require_admin(self, caller: str) -> None:
        """
        Raises:
            Unauthorized: If caller is not the current admin
        """
        if not self.is_admin(caller):
            logger.warning(
                "Access denied: caller is not admin",
                extra={
                    "event": "access_control.not_admin",
                    "caller": caller.lower()[:10],
                },
            )
            raise Unauthorized(f"Unauthorized: caller {caller[:10]} is not admin")

    def transfer_admin(self, caller: str, new_admin: str, timestamp: int | None = None) -> None:
        """Hand the admin capability to ``new_admin`` (admin only)."""
        self.require_admin(caller)
        if is_zero_address(new_admin):
            raise InvalidRecipient("New admin cannot be the zero address")
        self._record_change("transfer", normalize_address(new_admin), timestamp)

    def renounce_admin(self, caller: str, timestamp: int | None = None) -> None:
        """Give up the admin capability for good. Nobody can act as admin after this."""
        self.require_admin(caller)
        self._record_change("renounce", ZERO_ADDRESS, timestamp)
        self.renounced = True

    def _record_change(self, action: str, new_admin: str, timestamp: int | None) -> None:
        previous = self.admin
        self.admin = new_admin
        self.admin_changes.append({
            "action": action,
            "previous": previous,
            "new": new_admin,
            "timestamp": int(time.time()) if timestamp is None else timestamp,
        })
        logger.info(
            "Admin changed",
            extra={
                "event": "access_control.admin_changed",
                "action": action,
                "previous": previous[:10],
                "new": new_admin[:10],
            },
        )
