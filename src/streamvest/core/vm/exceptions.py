"""
Contract execution exceptions.

Every failure raised by a contract call derives from VMExecutionError so a
host can abort the whole call and roll back its effects with one handler.
"""

from __future__ import annotations

from typing import Any


class VMExecutionError(Exception):
    """Raised when a contract call must abort.

    Attributes:
        message: Human-readable error description
        details: Additional context about the failure
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
