"""Execution-layer primitives shared by streamvest contracts."""

from .exceptions import VMExecutionError

__all__ = ["VMExecutionError"]
