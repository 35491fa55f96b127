"""
streamvest Converter Configuration

The conversion offer is fixed for the life of a converter: rate, vesting
duration, expiration and the precision of both assets.

Values are read from an optional YAML file and then overridden by
environment variables:

    STREAMVEST_CONFIG              path to a YAML offer file
    STREAMVEST_RATE                input units per output unit
    STREAMVEST_DURATION            vesting duration in seconds
    STREAMVEST_EXPIRATION          unix timestamp after which convert() fails
    STREAMVEST_INPUT_DECIMALS      input asset decimals
    STREAMVEST_OUTPUT_DECIMALS     output asset decimals
    STREAMVEST_START_TIME_POLICY   "zero" or "strict"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

import yaml

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400
DEFAULT_DURATION = 365 * SECONDS_PER_DAY
DEFAULT_DECIMALS = 18
MAX_DECIMALS = 36
UINT64_MAX = 2**64 - 1

ENV_PREFIX = "STREAMVEST_"
_INT_FIELDS = ("rate", "duration", "expiration", "input_decimals", "output_decimals")


class StartTimePolicy(Enum):
    """How a claimable query at or before a stream's start time is answered."""

    ZERO = "zero"
    STRICT = "strict"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class ConverterConfig:
    """Immutable conversion offer parameters."""

    rate: int
    expiration: int
    duration: int = DEFAULT_DURATION
    input_decimals: int = DEFAULT_DECIMALS
    output_decimals: int = DEFAULT_DECIMALS
    start_time_policy: StartTimePolicy = StartTimePolicy.ZERO

    def __post_init__(self) -> None:
        for name in _INT_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")
        if self.rate <= 0:
            raise ConfigurationError("rate must be positive")
        if self.duration <= 0:
            raise ConfigurationError("duration must be positive")
        if not 0 <= self.expiration <= UINT64_MAX:
            raise ConfigurationError("expiration must be a uint64 timestamp")
        for name in ("input_decimals", "output_decimals"):
            if not 0 <= getattr(self, name) <= MAX_DECIMALS:
                raise ConfigurationError(f"{name} must be between 0 and {MAX_DECIMALS}")
        if not isinstance(self.start_time_policy, StartTimePolicy):
            object.__setattr__(
                self, "start_time_policy", _parse_policy(self.start_time_policy)
            )

    @property
    def input_scale(self) -> int:
        return 10**self.input_decimals

    @property
    def output_scale(self) -> int:
        return 10**self.output_decimals

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["start_time_policy"] = self.start_time_policy.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConverterConfig":
        unknown = set(data) - set(_INT_FIELDS) - {"start_time_policy"}
        if unknown:
            raise ConfigurationError(f"Unknown converter settings: {sorted(unknown)}")
        missing = {"rate", "expiration"} - set(data)
        if missing:
            raise ConfigurationError(f"Missing converter settings: {sorted(missing)}")
        kwargs: dict[str, Any] = {}
        for name in _INT_FIELDS:
            if name in data:
                kwargs[name] = _parse_int(name, data[name])
        if "start_time_policy" in data:
            kwargs["start_time_policy"] = _parse_policy(data["start_time_policy"])
        return cls(**kwargs)


def _parse_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    try:
        return int(str(value).strip().replace("_", ""), 10)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


def _parse_policy(value: Any) -> StartTimePolicy:
    try:
        return StartTimePolicy(str(value).strip().lower())
    except ValueError as exc:
        choices = ", ".join(p.value for p in StartTimePolicy)
        raise ConfigurationError(
            f"start_time_policy must be one of {choices}, got {value!r}"
        ) from exc


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigurationError(f"Cannot read converter config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    # Accept either a bare mapping or one nested under "converter".
    section = data.get("converter", data)
    if not isinstance(section, dict):
        raise ConfigurationError(f"{path}: 'converter' must be a mapping")
    return dict(section)


def load_converter_config(
    path: str | None = None,
    environ: dict[str, str] | None = None,
) -> ConverterConfig:
    """
    Build a ConverterConfig from YAML and environment overrides.

    Args:
        path: YAML file; falls back to $STREAMVEST_CONFIG when omitted
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated ConverterConfig

    Raises:
        ConfigurationError: If a value is missing or invalid
    """
    env = os.environ if environ is None else environ
    path = path or env.get(f"{ENV_PREFIX}CONFIG", "").strip() or None

    settings: dict[str, Any] = _read_yaml(path) if path else {}
    for name in (*_INT_FIELDS, "start_time_policy"):
        value = env.get(f"{ENV_PREFIX}{name.upper()}", "").strip()
        if value:
            settings[name] = value

    config = ConverterConfig.from_dict(settings)
    logger.info(
        "Converter config loaded",
        extra={
            "event": "config.loaded",
            "config_source": path or "environment",
            "rate": config.rate,
            "duration": config.duration,
            "expiration": config.expiration,
            "start_time_policy": config.start_time_policy.value,
        },
    )
    return config
