import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

# Ensure the src directory is importable before collection runs.
project_root = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(project_root / "src"))

from streamvest.core.config import ConverterConfig
from streamvest.core.contracts.erc20 import ERC20Token
from streamvest.core.defi.vesting_converter import VestingConverter

DAY = 86_400
START = 1_700_000_000
UINT256_MAX = 2**256 - 1


class ManualClock:
    def __init__(self, start_time: int):
        self.current_time = start_time

    def now(self) -> int:
        return self.current_time

    def advance(self, seconds: int):
        self.current_time += seconds


@pytest.fixture
def accounts():
    """Well-known principals used across converter tests."""
    return SimpleNamespace(
        admin="0x" + "ad" * 20,
        alice="0x" + "a1" * 20,
        bob="0x" + "b2" * 20,
        carol="0x" + "c3" * 20,
        zero="0x" + "0" * 40,
    )


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def config():
    return ConverterConfig(rate=750, expiration=START + 30 * DAY, duration=365 * DAY)


@pytest.fixture
def input_token(accounts):
    return ERC20Token(name="Legacy Token", symbol="OLD", owner=accounts.admin)


@pytest.fixture
def output_token(accounts):
    return ERC20Token(name="New Token", symbol="NEW", owner=accounts.admin)


@pytest.fixture
def converter(config, input_token, output_token, clock, accounts):
    """Converter with 1M output units in custody and funded, approved depositors."""
    conv = VestingConverter(
        config,
        input_token,
        output_token,
        admin=accounts.admin,
        time_provider=clock.now,
    )
    output_token.mint(accounts.admin, conv.address, 1_000_000)
    for depositor in (accounts.alice, accounts.bob):
        input_token.mint(accounts.admin, depositor, 10_000_000)
        input_token.approve(depositor, conv.address, UINT256_MAX)
    return conv
