"""
Tests for VestingConverter conversion, claims, ownership transfer and
administration.

Covers:
- Fixed-rate conversion with floor rounding
- Linear accrual across repeated claims
- Merge of same-second conversions
- Ownership transfer and authorization
- All-or-nothing rollback when an asset call fails
- Reentrancy rejection
"""

import threading

import pytest

from streamvest.core.config import ConverterConfig, StartTimePolicy
from streamvest.core.contracts.erc20 import ERC20Token
from streamvest.core.defi.stream_ledger import StreamRecord
from streamvest.core.defi.vesting_converter import VestingConverter
from streamvest.core.vesting_exceptions import (
    Expired,
    InsufficientReserves,
    InvalidRecipient,
    InvalidStartTime,
    ReentrancyError,
    Unauthorized,
    VestingError,
)
from streamvest.core.vm.exceptions import VMExecutionError

DAY = 86_400


class TestConvert:
    """Conversion at a fixed rate of 750 input units per output unit."""

    def test_exact_unit_conversion(self, converter, accounts, clock):
        stream_id = converter.convert(accounts.alice, 750, accounts.alice)

        assert converter.get_stream(stream_id) == StreamRecord(total=1, claimed=0)
        key = converter.decode_stream_id(stream_id)
        assert key.owner == accounts.alice
        assert key.start_time == clock.now()

    def test_input_is_burned(self, converter, accounts, input_token):
        supply_before = input_token.total_supply

        converter.convert(accounts.alice, 75_000, accounts.bob)

        assert input_token.balance_of(accounts.alice) == 10_000_000 - 75_000
        assert input_token.total_supply == supply_before - 75_000
        assert input_token.events[-1].to_address == accounts.zero

    def test_floor_rounding_leaves_no_dust_stream(self, converter, accounts):
        stream_id = converter.convert(accounts.alice, 75_749, accounts.alice)

        assert converter.get_stream(stream_id).total == 100
        assert len(converter.ledger) == 1
        assert converter.preview_convert(1_499) == 1

    def test_amount_below_one_output_unit_rejected(self, converter, accounts, input_token):
        with pytest.raises(VMExecutionError, match="below the price"):
            converter.convert(accounts.alice, 749, accounts.alice)

        assert len(converter.ledger) == 0
        assert input_token.balance_of(accounts.alice) == 10_000_000

    @pytest.mark.parametrize("amount", [0, -750, 1.5])
    def test_invalid_amounts_rejected(self, converter, accounts, amount):
        with pytest.raises(VMExecutionError):
            converter.convert(accounts.alice, amount, accounts.alice)

    def test_same_second_conversions_merge(self, converter, accounts):
        first = converter.convert(accounts.alice, 750 * 10, accounts.carol)
        second = converter.convert(accounts.bob, 750 * 5, accounts.carol)

        assert first == second
        assert converter.get_stream(first) == StreamRecord(total=15, claimed=0)
        assert len(converter.ledger) == 1

    def test_conversions_in_different_seconds_stay_separate(self, converter, accounts, clock):
        first = converter.convert(accounts.alice, 750, accounts.carol)
        clock.advance(1)
        second = converter.convert(accounts.alice, 750, accounts.carol)

        assert first != second
        assert len(converter.ledger) == 2

    def test_expired_offer(self, converter, accounts, clock, config, input_token):
        clock.current_time = config.expiration
        converter.convert(accounts.alice, 750, accounts.alice)

        clock.advance(1)
        with pytest.raises(Expired):
            converter.convert(accounts.alice, 750, accounts.alice)
        assert input_token.balance_of(accounts.alice) == 10_000_000 - 750

    def test_zero_recipient_rejected(self, converter, accounts):
        with pytest.raises(InvalidRecipient):
            converter.convert(accounts.alice, 750, accounts.zero)
        with pytest.raises(InvalidRecipient):
            converter.convert(accounts.alice, 750, "")

    def test_created_event(self, converter, accounts, clock):
        stream_id = converter.convert(accounts.alice, 1_500, accounts.bob)

        event = converter.events[-1]
        assert event.event_type == "StreamCreated"
        assert event.timestamp == clock.now()
        assert event.args == {
            "stream_id": stream_id,
            "sender": accounts.alice,
            "recipient": accounts.bob,
            "amount_in": 1_500,
            "amount_out": 2,
        }

    def test_precision_scaled_conversion(self, input_token, output_token, accounts, clock):
        config = ConverterConfig(
            rate=750,
            expiration=clock.now() + DAY,
            input_decimals=18,
            output_decimals=6,
        )
        conv = VestingConverter(config, input_token, output_token, accounts.admin, time_provider=clock.now)
        input_token.mint(accounts.admin, accounts.alice, 750 * 10**18)
        input_token.approve(accounts.alice, conv.address, 750 * 10**18)

        stream_id = conv.convert(accounts.alice, 750 * 10**18, accounts.alice)

        assert conv.get_stream(stream_id).total == 10**6


class TestBurnFailureRollback:

    def test_missing_allowance_reverts_ledger(self, converter, accounts, input_token):
        input_token.approve(accounts.alice, converter.address, 0)
        digest = converter.ledger.state_digest()

        with pytest.raises(VMExecutionError, match="allowance"):
            converter.convert(accounts.alice, 750, accounts.alice)

        assert converter.ledger.state_digest() == digest
        assert len(converter.ledger) == 0
        assert converter.events == []

    def test_failed_merge_keeps_previous_total(self, converter, accounts, input_token):
        stream_id = converter.convert(accounts.alice, 7_500, accounts.carol)
        input_token.approve(accounts.bob, converter.address, 0)

        with pytest.raises(VMExecutionError):
            converter.convert(accounts.bob, 7_500, accounts.carol)

        assert converter.get_stream(stream_id) == StreamRecord(10, 0)
        assert len(converter.events) == 1


class TestClaims:
    """Linear accrual over a 365 day vesting period."""

    def test_five_equal_claims(self, converter, accounts, output_token, clock):
        stream_id = converter.convert(accounts.alice, 75_000, accounts.alice)
        assert converter.get_stream(stream_id).total == 100

        remaining = []
        for _ in range(5):
            clock.advance(73 * DAY)
            assert converter.claim(accounts.alice, stream_id) == 20
            assert converter.claimable_balance(stream_id) == 0
            remaining.append(converter.get_stream(stream_id).unclaimed)

        assert remaining == [80, 60, 40, 20, 0]
        assert output_token.balance_of(accounts.alice) == 100
        assert output_token.balance_of(converter.address) == 1_000_000 - 100

    def test_claim_after_full_vesting_pays_remainder(self, converter, accounts, clock):
        stream_id = converter.convert(accounts.alice, 7_500 * 3, accounts.alice)

        clock.advance(10 * 365 * DAY)

        assert converter.claim(accounts.alice, stream_id) == 30
        assert converter.claim(accounts.alice, stream_id) == 0

    def test_claim_at_start_pays_nothing(self, converter, accounts):
        stream_id = converter.convert(accounts.alice, 75_000, accounts.alice)

        assert converter.claimable_balance(stream_id) == 0
        assert converter.claim(accounts.alice, stream_id) == 0

    def test_claimable_balance_monotonic(self, converter, accounts, clock):
        stream_id = converter.convert(accounts.alice, 750 * 1_000, accounts.alice)
        start = clock.now()

        balances = [
            converter.claimable_balance(stream_id, now=start + offset * DAY)
            for offset in range(0, 400, 7)
        ]

        assert balances == sorted(balances)
        assert balances[-1] == 1_000
        assert converter.claimable_balance(stream_id, now=start + 366 * DAY) == 1_000

    def test_claim_to_pays_explicit_recipient(self, converter, accounts, output_token, clock):
        stream_id = converter.convert(accounts.alice, 75_000, accounts.alice)
        clock.advance(73 * DAY)

        paid = converter.claim_to(accounts.alice, stream_id, accounts.carol)

        assert paid == 20
        assert output_token.balance_of(accounts.carol) == 20
        assert output_token.balance_of(accounts.alice) == 0
        event = converter.events[-1]
        assert event.event_type == "StreamClaimed"
        assert event.args == {"stream_id": stream_id, "recipient": accounts.carol, "amount": 20}

    def test_claim_to_zero_recipient_rejected(self, converter, accounts, clock):
        stream_id = converter.convert(accounts.alice, 75_000, accounts.alice)
        clock.advance(73 * DAY)

        with pytest.raises(InvalidRecipient):
            converter.claim_to(accounts.alice, stream_id, accounts.zero)
        assert converter.get_stream(stream_id).claimed == 0

    def test_insufficient_reserves_reverts_claim(self, converter, accounts, output_token, clock):
        stream_id = converter.convert(accounts.alice, 75_000, accounts.alice)
        converter.withdraw(accounts.admin, 1_000_000 - 10)
        clock.advance(73 * DAY)

        with pytest.raises(InsufficientReserves) as exc_info:
            converter.claim(accounts.alice, stream_id)

        assert exc_info.value.details == {"requested": 20, "available": 10}
        assert converter.get_stream(stream_id) == StreamRecord(100, 0)
        assert output_token.balance_of(accounts.alice) == 0

    def test_strict_policy_rejects_query_at_start(self, input_token, output_token, accounts, clock):
        config = ConverterConfig(
            rate=750,
            expiration=clock.now() + DAY,
            start_time_policy=StartTimePolicy.STRICT,
        )
        conv = VestingConverter(config, input_token, output_token, accounts.admin, time_provider=clock.now)
        input_token.mint(accounts.admin, accounts.alice, 75_000)
        input_token.approve(accounts.alice, conv.address, 75_000)
        output_token.mint(accounts.admin, conv.address, 100)
        stream_id = conv.convert(accounts.alice, 75_000, accounts.alice)

        with pytest.raises(InvalidStartTime):
            conv.claimable_balance(stream_id)
        with pytest.raises(InvalidStartTime):
            conv.claim(accounts.alice, stream_id)

        clock.advance(73 * DAY)
        assert conv.claim(accounts.alice, stream_id) == 20


class TestOwnershipTransfer:

    def test_transfer_preserves_start_time(self, converter, accounts, clock):
        stream_id = converter.convert(accounts.alice, 75_000, accounts.alice)
        start = clock.now()
        clock.advance(73 * DAY)
        converter.claim(accounts.alice, stream_id)

        new_id = converter.transfer_stream_ownership(accounts.alice, stream_id, accounts.bob)

        key = converter.decode_stream_id(new_id)
        assert key.owner == accounts.bob
        assert key.start_time == start
        assert converter.get_stream(stream_id) == StreamRecord(0, 0)
        assert converter.get_stream(new_id) == StreamRecord(100, 20)
        assert converter.events[-1].args == {"old_stream_id": stream_id, "new_stream_id": new_id}

    def test_new_owner_continues_same_schedule(self, converter, accounts, clock, output_token):
        stream_id = converter.convert(accounts.alice, 75_000, accounts.alice)
        new_id = converter.transfer_stream_ownership(accounts.alice, stream_id, accounts.bob)

        clock.advance(146 * DAY)

        assert converter.claim(accounts.bob, new_id) == 40
        with pytest.raises(Unauthorized):
            converter.claim(accounts.alice, new_id)
        # The old id still decodes to alice but no longer holds anything.
        assert converter.claim(accounts.alice, stream_id) == 0
        assert output_token.balance_of(accounts.bob) == 40
        assert output_token.balance_of(accounts.alice) == 0

    def test_transfer_merges_with_existing_stream(self, converter, accounts):
        alice_stream = converter.convert(accounts.alice, 7_500, accounts.alice)
        bob_stream = converter.convert(accounts.bob, 15_000, accounts.bob)

        new_id = converter.transfer_stream_ownership(accounts.alice, alice_stream, accounts.bob)

        assert new_id == bob_stream
        assert converter.get_stream(bob_stream) == StreamRecord(30, 0)
        assert len(converter.ledger) == 1

    def test_transfer_to_zero_address_rejected(self, converter, accounts):
        stream_id = converter.convert(accounts.alice, 750, accounts.alice)

        with pytest.raises(InvalidRecipient):
            converter.transfer_stream_ownership(accounts.alice, stream_id, accounts.zero)
        assert converter.get_stream(stream_id).total == 1


class TestAuthorization:
    """Non-owners are rejected without any state change."""

    def test_non_owner_cannot_claim_or_transfer(self, converter, accounts, clock, output_token):
        stream_id = converter.convert(accounts.alice, 75_000, accounts.alice)
        clock.advance(73 * DAY)
        digest = converter.ledger.state_digest()
        events = len(converter.events)

        with pytest.raises(Unauthorized):
            converter.claim(accounts.bob, stream_id)
        with pytest.raises(Unauthorized):
            converter.claim_to(accounts.bob, stream_id, accounts.bob)
        with pytest.raises(Unauthorized):
            converter.transfer_stream_ownership(accounts.bob, stream_id, accounts.bob)

        assert converter.ledger.state_digest() == digest
        assert len(converter.events) == events
        assert output_token.balance_of(accounts.bob) == 0

    def test_non_owner_claim_to_zero_recipient_is_unauthorized(self, converter, accounts, clock):
        stream_id = converter.convert(accounts.alice, 75_000, accounts.alice)
        clock.advance(73 * DAY)

        with pytest.raises(Unauthorized):
            converter.claim_to(accounts.bob, stream_id, accounts.zero)
        assert converter.get_stream(stream_id) == StreamRecord(100, 0)

    def test_depositor_does_not_own_recipient_stream(self, converter, accounts, clock):
        stream_id = converter.convert(accounts.alice, 75_000, accounts.bob)
        clock.advance(73 * DAY)

        with pytest.raises(Unauthorized):
            converter.claim(accounts.alice, stream_id)
        assert converter.claim(accounts.bob, stream_id) == 20

    def test_typed_errors_share_base(self):
        assert issubclass(Unauthorized, VestingError)
        assert issubclass(VestingError, VMExecutionError)


class TestAdministration:

    def test_admin_withdraw(self, converter, accounts, output_token):
        converter.withdraw(accounts.admin, 500)

        assert output_token.balance_of(accounts.admin) == 500
        assert converter.events[-1].event_type == "AdminWithdrawal"

    def test_non_admin_withdraw_rejected(self, converter, accounts, output_token):
        with pytest.raises(Unauthorized):
            converter.withdraw(accounts.alice, 500)
        assert output_token.balance_of(converter.address) == 1_000_000

    def test_withdraw_more_than_reserves(self, converter, accounts):
        with pytest.raises(InsufficientReserves):
            converter.withdraw(accounts.admin, 1_000_001)

    def test_admin_transfer(self, converter, accounts, output_token):
        converter.transfer_admin(accounts.admin, accounts.carol)

        with pytest.raises(Unauthorized):
            converter.withdraw(accounts.admin, 1)
        converter.withdraw(accounts.carol, 1)
        assert output_token.balance_of(accounts.carol) == 1

    def test_renounced_admin(self, converter, accounts):
        converter.renounce_admin(accounts.admin)

        with pytest.raises(Unauthorized):
            converter.withdraw(accounts.admin, 1)
        with pytest.raises(Unauthorized):
            converter.transfer_admin(accounts.admin, accounts.carol)

    def test_admin_changes_use_converter_clock(self, converter, accounts, clock):
        clock.advance(5 * DAY)
        transferred_at = clock.now()
        converter.transfer_admin(accounts.admin, accounts.carol)
        clock.advance(DAY)
        converter.renounce_admin(accounts.carol)

        changes = converter.access.admin_changes
        assert [c["action"] for c in changes] == ["transfer", "renounce"]
        assert [c["timestamp"] for c in changes] == [transferred_at, transferred_at + DAY]


class ReentrantToken(ERC20Token):
    """Input token whose burn calls back into the converter."""

    converter = None
    victim_stream = 0

    def burn_from(self, spender, from_addr, amount):
        if self.converter is not None:
            self.converter.claim(from_addr, self.victim_stream)
        return super().burn_from(spender, from_addr, amount)


class TestReentrancy:

    def test_reentrant_call_reverts_outer_operation(self, output_token, accounts, clock):
        token = ReentrantToken(name="Hook", symbol="HOOK", owner=accounts.admin)
        config = ConverterConfig(rate=750, expiration=clock.now() + 400 * DAY)
        conv = VestingConverter(config, token, output_token, accounts.admin, time_provider=clock.now)
        output_token.mint(accounts.admin, conv.address, 1_000)
        token.mint(accounts.admin, accounts.alice, 150_000)
        token.approve(accounts.alice, conv.address, 150_000)
        victim = conv.convert(accounts.alice, 75_000, accounts.alice)
        clock.advance(73 * DAY)

        token.converter = conv
        token.victim_stream = victim
        with pytest.raises(ReentrancyError):
            conv.convert(accounts.alice, 75_000, accounts.alice)

        assert conv.encode_stream_id(accounts.alice, clock.now()) not in conv.ledger
        assert conv.get_stream(victim) == StreamRecord(100, 0)
        assert token.balance_of(accounts.alice) == 75_000
        assert output_token.balance_of(accounts.alice) == 0
        assert len(conv.events) == 1

        # The guard is released after the failed call.
        token.converter = None
        assert conv.claim(accounts.alice, victim) == 20


class StallingToken(ERC20Token):
    """Output token whose balance query blocks until the test releases it."""

    entered = None
    release = None

    def balance_of(self, account):
        if self.entered is not None:
            self.entered.set()
            self.release.wait(5)
        return super().balance_of(account)


class TestConcurrentReads:

    def test_views_never_observe_uncommitted_claim(self, input_token, accounts, clock, config):
        token = StallingToken(name="Slow", symbol="SLOW", owner=accounts.admin)
        conv = VestingConverter(config, input_token, token, accounts.admin, time_provider=clock.now)
        input_token.mint(accounts.admin, accounts.alice, 75_000)
        input_token.approve(accounts.alice, conv.address, 75_000)
        stream_id = conv.convert(accounts.alice, 75_000, accounts.alice)
        clock.advance(73 * DAY)

        token.entered = threading.Event()
        token.release = threading.Event()
        errors, seen = [], []

        def claimer():
            try:
                conv.claim(accounts.alice, stream_id)
            except InsufficientReserves as exc:
                errors.append(exc)

        def reader():
            seen.append(conv.get_stream(stream_id))
            seen.append(conv.claimable_balance(stream_id))

        claim_thread = threading.Thread(target=claimer)
        claim_thread.start()
        assert token.entered.wait(5)

        read_thread = threading.Thread(target=reader)
        read_thread.start()
        read_thread.join(0.2)
        assert read_thread.is_alive()

        token.release.set()
        claim_thread.join(5)
        read_thread.join(5)

        assert len(errors) == 1
        assert seen == [StreamRecord(100, 0), 20]
        assert conv.get_stream(stream_id) == StreamRecord(100, 0)


class TestSerialization:

    def test_converter_round_trip(self, converter, accounts, clock, input_token, output_token):
        stream_id = converter.convert(accounts.alice, 75_000, accounts.alice)
        clock.advance(73 * DAY)
        converter.claim(accounts.alice, stream_id)

        data = converter.to_dict()
        restored = VestingConverter.from_dict(data, input_token, output_token, time_provider=clock.now)

        assert data["streams"][str(stream_id)] == {"total": 100, "claimed": 20}
        assert restored.address == converter.address
        assert restored.admin == accounts.admin
        assert restored.config == converter.config
        assert restored.claimable_balance(stream_id) == 0
        clock.advance(73 * DAY)
        assert restored.claim(accounts.alice, stream_id) == 20

    def test_round_trip_after_renounce(self, converter, accounts, input_token, output_token):
        converter.renounce_admin(accounts.admin)

        restored = VestingConverter.from_dict(converter.to_dict(), input_token, output_token)

        assert restored.access.renounced
        with pytest.raises(Unauthorized):
            restored.withdraw(accounts.admin, 1)
