import dataclasses
import logging
import threading

import pytest

from conftest import CENTER, ETHER, OWNER, TOKEN_Y
from binkeeper.config import MAX_UINT256
from binkeeper.distribution import UNIT
from binkeeper.errors import (
    DistributionError,
    FatalConditionError,
    RemoteCallError,
    TransactionReverted,
)
from binkeeper.pool_observer import WalletBalances
from binkeeper.range_tracker import RangeState, RebalanceRequest

INITIAL = RebalanceRequest("initial", CENTER)


def seed_position(coordinator, chain, center=CENTER):
    coordinator.ledger.open_position(center, now=0.0, reason="initial")
    coordinator.tracker.recenter(center, now=0.0)
    chain.bin_balances = {b: ETHER for b in (center - 1, center, center + 1)}
    chain.allowance = MAX_UINT256
    chain.approved_for_all = True


def payload(chain, label):
    (call,) = [c for c in chain.sent if c.label == label]
    return call.function[1]


class TestInitialDeposit:
    def test_approves_then_adds_three_bins(self, coordinator, chain):
        result = coordinator.execute(INITIAL)

        assert chain.labels() == [f"approve({TOKEN_Y})", "addLiquidityNATIVE"]
        assert result.bins == [CENTER - 1, CENTER, CENTER + 1]
        assert result.removed_bins == []
        assert len(result.tx_hashes) == 2
        assert sorted(chain.bin_balances) == [CENTER - 1, CENTER, CENTER + 1]

    def test_add_parameters(self, coordinator, chain):
        coordinator.execute(INITIAL)
        params = payload(chain, "addLiquidityNATIVE")
        add = chain.sent[-1]

        # 100 ether wallet minus 2 ether gas reserve
        assert add.value == 98 * ETHER
        assert params["amountX"] == 98 * ETHER
        assert params["amountY"] == chain.token_balance
        assert params["activeIdDesired"] == CENTER
        assert params["deltaIds"] == [-1, 0, 1]
        assert sum(params["distributionX"]) == UNIT
        assert sum(params["distributionY"]) == UNIT
        assert params["distributionX"][0] == 0
        assert params["distributionY"][2] == 0
        assert params["to"] == OWNER

    def test_records_position_and_recenters(self, coordinator, clock):
        coordinator.execute(INITIAL)

        assert coordinator.ledger.position.center == CENTER
        assert coordinator.ledger.position.entry_ts == clock.now
        assert coordinator.ledger.counters.daily_rebalance_count == 1
        assert coordinator.tracker.center == CENTER
        assert coordinator.tracker.state is RangeState.IN_RANGE
        assert coordinator.tracker.timer.armed
        assert not coordinator.busy


class TestRebalance:
    def test_remove_then_add_at_new_center(self, coordinator, chain):
        seed_position(coordinator, chain)
        chain.active_bin = CENTER + 3

        result = coordinator.execute(RebalanceRequest("out_of_range", CENTER + 3))

        assert chain.labels() == ["removeLiquidityNATIVE", "addLiquidityNATIVE"]
        assert result.removed_bins == [CENTER - 1, CENTER, CENTER + 1]
        assert payload(chain, "removeLiquidityNATIVE")["amounts"] == [ETHER] * 3
        assert payload(chain, "addLiquidityNATIVE")["activeIdDesired"] == CENTER + 3
        assert coordinator.ledger.position.bins == [CENTER + 2, CENTER + 3, CENTER + 4]

    def test_grants_pool_approval_before_first_removal(self, coordinator, chain):
        seed_position(coordinator, chain)
        chain.approved_for_all = False

        coordinator.execute(RebalanceRequest("maintenance", CENTER))

        assert chain.labels()[:2] == ["setApprovalForAll", "removeLiquidityNATIVE"]

    def test_uses_active_bin_read_after_removal(self, coordinator, chain):
        seed_position(coordinator, chain)
        chain.active_bin = CENTER + 3
        chain.active_after_remove = CENTER + 5

        result = coordinator.execute(RebalanceRequest("out_of_range", CENTER + 3))

        assert result.center == CENTER + 5
        assert coordinator.ledger.position.center == CENTER + 5

    def test_dust_bins_are_left_alone(self, coordinator, chain):
        seed_position(coordinator, chain)
        chain.bin_balances[CENTER - 1] = 10

        result = coordinator.execute(RebalanceRequest("maintenance", CENTER))

        assert result.removed_bins == [CENTER, CENTER + 1]
        assert payload(chain, "removeLiquidityNATIVE")["ids"] == [CENTER, CENTER + 1]

    def test_nothing_to_remove_skips_removal(self, coordinator, chain):
        seed_position(coordinator, chain)
        chain.bin_balances = {CENTER: 10}

        result = coordinator.execute(RebalanceRequest("maintenance", CENTER))

        assert chain.labels() == ["addLiquidityNATIVE"]
        assert result.removed_bins == []

    def test_maintenance_keeps_entry_bin(self, coordinator, chain):
        seed_position(coordinator, chain)

        coordinator.execute(RebalanceRequest("maintenance", CENTER))

        assert coordinator.ledger.position.entry_ts == 0.0

    def test_only_token_side_when_native_reserved(self, coordinator, chain):
        seed_position(coordinator, chain)
        chain.native_balance = ETHER

        coordinator.execute(RebalanceRequest("maintenance", CENTER))
        params = payload(chain, "addLiquidityNATIVE")

        assert chain.sent[-1].value == 0
        assert params["deltaIds"] == [-1, 0]
        assert params["distributionX"] == [0, 0]
        assert sum(params["distributionY"]) == UNIT


class TestFailures:
    def test_revert_is_not_retried_and_marks_stale(self, coordinator, chain):
        chain.revert_on_simulate = {"addLiquidityNATIVE"}

        with pytest.raises(TransactionReverted):
            coordinator.execute(INITIAL)

        assert "addLiquidityNATIVE" not in chain.labels()
        # approve once, add simulated once
        assert chain.reads.count("simulate_and_send") == 2
        assert coordinator.ledger.stale
        assert coordinator.ledger.counters.daily_rebalance_count == 0
        assert not coordinator.busy

    def test_receipt_revert_raises(self, coordinator, chain):
        chain.receipt_status = "reverted"

        with pytest.raises(TransactionReverted):
            coordinator.execute(INITIAL)
        assert chain.reads.count("await_confirmation") == 1

    def test_transient_send_error_is_retried(self, coordinator, chain):
        chain.fail("simulate_and_send", RemoteCallError("timeout"))

        result = coordinator.execute(INITIAL)

        assert result is not None
        assert chain.reads.count("simulate_and_send") == 3

    def test_retries_exhausted(self, coordinator, chain):
        chain.fail("get_active_bin", *[RemoteCallError("down")] * 3)

        with pytest.raises(RemoteCallError):
            coordinator.execute(INITIAL)
        assert chain.labels() == []
        assert coordinator.ledger.stale

    def test_no_funds_raises_before_any_add(self, coordinator, chain):
        chain.native_balance = ETHER
        chain.token_balance = 0

        with pytest.raises(DistributionError):
            coordinator.execute(INITIAL)
        assert chain.sent == []

    def test_low_balance_health_check_is_fatal(self, coordinator, chain):
        chain.native_balance = ETHER // 2

        with pytest.raises(FatalConditionError):
            coordinator.execute(INITIAL)
        assert chain.sent == []

    def test_failed_rebalance_rearms_maintenance(self, coordinator, chain, clock):
        seed_position(coordinator, chain)
        chain.revert_on_simulate = {"addLiquidityNATIVE"}

        with pytest.raises(TransactionReverted):
            coordinator.execute(RebalanceRequest("maintenance", CENTER))
        assert coordinator.tracker.timer.armed
        assert coordinator.tracker.timer.deadline == clock.now + coordinator.strategy.maintenance_interval

    def test_stale_ledger_reconciles_before_next_attempt(self, coordinator, chain):
        seed_position(coordinator, chain)
        chain.revert_on_simulate = {"addLiquidityNATIVE"}
        with pytest.raises(TransactionReverted):
            coordinator.execute(RebalanceRequest("maintenance", CENTER))
        # liquidity was removed before the add failed
        assert chain.bin_balances == {}

        chain.revert_on_simulate = set()
        result = coordinator.execute(RebalanceRequest("maintenance", CENTER))

        assert result.removed_bins == []
        assert not coordinator.ledger.stale
        assert chain.labels().count("removeLiquidityNATIVE") == 1


class TestConcurrency:
    def test_second_trigger_is_dropped_while_executing(self, coordinator, chain):
        entered = threading.Event()
        release = threading.Event()

        def block(call):
            if call.label == "addLiquidityNATIVE":
                entered.set()
                release.wait(5)

        chain.on_send = block
        results = []
        worker = threading.Thread(target=lambda: results.append(coordinator.execute(INITIAL)))
        worker.start()
        try:
            assert entered.wait(5)
            assert coordinator.busy
            assert coordinator.execute(RebalanceRequest("maintenance", CENTER)) is None
            with coordinator.exclusive("timer") as acquired:
                assert not acquired
        finally:
            release.set()
            worker.join(5)

        assert results[0] is not None
        assert chain.labels().count("addLiquidityNATIVE") == 1
        assert coordinator.ledger.counters.daily_rebalance_count == 1

    def test_lock_is_reentrant_for_owner(self, coordinator):
        with coordinator.exclusive("block") as outer:
            assert outer
            result = coordinator.execute(INITIAL)
        assert result is not None


class TestReconcile:
    def test_adopts_liquidity_around_active_bin(self, coordinator, chain):
        chain.bin_balances = {b: ETHER for b in (CENTER - 1, CENTER, CENTER + 1)}

        coordinator.reconcile()

        assert coordinator.ledger.position.center == CENTER
        assert coordinator.tracker.center == CENTER
        assert coordinator.tracker.state is RangeState.UNINITIALIZED

    def test_assume_center_misses_far_liquidity(self, coordinator, chain):
        chain.bin_balances = {CENTER + 4: ETHER}

        coordinator.reconcile()

        assert coordinator.ledger.position is None
        assert coordinator.tracker.center is None

    def test_scan_mode_finds_offset_position(self, coordinator_factory, chain, strategy):
        coordinator = coordinator_factory(dataclasses.replace(strategy, entry_mode="scan", scan_radius=5))
        chain.bin_balances = {b: ETHER for b in (CENTER + 3, CENTER + 4, CENTER + 5)}

        coordinator.reconcile()

        assert coordinator.ledger.position.center == CENTER + 4
        assert coordinator.ledger.stray_bins == []

    def test_stray_bins_are_removed_on_next_rebalance(self, coordinator_factory, chain, strategy):
        coordinator = coordinator_factory(dataclasses.replace(strategy, entry_mode="scan"))
        chain.bin_balances = {b: ETHER for b in (CENTER - 4, CENTER, CENTER + 1, CENTER + 2)}
        chain.approved_for_all = True

        coordinator.reconcile()
        assert coordinator.ledger.stray_bins == [CENTER - 4]

        result = coordinator.execute(RebalanceRequest("out_of_range", CENTER))

        assert result.removed_bins == [CENTER - 4, CENTER, CENTER + 1, CENTER + 2]
        assert coordinator.ledger.stray_bins == []


class TestShutdown:
    def test_removes_everything(self, coordinator, chain):
        chain.bin_balances = {b: ETHER for b in (CENTER - 1, CENTER, CENTER + 1)}

        coordinator.safe_shutdown()

        assert chain.labels() == ["setApprovalForAll", "removeLiquidityNATIVE"]
        assert chain.bin_balances == {}

    def test_never_raises(self, coordinator, chain):
        chain.bin_balances = {CENTER: ETHER}
        chain.approved_for_all = True
        chain.revert_on_simulate = {"removeLiquidityNATIVE"}

        coordinator.safe_shutdown()

        assert chain.bin_balances == {CENTER: ETHER}

    def test_scans_around_current_active_bin(self, coordinator, chain):
        # pool state was loaded at CENTER; price has since moved away
        chain.active_bin = CENTER + 10
        chain.bin_balances = {b: ETHER for b in (CENTER + 9, CENTER + 10, CENTER + 11)}

        coordinator.safe_shutdown()

        assert payload(chain, "removeLiquidityNATIVE")["ids"] == [CENTER + 9, CENTER + 10, CENTER + 11]
        assert chain.bin_balances == {}

    def test_falls_back_to_cached_active_bin(self, coordinator, chain):
        chain.fail("get_active_bin", *[RemoteCallError("down")] * 3)
        chain.bin_balances = {CENTER: ETHER}

        coordinator.safe_shutdown()

        assert chain.bin_balances == {}


def test_il_logged_against_entry_bin(coordinator, chain, caplog):
    seed_position(coordinator, chain)
    chain.active_bin = CENTER + 3

    with caplog.at_level(logging.INFO, logger="binkeeper.coordinator"):
        coordinator.execute(RebalanceRequest("out_of_range", CENTER + 3))

    (line,) = [r.getMessage() for r in caplog.records if r.getMessage().startswith("IL since entry")]
    assert f"entry bin {CENTER}" in line
    assert "vs hold" in line
    assert "WMON" in line


def test_usable_amounts_respects_reserve_and_usage(coordinator_factory, strategy):
    coordinator = coordinator_factory(dataclasses.replace(strategy, liquidity_usage_bps=5_000))

    native, token = coordinator.usable_amounts(WalletBalances(native=12 * ETHER, token=1_000))

    assert native == 5 * ETHER
    assert token == 500
    assert coordinator.usable_amounts(WalletBalances(native=ETHER // 2, token=0)) == (0, 0)
