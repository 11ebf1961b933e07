import pytest

from core.exceptions import TransactionError
from modules.rebalance_engine import RebalanceManager
from modules.venue import ActiveBin, Side

from fakes import make_position

ONE = 10 ** 9


@pytest.fixture
def rebalancer(venue, store, liquidity, oracle, test_settings, clock):
    return RebalanceManager(venue, store, liquidity, "WALLET", price_oracle=oracle,
                            config=test_settings, clock=clock)


def opened(venue):
    return [op for op in venue.sent_ops() if op.startswith("open:")]


class TestRangeChecks:
    def test_in_range_position_is_left_alone(self, rebalancer, venue, store):
        venue.add_position(make_position("A", y=50 * ONE))
        venue.set_active_bin("POOL", 105)

        assert rebalancer.check_and_rebalance() == []
        assert venue.sent == []
        assert store.get_range("A").min_bin_id == 100

    def test_price_above_range_recreates_on_y_side(self, rebalancer, venue, store):
        venue.add_position(make_position("A", y=50 * ONE, fee_x=5, fee_y=7))
        venue.set_active_bin("POOL", 170)

        assert rebalancer.check_and_rebalance() == ["pos-1"]

        pool, bin_range, side, amount = venue.opened[0]
        assert side == Side.Y
        assert (bin_range.min_bin_id, bin_range.max_bin_id) == (101, 170)
        assert bin_range.min_bin_id < bin_range.max_bin_id
        assert amount == 50 * ONE
        assert "A" not in venue.positions

        record = store.get("pos-1")
        assert record.previous_position_key == "A"
        assert record.rebalance_count == 1
        assert (record.min_bin_id, record.max_bin_id, record.original_active_bin) == (101, 170, 170)
        assert record.amount_y == 50 * ONE
        assert record.snapshot_position_value == pytest.approx(50.0)
        assert (record.total_claimed_fee_x, record.total_claimed_fee_y) == (5, 7)

    def test_price_below_range_recreates_on_x_side(self, rebalancer, venue, store):
        venue.add_position(make_position("A", x=3 * ONE))
        venue.set_active_bin("POOL", 90, price_per_token=20.0)

        rebalancer.check_and_rebalance()

        pool, bin_range, side, amount = venue.opened[0]
        assert side == Side.X
        assert (bin_range.min_bin_id, bin_range.max_bin_id) == (90, 159)
        assert amount == 3 * ONE
        assert store.get("pos-1").snapshot_position_value == pytest.approx(60.0)

    def test_new_position_keeps_provenance_and_triggers(self, rebalancer, venue, store):
        venue.add_position(make_position("A", y=50 * ONE))
        store.upsert("A", {"pool_address": "POOL", "min_bin_id": 100, "max_bin_id": 169, "current_value": 80.0})
        store.set_triggers("A", take_profit_price=2.0, stop_loss_price=0.5)
        venue.set_active_bin("POOL", 170)

        rebalancer.check_and_rebalance()

        record = store.get("pos-1")
        assert record.starting_position_value == 80.0
        assert (record.take_profit_price, record.stop_loss_price) == (2.0, 0.5)

    def test_nothing_recovered_means_no_recreation(self, rebalancer, venue, store):
        venue.add_position(make_position("A", x=ONE, y=0))
        venue.set_active_bin("POOL", 170)

        assert rebalancer.check_and_rebalance() == []
        assert opened(venue) == []

    def test_failed_open_keeps_history_until_the_retry_succeeds(self, rebalancer, venue, store):
        venue.add_position(make_position("A", y=50 * ONE))
        store.upsert("A", {"pool_address": "POOL", "min_bin_id": 100, "max_bin_id": 169, "current_value": 80.0})
        store.set_triggers("A", stop_loss_price=0.5)
        venue.set_active_bin("POOL", 170)
        venue.failures = [None, TransactionError("custom program error: 0x1")]

        assert rebalancer.check_and_rebalance() == []
        assert venue.positions == {}
        assert rebalancer.pending_recreations == ["A"]
        assert store.get("A").starting_position_value == 80.0
        assert store.positions_with_triggers() == []

        assert rebalancer.check_and_rebalance() == ["pos-2"]
        assert rebalancer.pending_recreations == []
        record = store.get("pos-2")
        assert record.previous_position_key == "A"
        assert record.starting_position_value == 80.0
        assert record.stop_loss_price == 0.5
        assert (record.min_bin_id, record.max_bin_id) == (101, 170)

        rebalancer.check_and_rebalance()
        assert store.keys() == ["pos-2"]
        assert venue.positions == {}
        assert store.get("A") is None


class TestExecutionGuards:
    def test_condition_is_verified_again_before_acting(self, rebalancer, venue):
        venue.add_position(make_position("A", y=50 * ONE))
        venue.set_active_bins("POOL", ActiveBin(170, 1.0, 1.0), ActiveBin(150, 1.0, 1.0))

        assert rebalancer.check_and_rebalance() == []
        assert venue.sent == []

    def test_cooldown_allows_exactly_one_rebalance(self, rebalancer, venue, clock, test_settings):
        venue.add_position(make_position("A", y=50 * ONE))
        venue.set_active_bin("POOL", 170)
        venue.failures = [Exception("custom program error: 0x1771")]

        assert rebalancer.check_and_rebalance() == []
        assert rebalancer.check_and_rebalance() == []
        assert len(venue.sent) == 1
        assert "A" in venue.positions

        clock.advance(test_settings.REBALANCE_COOLDOWN_SECONDS)
        assert rebalancer.check_and_rebalance() == ["pos-1"]
        assert len(opened(venue)) == 1

    def test_same_position_is_not_rebalanced_twice(self, rebalancer, venue, store):
        position = make_position("A", y=50 * ONE)
        venue.add_position(position)
        venue.set_active_bin("POOL", 170)
        store.reconcile(venue.get_user_positions("WALLET"))

        assert rebalancer.rebalance_position(position) == "pos-1"
        assert rebalancer.rebalance_position(position) is None
        assert len(opened(venue)) == 1

    def test_recreated_position_on_the_edge_is_not_recreated_again(self, rebalancer, venue, store, clock, test_settings):
        venue.add_position(make_position("A", y=50 * ONE))
        venue.set_active_bin("POOL", 170)
        rebalancer.check_and_rebalance()

        clock.advance(test_settings.REBALANCE_COOLDOWN_SECONDS)
        assert rebalancer.check_and_rebalance() == []

        assert len(opened(venue)) == 1
        assert store.keys() == ["pos-1"]

    def test_new_key_inherits_the_cooldown(self, rebalancer, venue):
        venue.add_position(make_position("A", y=50 * ONE))
        venue.set_active_bin("POOL", 170)
        rebalancer.check_and_rebalance()
        assert rebalancer.cooldown.is_active("pos-1")

    def test_one_failing_pool_does_not_stop_the_others(self, rebalancer, venue):
        venue.failing_pools.add("BAD")
        venue.add_position(make_position("A", pool="BAD", y=ONE))
        venue.add_position(make_position("B", pool="GOOD", y=ONE))
        venue.set_active_bin("GOOD", 170)

        assert rebalancer.check_and_rebalance() == ["pos-1"]
