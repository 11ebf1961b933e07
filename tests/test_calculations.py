import pytest

from core.exceptions import InvalidTriggerError
from modules.calculations import (
    calculate_drawdown_percent,
    calculate_position_value,
    derive_pool_usd_price,
    full_bin_range,
    is_drawdown_breached,
    is_near_range_edge,
    is_out_of_range,
    percent_through_range,
    replacement_range,
    validate_trigger_prices,
)
from modules.venue import PositionRange, Side


class TestDrawdown:
    def test_sixteen_percent_drop_breaches_fifteen_percent_threshold(self):
        assert calculate_drawdown_percent(100, 84) == pytest.approx(16.0)
        assert is_drawdown_breached(100, 84, 15.0)

    def test_fourteen_percent_drop_does_not_breach(self):
        assert not is_drawdown_breached(100, 86, 15.0)

    def test_threshold_is_inclusive(self):
        assert is_drawdown_breached(100, 85, 15.0)

    def test_no_previous_value_never_breaches(self):
        assert calculate_drawdown_percent(0, 50) == 0.0
        assert not is_drawdown_breached(0, 0, 15.0)

    def test_gain_is_negative_drawdown(self):
        assert calculate_drawdown_percent(100, 120) == pytest.approx(-20.0)


class TestRange:
    def test_edges_count_as_out_of_range(self):
        position_range = PositionRange(100, 169)
        assert is_out_of_range(100, position_range)
        assert is_out_of_range(169, position_range)
        assert not is_out_of_range(101, position_range)
        assert not position_range.contains(100)

    def test_min_must_be_below_max(self):
        with pytest.raises(ValueError):
            PositionRange(10, 10)

    def test_percent_through_range_and_edge_warning(self):
        position_range = PositionRange(0, 100)
        assert percent_through_range(25, position_range) == pytest.approx(25.0)
        assert is_near_range_edge(25.0)
        assert is_near_range_edge(75.0)
        assert not is_near_range_edge(50.0)

    def test_price_below_range_reopens_on_x_side_above_active_bin(self):
        side, new_range = replacement_range(90, PositionRange(100, 169), 69)
        assert side == Side.X
        assert (new_range.min_bin_id, new_range.max_bin_id) == (90, 159)
        assert new_range.original_active_bin == 90

    def test_price_above_range_reopens_on_y_side_below_active_bin(self):
        side, new_range = replacement_range(200, PositionRange(100, 169), 69)
        assert side == Side.Y
        assert (new_range.min_bin_id, new_range.max_bin_id) == (131, 200)

    def test_in_range_has_no_replacement(self):
        with pytest.raises(ValueError):
            replacement_range(150, PositionRange(100, 169), 69)

    def test_full_bin_range_fills_gaps(self):
        assert full_bin_range([5, 3, 8]) == [3, 4, 5, 6, 7, 8]
        assert full_bin_range([]) == []


class TestPricing:
    def test_position_value_converts_x_through_bin_price(self):
        assert calculate_position_value(2.0, 10.0, 5.0, 1.0) == pytest.approx(20.0)
        assert calculate_position_value(2.0, 10.0, 5.0, 2.0) == pytest.approx(40.0)

    def test_stable_quote_uses_bin_price(self):
        assert derive_pool_usd_price(150.0, 149.0, 1.001) == pytest.approx(150.0)

    def test_stable_base_inverts_bin_price(self):
        assert derive_pool_usd_price(0.5, 0.999, 3.0) == pytest.approx(2.0)

    def test_cross_rate_uses_quote_usd_price(self):
        assert derive_pool_usd_price(0.01, 0.3, 30.0) == pytest.approx(0.3)

    def test_unknown_prices_cannot_be_derived(self):
        assert derive_pool_usd_price(0.01, 0.0, 30.0) is None
        assert derive_pool_usd_price(0.0, 1.0, 1.0) is None


class TestTriggerValidation:
    def test_take_profit_below_stop_loss_is_rejected(self):
        with pytest.raises(InvalidTriggerError):
            validate_trigger_prices(5, 8)

    def test_equal_prices_are_rejected(self):
        with pytest.raises(ValueError):
            validate_trigger_prices(8, 8)

    def test_non_positive_prices_are_rejected(self):
        with pytest.raises(InvalidTriggerError):
            validate_trigger_prices(0, None)
        with pytest.raises(InvalidTriggerError):
            validate_trigger_prices(None, -1)

    def test_single_trigger_is_valid(self):
        validate_trigger_prices(12.0, None)
        validate_trigger_prices(None, 8.0)
        validate_trigger_prices(12.0, 8.0)
