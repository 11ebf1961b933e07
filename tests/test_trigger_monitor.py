import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from core.exceptions import InvalidTriggerError
from models import EngineAction
from modules.reconciliation import sync_positions_with_chain
from modules.trigger_monitor import TRIGGER_JOB_ID, PositionTriggerMonitor
from modules.venue import ActiveBin

from fakes import FakeOracle, make_position


@pytest.fixture
def monitor(venue, store, liquidity, oracle, test_settings):
    return PositionTriggerMonitor(venue, store, liquidity, oracle, "WALLET", config=test_settings)


def armed(venue, store, key="A", pool="POOL", take_profit=None, stop_loss=None):
    venue.add_position(make_position(key, pool=pool, y=10 ** 9))
    store.reconcile(venue.get_user_positions("WALLET"))
    store.set_triggers(key, take_profit_price=take_profit, stop_loss_price=stop_loss)


def prices(*values):
    return [ActiveBin(150, value, value) for value in values]


class TestTriggers:
    def test_take_profit_fires_once_when_price_crosses(self, monitor, venue, store, session_factory):
        armed(venue, store, take_profit=11.5)
        venue.set_active_bins("POOL", *prices(10, 11, 12))

        assert monitor.check_all_triggers() == []
        assert monitor.check_all_triggers() == []
        assert monitor.check_all_triggers() == ["A"]
        assert monitor.check_all_triggers() == []

        assert venue.sent_ops() == ["remove:A:10000", "close:A"]
        assert store.get("A").take_profit_price is None
        db = session_factory()
        try:
            assert db.query(EngineAction).filter(EngineAction.action == "TAKE_PROFIT").count() == 1
        finally:
            db.close()

    def test_stop_loss_fires_at_or_below_price(self, monitor, venue, store):
        armed(venue, store, take_profit=12, stop_loss=8)
        venue.set_active_bin("POOL", 150, price_per_token=8.0)

        assert monitor.check_all_triggers() == ["A"]
        record = store.get("A")
        assert record.stop_loss_price is None
        assert record.take_profit_price == 12

    def test_closed_position_is_not_reinserted_by_reconciliation(self, monitor, venue, store):
        armed(venue, store, take_profit=11.5)
        venue.set_active_bin("POOL", 150, price_per_token=12.0)
        monitor.check_all_triggers()

        sync_positions_with_chain(venue, store, "WALLET")
        assert store.get("A") is None
        assert store.positions_with_triggers() == []

    def test_one_price_fetch_per_pool(self, monitor, venue, store, oracle):
        armed(venue, store, key="A", take_profit=20)
        armed(venue, store, key="B", take_profit=30)
        venue.set_active_bin("POOL", 150, price_per_token=10.0)

        monitor.check_all_triggers()
        assert oracle.calls == ["SOL", "USDC"]

    def test_pool_without_usd_price_is_skipped(self, venue, store, liquidity, test_settings):
        monitor = PositionTriggerMonitor(venue, store, liquidity, FakeOracle({"SOL": 0.0, "USDC": 0.0}),
                                         "WALLET", config=test_settings)
        armed(venue, store, stop_loss=100)
        venue.set_active_bin("POOL", 150, price_per_token=1.0)

        assert monitor.check_all_triggers() == []
        assert venue.sent == []

    def test_position_missing_on_chain_is_skipped(self, monitor, venue, store):
        armed(venue, store, key="A", take_profit=5)
        armed(venue, store, key="B", take_profit=5)
        del venue.positions["A"]
        venue.set_active_bin("POOL", 150, price_per_token=10.0)

        assert monitor.check_all_triggers() == ["B"]

    def test_invalid_configuration_never_reaches_the_monitor(self, monitor, venue, store):
        venue.add_position(make_position("A"))
        store.reconcile(venue.get_user_positions("WALLET"))
        with pytest.raises(InvalidTriggerError):
            monitor.set_triggers("A", take_profit_price=5, stop_loss_price=8)
        assert store.positions_with_triggers() == []


class TestScheduling:
    def test_start_and_stop_monitoring(self, venue, store, liquidity, oracle, test_settings):
        scheduler = BackgroundScheduler(timezone="UTC")
        monitor = PositionTriggerMonitor(venue, store, liquidity, oracle, "WALLET",
                                         scheduler=scheduler, config=test_settings)

        monitor.start_monitoring(run_immediately=False)
        job = scheduler.get_job(TRIGGER_JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True

        monitor.stop_monitoring()
        assert scheduler.get_job(TRIGGER_JOB_ID) is None
        monitor.stop_monitoring()

    def test_monitoring_requires_a_scheduler(self, monitor):
        with pytest.raises(RuntimeError):
            monitor.start_monitoring()
