# src/modules/orchestrator.py
import logging
from typing import Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

from core.config import Settings, settings as default_settings
from modules.liquidity import LiquidityManager
from modules.passive_scheduler import PassiveConfig, PassiveProcessManager
from modules.position_store import PositionStore
from modules.rebalance_engine import RebalanceManager
from modules.risk_engine import RiskManager
from modules.transactions import TransactionSender
from modules.trigger_monitor import PositionTriggerMonitor
from modules.venue import PoolClientCache, VenueClient, WalletProvider

logger = logging.getLogger(__name__)

RISK_JOB_ID = "risk_job"
REBALANCE_JOB_ID = "rebalance_job"


class LifecycleOrchestrator:
    """
    Punto de entrada en proceso: construye los motores sobre un único venue, wallet,
    almacén y scheduler, y expone sus operaciones.
    """

    def __init__(
        self,
        venue: VenueClient,
        wallet: WalletProvider,
        store: PositionStore,
        scheduler: BaseScheduler,
        price_oracle,
        market_data=None,
        balance_source=None,
        notifier=None,
        config: Settings = default_settings
    ):
        self.venue = venue
        self.wallet = wallet
        self.store = store
        self.scheduler = scheduler
        self.config = config

        wallet_address = wallet.address
        self.pool_cache = PoolClientCache(venue)
        self.sender = TransactionSender(
            venue, wallet,
            priority_fee_microlamports=config.PRIORITY_FEE_MICROLAMPORTS,
            max_retries=config.TX_MAX_RETRIES,
            backoff_seconds=config.TX_BACKOFF_SECONDS,
        )
        self.liquidity = LiquidityManager(venue, self.sender, self.pool_cache)

        self.risk = RiskManager(
            venue, store, self.liquidity, price_oracle, wallet_address,
            market_data=market_data, notifier=notifier, config=config
        )
        self.rebalancer = RebalanceManager(
            venue, store, self.liquidity, wallet_address,
            price_oracle=price_oracle, notifier=notifier, config=config
        )
        self.triggers = PositionTriggerMonitor(
            venue, store, self.liquidity, price_oracle, wallet_address,
            scheduler=scheduler, notifier=notifier, config=config
        )
        self.passive = PassiveProcessManager(
            venue, store, self.liquidity, wallet_address,
            price_oracle=price_oracle, balance_source=balance_source,
            scheduler=scheduler, notifier=notifier, config=config
        )

    def manage_risk(self) -> Dict[str, bool]:
        return self.risk.manage_risk()

    def check_and_rebalance(self) -> List[str]:
        return self.rebalancer.check_and_rebalance()

    def monitor_triggers(self, start: bool = True):
        if start:
            self.triggers.start_monitoring()
        else:
            self.triggers.stop_monitoring()

    def start_passive_processes(self, passive_config: Optional[PassiveConfig] = None):
        self.passive.start_all(passive_config)

    def close_all_positions(self, permanent: bool = True) -> List[str]:
        return self.risk.close_all_positions(permanent=permanent)

    def start(self):
        """Programa los motores de riesgo y rebalanceo. No arranca el scheduler."""
        self.scheduler.add_job(
            self.manage_risk, 'interval', seconds=self.config.RISK_CHECK_INTERVAL_SECONDS,
            id=RISK_JOB_ID, max_instances=1, coalesce=True, replace_existing=True
        )
        self.scheduler.add_job(
            self.check_and_rebalance, 'interval', seconds=self.config.REBALANCE_INTERVAL_SECONDS,
            id=REBALANCE_JOB_ID, max_instances=1, coalesce=True, replace_existing=True
        )
        logger.info(
            f"Motor de riesgo cada {self.config.RISK_CHECK_INTERVAL_SECONDS}s, "
            f"rebalanceo cada {self.config.REBALANCE_INTERVAL_SECONDS}s."
        )

    def shutdown(self):
        self.triggers.stop_monitoring()
        self.passive.stop_all()
        for job_id in (RISK_JOB_ID, REBALANCE_JOB_ID):
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                pass
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Orquestador detenido.")
