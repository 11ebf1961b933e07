# src/modules/trigger_monitor.py
import logging
from typing import Dict, List, Optional

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.jobstores.base import JobLookupError

from core.config import Settings, settings as default_settings
from core.exceptions import StalePositionError
from modules.calculations import derive_pool_usd_price
from modules.liquidity import LiquidityManager
from modules.position_store import PositionRecord, PositionStore, TriggerType
from modules.venue import OnChainPosition, PoolClientCache, VenueClient

logger = logging.getLogger(__name__)

TRIGGER_JOB_ID = "trigger_job"


class PositionTriggerMonitor:
    """Evalúa take-profit / stop-loss contra el precio USD de cada pool y cierra al dispararse."""

    def __init__(
        self,
        venue: VenueClient,
        store: PositionStore,
        liquidity: LiquidityManager,
        price_oracle,
        wallet_address: str,
        scheduler: Optional[BaseScheduler] = None,
        pool_cache: Optional[PoolClientCache] = None,
        notifier=None,
        config: Settings = default_settings
    ):
        self.venue = venue
        self.store = store
        self.liquidity = liquidity
        self.price_oracle = price_oracle
        self.wallet_address = wallet_address
        self.scheduler = scheduler
        self.pool_cache = pool_cache or liquidity.pool_cache
        self.notifier = notifier
        self.config = config
        self._on_chain: Optional[Dict[str, OnChainPosition]] = None

    def start_monitoring(self, run_immediately: bool = True):
        if self.scheduler is None:
            raise RuntimeError("El monitor de triggers necesita un scheduler para ejecutarse periódicamente")
        self.scheduler.add_job(
            self.check_all_triggers, 'interval',
            seconds=self.config.TRIGGER_CHECK_INTERVAL_SECONDS,
            id=TRIGGER_JOB_ID, max_instances=1, coalesce=True, replace_existing=True
        )
        logger.info(f"Monitor de triggers programado cada {self.config.TRIGGER_CHECK_INTERVAL_SECONDS} segundos.")
        if run_immediately:
            self.check_all_triggers()

    def stop_monitoring(self):
        if self.scheduler is None:
            return
        try:
            self.scheduler.remove_job(TRIGGER_JOB_ID)
            logger.info("Monitor de triggers detenido.")
        except JobLookupError:
            logger.info("El monitor de triggers no estaba en ejecución.")

    def set_triggers(self, position_key: str, take_profit_price: Optional[float] = None,
                     stop_loss_price: Optional[float] = None) -> PositionRecord:
        return self.store.set_triggers(position_key, take_profit_price, stop_loss_price)

    def check_all_triggers(self) -> List[str]:
        """Un tick del monitor. Devuelve las claves de las posiciones cerradas."""
        records = self.store.positions_with_triggers()
        if not records:
            logger.debug("No hay posiciones con triggers configurados.")
            return []

        by_pool: Dict[str, List[PositionRecord]] = {}
        for record in records:
            by_pool.setdefault(record.pool_address, []).append(record)

        self._on_chain = None
        closed = []
        for pool_address, pool_records in by_pool.items():
            try:
                price = self._pool_usd_price(pool_address, pool_records[0])
            except Exception as e:
                logger.error(f"No se pudo obtener el precio del pool {pool_address}: {e}", exc_info=True)
                self.pool_cache.invalidate(pool_address)
                continue
            if price is None:
                logger.warning(f"No se pudo derivar un precio USD para el pool {pool_address}. Se omiten sus triggers.")
                continue

            for record in pool_records:
                try:
                    if self._evaluate(record, price):
                        closed.append(record.position_key)
                except StalePositionError as e:
                    logger.warning(f"La posición {record.position_key} ya no existe on-chain ({e}). Se omite.")
                except Exception as e:
                    logger.error(f"Error ejecutando el trigger de {record.position_key}: {e}", exc_info=True)
        return closed

    def _pool_usd_price(self, pool_address: str, record: PositionRecord) -> Optional[float]:
        active_bin = self.venue.get_active_bin(self.pool_cache.get(pool_address))
        price_x = self.price_oracle.get_price(record.token_x_mint) if record.token_x_mint else 0.0
        price_y = self.price_oracle.get_price(record.token_y_mint) if record.token_y_mint else 0.0
        price = derive_pool_usd_price(active_bin.price_per_token, price_x, price_y, self.config.STABLE_PRICE_TOLERANCE)
        if price is not None:
            logger.info(f"Pool {pool_address}: precio USD {price:.6f}")
        return price

    def _evaluate(self, record: PositionRecord, price: float) -> bool:
        if record.take_profit_price is not None and price >= record.take_profit_price:
            trigger, target = TriggerType.TAKE_PROFIT, record.take_profit_price
        elif record.stop_loss_price is not None and price <= record.stop_loss_price:
            trigger, target = TriggerType.STOP_LOSS, record.stop_loss_price
        else:
            return False

        key = record.position_key
        if self.store.is_closed(key):
            return False
        logger.warning(f"🎯 {trigger.value} disparado en {key}: precio {price:.6f} (objetivo {target})")

        position = self._find_on_chain(key)
        signatures = self.liquidity.close_position(position)
        self.store.clear_trigger(key, trigger)
        self.store.mark_closed(key)

        event = self.store.record_action(
            "trigger", trigger.value, key, record.pool_address,
            f"Precio {price:.6f} alcanzó el objetivo {target}. Posición cerrada al 100%.",
            signatures,
        )
        if self.notifier:
            self.notifier.notify_action(event)
        return True

    def _find_on_chain(self, position_key: str) -> OnChainPosition:
        # Una sola enumeración por tick, solo si algún trigger se dispara
        if self._on_chain is None:
            positions = self.venue.get_user_positions(self.wallet_address)
            self._on_chain = {p.position_key: p for p in positions}
        position = self._on_chain.get(position_key)
        if position is None:
            raise StalePositionError(position_key)
        return position
