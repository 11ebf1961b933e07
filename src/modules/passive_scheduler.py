# src/modules/passive_scheduler.py
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

from core.config import Settings, settings as default_settings
from modules.calculations import to_ui_amount
from modules.liquidity import LiquidityManager
from modules.position_store import PositionStore
from modules.venue import OnChainPosition, PoolClientCache, PositionRange, Side, VenueClient, group_by_pool

logger = logging.getLogger(__name__)

REWARD_CLAIM_JOB_ID = "reward_claim_job"
AUTO_COMPOUND_JOB_ID = "auto_compound_job"


@dataclass
class PassiveConfig:
    enable_reward_claims: bool = True
    reward_claim_interval_seconds: int = 3 * 3600
    enable_auto_compound: bool = True
    auto_compound_interval_seconds: int = 3600

    @classmethod
    def from_settings(cls, config: Settings) -> "PassiveConfig":
        return cls(
            enable_reward_claims=config.ENABLE_REWARD_CLAIMS,
            reward_claim_interval_seconds=config.REWARD_CLAIM_INTERVAL_SECONDS,
            enable_auto_compound=config.ENABLE_AUTO_COMPOUND,
            auto_compound_interval_seconds=config.AUTO_COMPOUND_INTERVAL_SECONDS,
        )


class PassiveProcessManager:
    """
    Tareas en segundo plano: reclamo periódico de recompensas por pool y
    auto-compounding del balance de token X en una posición nueva de un solo lado.
    """

    def __init__(
        self,
        venue: VenueClient,
        store: PositionStore,
        liquidity: LiquidityManager,
        wallet_address: str,
        price_oracle=None,
        balance_source=None,
        scheduler: Optional[BaseScheduler] = None,
        pool_cache: Optional[PoolClientCache] = None,
        notifier=None,
        config: Settings = default_settings,
        clock: Callable[[], float] = time.monotonic
    ):
        self.venue = venue
        self.store = store
        self.liquidity = liquidity
        self.wallet_address = wallet_address
        self.price_oracle = price_oracle
        # Cualquier objeto con get_token_balance(wallet, mint) -> int (por defecto, Moralis)
        self.balance_source = balance_source
        self.scheduler = scheduler
        self.pool_cache = pool_cache or liquidity.pool_cache
        self.notifier = notifier
        self.config = config
        self.passive_config = PassiveConfig.from_settings(config)
        self._clock = clock
        self._last_claimed: Dict[str, float] = {}

    def start_all(self, passive_config: Optional[PassiveConfig] = None):
        if self.scheduler is None:
            raise RuntimeError("Los procesos pasivos necesitan un scheduler")
        if passive_config is not None:
            self.passive_config = passive_config
        cfg = self.passive_config

        if cfg.enable_reward_claims:
            self.scheduler.add_job(
                self.claim_rewards_cycle, 'interval', seconds=cfg.reward_claim_interval_seconds,
                id=REWARD_CLAIM_JOB_ID, max_instances=1, coalesce=True, replace_existing=True
            )
            logger.info(f"Reclamo de recompensas programado cada {cfg.reward_claim_interval_seconds} segundos.")
        if cfg.enable_auto_compound:
            self.scheduler.add_job(
                self.auto_compound_cycle, 'interval', seconds=cfg.auto_compound_interval_seconds,
                id=AUTO_COMPOUND_JOB_ID, max_instances=1, coalesce=True, replace_existing=True
            )
            logger.info(f"Auto-compound programado cada {cfg.auto_compound_interval_seconds} segundos.")

    def stop_all(self):
        if self.scheduler is None:
            return
        for job_id in (REWARD_CLAIM_JOB_ID, AUTO_COMPOUND_JOB_ID):
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                pass
        logger.info("Procesos pasivos detenidos.")

    # --- Reclamo de recompensas ---

    def claim_rewards_cycle(self) -> List[str]:
        """Reclama las recompensas de cada pool. Devuelve los pools reclamados."""
        logger.info("Iniciando ciclo de reclamo de recompensas...")
        try:
            positions = self.venue.get_user_positions(self.wallet_address)
        except Exception as e:
            logger.error(f"No se pudieron obtener las posiciones on-chain: {e}", exc_info=True)
            return []

        claimed = []
        for pool_address, pool_positions in group_by_pool(positions).items():
            try:
                self._claim_pool(pool_address, pool_positions)
                claimed.append(pool_address)
            except Exception as e:
                logger.error(f"Error reclamando recompensas del pool {pool_address}: {e}", exc_info=True)
                self.pool_cache.invalidate(pool_address)
        logger.info(f"Ciclo de reclamo finalizado: {len(claimed)} pool(s).")
        return claimed

    def _claim_pool(self, pool_address: str, positions: List[OnChainPosition]) -> List[str]:
        signatures = self.liquidity.claim_rewards(pool_address, positions)
        self._last_claimed[pool_address] = self._clock()

        total_usd = 0.0
        for position in positions:
            fees_usd = self._fees_usd(position)
            total_usd += fees_usd
            self.store.add_claimed_fees(position.position_key, position.fee_x, position.fee_y, fees_usd)
        logger.info(f"Recompensas reclamadas en {pool_address} (~${total_usd:.2f}).")

        event = self.store.record_action(
            "passive", "CLAIM_REWARDS", None, pool_address,
            f"Recompensas reclamadas de {len(positions)} posiciones (~${total_usd:.2f}).",
            signatures,
        )
        if self.notifier and signatures:
            self.notifier.notify_action(event)
        return signatures

    def _fees_usd(self, position: OnChainPosition) -> float:
        if self.price_oracle is None or not (position.fee_x or position.fee_y):
            return 0.0
        price_x = self.price_oracle.get_price(position.token_x_mint)
        price_y = self.price_oracle.get_price(position.token_y_mint)
        return (to_ui_amount(position.fee_x, position.token_x_decimals) * price_x
                + to_ui_amount(position.fee_y, position.token_y_decimals) * price_y)

    # --- Auto-compound ---

    def auto_compound_cycle(self) -> List[str]:
        """Reclama (si hace falta) y deposita el balance de token X. Devuelve las posiciones creadas."""
        logger.info("Iniciando ciclo de auto-compound...")
        try:
            positions = self.venue.get_user_positions(self.wallet_address)
        except Exception as e:
            logger.error(f"No se pudieron obtener las posiciones on-chain: {e}", exc_info=True)
            return []

        created = []
        compounded_mints = set()
        for pool_address, pool_positions in group_by_pool(positions).items():
            try:
                new_key = self._compound_pool(pool_address, pool_positions, compounded_mints)
                if new_key:
                    created.append(new_key)
            except Exception as e:
                logger.error(f"Error en el auto-compound del pool {pool_address}: {e}", exc_info=True)
                self.pool_cache.invalidate(pool_address)
        logger.info(f"Ciclo de auto-compound finalizado: {len(created)} posición(es) nuevas.")
        return created

    def _compound_pool(self, pool_address: str, positions: List[OnChainPosition], compounded_mints: set) -> Optional[str]:
        last = self._last_claimed.get(pool_address)
        if last is None or self._clock() - last >= self.passive_config.auto_compound_interval_seconds:
            self._claim_pool(pool_address, positions)
        else:
            logger.info(f"Las recompensas de {pool_address} ya se reclamaron en este ciclo.")

        token_x_mint = positions[0].token_x_mint
        # El balance de un mismo token se deposita una sola vez por ciclo
        if token_x_mint in compounded_mints:
            return None
        if self.balance_source is None:
            logger.warning("No hay fuente de balances configurada; se omite el depósito.")
            return None

        balance = self.balance_source.get_token_balance(self.wallet_address, token_x_mint)
        if balance <= 0:
            logger.info(f"Sin balance de {token_x_mint} para reinvertir en {pool_address}.")
            return None

        active_bin = self.venue.get_active_bin(self.pool_cache.get(pool_address))
        width = self.config.RANGE_INTERVAL_BINS
        bin_range = PositionRange(active_bin.bin_id, active_bin.bin_id + width, active_bin.bin_id)
        new_key, signatures = self.liquidity.open_single_sided(pool_address, bin_range, Side.X, balance)
        compounded_mints.add(token_x_mint)

        self.store.upsert(new_key, {
            "pool_address": pool_address,
            "token_x_mint": token_x_mint,
            "token_y_mint": positions[0].token_y_mint,
            "min_bin_id": bin_range.min_bin_id,
            "max_bin_id": bin_range.max_bin_id,
            "original_active_bin": active_bin.bin_id,
            "amount_x": balance,
            "amount_y": 0,
        })
        event = self.store.record_action(
            "passive", "AUTO_COMPOUND", new_key, pool_address,
            f"{balance} unidades de {token_x_mint} depositadas en [{bin_range.min_bin_id}, {bin_range.max_bin_id}].",
            signatures,
        )
        if self.notifier:
            self.notifier.notify_action(event)
        return new_key
