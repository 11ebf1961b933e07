# src/modules/risk_engine.py
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from core.config import Settings, settings as default_settings
from core.exceptions import StalePositionError
from modules.calculations import (
    calculate_drawdown_percent,
    is_drawdown_breached,
    position_value_usd,
)
from modules.cooldown import CooldownTracker
from modules.liquidity import LiquidityManager
from modules.position_store import PositionStore
from modules.reconciliation import sync_positions_with_chain
from modules.venue import ActiveBin, OnChainPosition, PoolClientCache, VenueClient, group_by_pool

logger = logging.getLogger(__name__)

GLOBAL_COOLDOWN_KEY = "global"


class RiskManager:
    """
    Circuit breakers por drawdown (delta secuencial contra la observación anterior),
    detección de colapso de volumen y cierre de emergencia.
    """

    def __init__(
        self,
        venue: VenueClient,
        store: PositionStore,
        liquidity: LiquidityManager,
        price_oracle,
        wallet_address: str,
        market_data=None,
        pool_cache: Optional[PoolClientCache] = None,
        notifier=None,
        config: Settings = default_settings,
        clock: Callable[[], float] = time.monotonic
    ):
        self.venue = venue
        self.store = store
        self.liquidity = liquidity
        self.price_oracle = price_oracle
        self.market_data = market_data
        self.wallet_address = wallet_address
        self.pool_cache = pool_cache or liquidity.pool_cache
        self.notifier = notifier
        self.config = config
        # Cooldown global compartido por todos los pools
        self.cooldown = CooldownTracker(config.RISK_COOLDOWN_SECONDS, clock=clock)
        self._volume_history: Dict[str, Deque[float]] = {}

    def manage_risk(self) -> Dict[str, bool]:
        """Un tick del motor de riesgo. Devuelve, por pool, si se disparó el breaker."""
        if self.cooldown.is_active(GLOBAL_COOLDOWN_KEY):
            logger.info(
                f"Motor de riesgo en cooldown ({self.cooldown.remaining(GLOBAL_COOLDOWN_KEY):.0f}s restantes). Se omite el ciclo."
            )
            return {}

        logger.info("Iniciando ciclo de circuit breakers...")
        try:
            positions = sync_positions_with_chain(self.venue, self.store, self.wallet_address)
        except Exception as e:
            logger.error(f"No se pudieron obtener las posiciones on-chain: {e}", exc_info=True)
            return {}

        tripped: Dict[str, bool] = {}
        for pool_address, pool_positions in group_by_pool(positions).items():
            try:
                tripped[pool_address] = self._enforce_pool_circuit_breaker(pool_address, pool_positions)
            except Exception as e:
                logger.error(f"Error evaluando el riesgo del pool {pool_address}: {e}", exc_info=True)
                self.pool_cache.invalidate(pool_address)
                tripped[pool_address] = False

        if any(tripped.values()):
            logger.warning(
                f"Circuit breaker disparado en {sum(tripped.values())} pool(s). "
                f"Cooldown global de {self.config.RISK_COOLDOWN_SECONDS}s activo."
            )
        self.store.prune_metrics(self.config.SNAPSHOT_RETENTION_DAYS)
        logger.info("Ciclo de circuit breakers finalizado.")
        return tripped

    def _enforce_pool_circuit_breaker(self, pool_address: str, positions: List[OnChainPosition]) -> bool:
        active_bin = self.venue.get_active_bin(self.pool_cache.get(pool_address))
        logger.info(f"Pool {pool_address}: bin activo {active_bin.bin_id}, {len(positions)} posiciones.")
        tripped = False
        for position in positions:
            try:
                if self._evaluate_position(position, active_bin):
                    tripped = True
            except StalePositionError as e:
                logger.warning(f"La posición {position.position_key} ya no existe on-chain ({e}). Se omite.")
            except Exception as e:
                logger.error(f"Error evaluando la posición {position.position_key}: {e}", exc_info=True)
        return tripped

    def _evaluate_position(self, position: OnChainPosition, active_bin: ActiveBin) -> bool:
        key = position.position_key
        if self.store.is_closed(key):
            logger.info(f"La posición {key} ya fue cerrada por otro motor. Se omite.")
            return False
        quote_price = self.price_oracle.get_price(position.token_y_mint)
        if quote_price <= 0:
            logger.warning(f"Precio de cotización no disponible para {key}. Se omite la valoración.")
            return False

        current_value = position_value_usd(position, active_bin.price_per_token, quote_price)
        record = self.store.get(key)
        previous_value = record.snapshot_position_value if record else 0.0
        drawdown = calculate_drawdown_percent(previous_value, current_value)
        position_range = record.range if record else None
        in_range = position_range.contains(active_bin.bin_id) if position_range else False

        logger.info(
            f"Posición {key}: valor anterior ${previous_value:.2f}, actual ${current_value:.2f}, drawdown {drawdown:.2f}%"
        )
        self.store.record_metric(key, position.pool_address, current_value, active_bin.bin_id, in_range, drawdown)

        base = {
            "pool_address": position.pool_address,
            "token_x_mint": position.token_x_mint,
            "token_y_mint": position.token_y_mint,
            "starting_position_value": current_value,
        }

        if not is_drawdown_breached(previous_value, current_value, self.config.DRAWDOWN_THRESHOLD_PERCENT):
            self.store.upsert(key, {
                **base,
                "amount_x": position.total_x_amount,
                "amount_y": position.total_y_amount,
                "snapshot_position_value": current_value,
                "current_value": current_value,
            })
            return False

        bps = self.config.DRAWDOWN_REDUCTION_BPS
        logger.warning(
            f"⚠️ Drawdown de {drawdown:.2f}% en {key} (umbral {self.config.DRAWDOWN_THRESHOLD_PERCENT}%). "
            f"Reduciendo {bps / 100:.0f}% de la liquidez."
        )
        # El cooldown se marca antes de enviar la transacción
        cooldown_was_active = self.cooldown.is_active(GLOBAL_COOLDOWN_KEY)
        self.cooldown.set(GLOBAL_COOLDOWN_KEY)
        try:
            signatures = self.liquidity.reduce_liquidity(position, bps)
        except Exception as e:
            # La liquidez sigue intacta: el valor observado pasa a ser la nueva referencia
            logger.error(f"Falló la reducción de liquidez de {key}: {e}")
            self.store.upsert(key, {
                **base,
                "amount_x": position.total_x_amount,
                "amount_y": position.total_y_amount,
                "snapshot_position_value": current_value,
                "current_value": current_value,
            })
            if not cooldown_was_active:
                self.cooldown.clear(GLOBAL_COOLDOWN_KEY)
            raise

        remaining = 1 - bps / 10_000
        post_value = current_value * remaining
        self.store.upsert(key, {
            **base,
            "amount_x": int(position.total_x_amount * remaining),
            "amount_y": int(position.total_y_amount * remaining),
            "snapshot_position_value": post_value,
            "current_value": post_value,
        })
        self._report(
            "REDUCE_LIQUIDITY", position,
            f"Drawdown de {drawdown:.2f}% (${previous_value:.2f} -> ${current_value:.2f}). "
            f"Liquidez reducida un {bps / 100:.0f}%.",
            signatures,
        )
        return True

    def adjust_position_size(self, bps: int) -> List[str]:
        """Reduce en `bps` la liquidez de todas las posiciones abiertas."""
        reduced = []
        for position in self.venue.get_user_positions(self.wallet_address):
            try:
                signatures = self.liquidity.reduce_liquidity(position, bps)
                reduced.append(position.position_key)
                self._report("REDUCE_LIQUIDITY", position, f"Reducción manual de {bps / 100:.2f}%.", signatures)
            except Exception as e:
                logger.error(f"Error reduciendo la posición {position.position_key}: {e}", exc_info=True)
        return reduced

    def check_volume_drop(self, threshold: Optional[float] = None) -> bool:
        """
        Compara el ratio volumen/market cap actual de cada token con su media móvil
        reciente. Devuelve True si algún token cae por debajo de media * umbral;
        la acción a tomar la decide quien llama.
        """
        threshold = self.config.VOLUME_DROP_THRESHOLD if threshold is None else threshold
        if self.market_data is None:
            logger.warning("No hay fuente de datos de mercado configurada; se omite la comprobación de volumen.")
            return False

        positions = self.venue.get_user_positions(self.wallet_address)
        mints = dict.fromkeys(m for p in positions for m in (p.token_x_mint, p.token_y_mint) if m)
        collapsed = False
        for mint in mints:
            metrics = self.market_data.get_token_metrics(mint)
            if metrics is None:
                continue
            ratio = metrics.volume_mcap_ratio
            history = self._volume_history.setdefault(mint, deque(maxlen=self.config.VOLUME_MA_WINDOW))
            if history:
                moving_average = sum(history) / len(history)
                if ratio < moving_average * threshold:
                    logger.warning(
                        f"⚠️ Colapso de volumen en {mint}: ratio {ratio:.4f} < media {moving_average:.4f} x {threshold}"
                    )
                    collapsed = True
            history.append(ratio)
        return collapsed

    def close_all_positions(self, permanent: bool = True) -> List[str]:
        """
        Cierre de emergencia de todas las posiciones de todos los pools.
        `permanent=False` conserva el historial para una recreación inmediata.
        """
        logger.warning("🚨 Cerrando TODAS las posiciones...")
        closed = []
        for position in self.venue.get_user_positions(self.wallet_address):
            key = position.position_key
            try:
                signatures = self.liquidity.close_position(position)
            except StalePositionError as e:
                logger.warning(f"La posición {key} ya estaba cerrada ({e}).")
                continue
            except Exception as e:
                logger.error(f"Error cerrando la posición {key}: {e}", exc_info=True)
                continue
            if permanent:
                self.store.remove(key)
            else:
                self.store.mark_closed(key)
            closed.append(key)
            self._report("EMERGENCY_CLOSE", position, f"Cierre {'permanente' if permanent else 'para recreación'}.", signatures)
        logger.warning(f"Cierre de emergencia completado: {len(closed)} posiciones cerradas.")
        return closed

    def _report(self, action: str, position: OnChainPosition, justification: str, signatures: List[str]):
        event = self.store.record_action(
            "risk", action, position.position_key, position.pool_address, justification, signatures
        )
        if self.notifier:
            self.notifier.notify_action(event)
