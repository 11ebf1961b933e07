# src/modules/rebalance_engine.py
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from core.config import Settings, settings as default_settings
from core.exceptions import StalePositionError
from modules.calculations import (
    calculate_position_value,
    is_near_range_edge,
    is_out_of_range,
    percent_through_range,
    replacement_range,
    to_ui_amount,
)
from modules.cooldown import CooldownTracker
from modules.liquidity import LiquidityManager
from modules.position_store import PositionStore
from modules.reconciliation import sync_positions_with_chain
from modules.venue import (
    ActiveBin,
    OnChainPosition,
    PoolClientCache,
    PositionRange,
    Side,
    VenueClient,
    group_by_pool,
)

logger = logging.getLogger(__name__)


@dataclass
class PendingRecreation:
    """Posición ya cerrada cuyo reemplazo todavía no se pudo abrir."""
    position: OnChainPosition
    side: Side
    new_range: PositionRange
    amount: int
    active_bin: ActiveBin
    stored_range: PositionRange
    close_signatures: List[str]


class RebalanceManager:
    """
    Detecta posiciones cuyo bin activo salió del rango almacenado y las cierra y
    recrea como posición de un solo lado en el lado correcto.
    """

    def __init__(
        self,
        venue: VenueClient,
        store: PositionStore,
        liquidity: LiquidityManager,
        wallet_address: str,
        price_oracle=None,
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
        self.pool_cache = pool_cache or liquidity.pool_cache
        self.notifier = notifier
        self.config = config
        # Cooldown por posición, independiente del cooldown global del motor de riesgo
        self.cooldown = CooldownTracker(config.REBALANCE_COOLDOWN_SECONDS, clock=clock)
        self._pending: Dict[str, PendingRecreation] = {}

    def check_and_rebalance(self) -> List[str]:
        """Un tick del motor de rebalanceo. Devuelve las claves de las posiciones nuevas."""
        logger.info("Comprobando posiciones para rebalanceo...")
        try:
            positions = sync_positions_with_chain(self.venue, self.store, self.wallet_address)
        except Exception as e:
            logger.error(f"No se pudieron obtener las posiciones on-chain: {e}", exc_info=True)
            return []

        created = self.retry_pending_recreations()

        if not positions:
            logger.info("No se encontraron posiciones on-chain.")
            return created

        for pool_address, pool_positions in group_by_pool(positions).items():
            try:
                active_bin = self.venue.get_active_bin(self.pool_cache.get(pool_address))
            except Exception as e:
                logger.error(f"No se pudo obtener el bin activo del pool {pool_address}: {e}", exc_info=True)
                self.pool_cache.invalidate(pool_address)
                continue
            logger.info(f"Pool {pool_address} - bin activo: {active_bin.bin_id}")

            for position in pool_positions:
                try:
                    new_key = self._check_position(position, active_bin)
                    if new_key:
                        created.append(new_key)
                except StalePositionError as e:
                    logger.warning(f"La posición {position.position_key} ya no existe on-chain ({e}). Se omite.")
                except Exception as e:
                    logger.error(f"Error rebalanceando la posición {position.position_key}: {e}", exc_info=True)
        return created

    def _check_position(self, position: OnChainPosition, active_bin: ActiveBin) -> Optional[str]:
        key = position.position_key
        if self.store.is_closed(key):
            return None
        stored_range = self.store.get_range(key)

        if stored_range is None:
            if position.lower_bin_id >= position.upper_bin_id:
                logger.warning(f"La posición {key} no tiene rango almacenado ni un rango on-chain válido. Se omite.")
                return None
            logger.info(
                f"La posición {key} no tiene rango almacenado. Se toma el rango on-chain "
                f"[{position.lower_bin_id}, {position.upper_bin_id}] sin actuar en este ciclo."
            )
            self.store.upsert(key, {
                "pool_address": position.pool_address,
                "token_x_mint": position.token_x_mint,
                "token_y_mint": position.token_y_mint,
                "min_bin_id": position.lower_bin_id,
                "max_bin_id": position.upper_bin_id,
                "original_active_bin": active_bin.bin_id,
            })
            return None

        if not is_out_of_range(active_bin.bin_id, stored_range):
            percent = percent_through_range(active_bin.bin_id, stored_range)
            logger.info(f"Posición {key} - {percent:.2f}% dentro del rango")
            if is_near_range_edge(percent, self.config.RANGE_EDGE_WARNING_PERCENT):
                logger.warning(f"⚠️ La posición {key} se acerca al borde del rango ({percent:.2f}%)")
            return None

        logger.warning(
            f"⚠️ Ruptura de rango en {key}: bin activo {active_bin.bin_id} fuera de "
            f"[{stored_range.min_bin_id}, {stored_range.max_bin_id}]"
        )
        return self.rebalance_position(position)

    def rebalance_position(self, position: OnChainPosition) -> Optional[str]:
        """
        Cierra la posición y la recrea de un solo lado. La condición de rango se vuelve
        a verificar justo antes de ejecutar. Si falla el cierre, la posición sigue
        on-chain y se reintenta en el siguiente ciclo; si falla la apertura, queda
        una recreación pendiente que conserva el historial de la posición cerrada.
        """
        key = position.position_key
        if self.store.is_closed(key):
            logger.info(f"La posición {key} ya fue cerrada por otro motor. Se omite.")
            return None

        active_bin = self.venue.get_active_bin(self.pool_cache.get(position.pool_address))
        stored_range = self.store.get_range(key)
        if stored_range is None or not is_out_of_range(active_bin.bin_id, stored_range):
            logger.info(f"El bin activo {active_bin.bin_id} volvió al rango de {key}. Rebalanceo cancelado.")
            return None

        side, new_range = replacement_range(active_bin.bin_id, stored_range, self.config.RANGE_INTERVAL_BINS)
        if new_range.same_bins(stored_range):
            logger.info(f"La posición {key} ya ocupa el rango de reemplazo [{new_range.min_bin_id}, {new_range.max_bin_id}]. Se omite.")
            return None

        if not self.cooldown.try_acquire(key):
            logger.info(f"La posición {key} está en cooldown ({self.cooldown.remaining(key):.0f}s restantes). Se omite.")
            return None

        amount = position.total_x_amount if side == Side.X else position.total_y_amount
        logger.info(
            f"Rebalanceando {key}: nueva posición lado {side.value} en "
            f"[{new_range.min_bin_id}, {new_range.max_bin_id}] con {amount} unidades recuperadas"
        )

        close_signatures = self.liquidity.close_position(position)
        self.store.mark_closed(key)

        if amount <= 0:
            logger.warning(f"No se recuperaron tokens del lado {side.value} al cerrar {key}. No se recrea la posición.")
            self.store.remove(key)
            return None

        pending = PendingRecreation(position, side, new_range, amount, active_bin, stored_range, close_signatures)
        try:
            new_key, open_signatures = self._open_replacement(pending)
        except Exception:
            # La posición ya está cerrada: se conserva su registro hasta que la apertura se complete
            self.store.hold(key)
            self._pending[key] = pending
            logger.error(
                f"Se cerró {key} pero falló la apertura de su reemplazo. "
                f"Se reintentará en el siguiente ciclo."
            )
            raise
        return self._complete_recreation(pending, new_key, open_signatures)

    def retry_pending_recreations(self) -> List[str]:
        """Reintenta las aperturas que fallaron después de cerrar la posición original."""
        created = []
        for key, pending in list(self._pending.items()):
            logger.info(f"Reintentando la apertura del reemplazo de {key}...")
            try:
                new_key, open_signatures = self._open_replacement(pending)
            except Exception as e:
                logger.error(f"Falló de nuevo la apertura del reemplazo de {key}: {e}", exc_info=True)
                continue
            try:
                created.append(self._complete_recreation(pending, new_key, open_signatures))
            except Exception as e:
                logger.error(f"Se abrió {new_key} pero no se pudo registrar como reemplazo de {key}: {e}", exc_info=True)
                self.store.release(key)
        return created

    @property
    def pending_recreations(self) -> List[str]:
        return list(self._pending)

    def _open_replacement(self, pending: PendingRecreation) -> Tuple[str, List[str]]:
        return self.liquidity.open_single_sided(
            pending.position.pool_address, pending.new_range, pending.side, pending.amount
        )

    def _complete_recreation(self, pending: PendingRecreation, new_key: str, open_signatures: List[str]) -> str:
        position = pending.position
        key = position.position_key
        side, new_range, active_bin = pending.side, pending.new_range, pending.active_bin
        # La apertura ya está confirmada: nunca se vuelve a intentar
        self._pending.pop(key, None)
        self.cooldown.set(new_key)

        value = self._recovered_value(position, side, pending.amount, active_bin)
        self.store.transfer_history(
            key,
            new_key,
            {
                "pool_address": position.pool_address,
                "token_x_mint": position.token_x_mint,
                "token_y_mint": position.token_y_mint,
                "min_bin_id": new_range.min_bin_id,
                "max_bin_id": new_range.max_bin_id,
                "original_active_bin": active_bin.bin_id,
                "amount_x": pending.amount if side == Side.X else 0,
                "amount_y": pending.amount if side == Side.Y else 0,
                "snapshot_position_value": value,
                "current_value": value,
            },
            {"total_claimed_fee_x": position.fee_x, "total_claimed_fee_y": position.fee_y},
        )
        self.store.release(key)

        stored_range = pending.stored_range
        event = self.store.record_action(
            "rebalance", "REBALANCE", new_key, position.pool_address,
            f"Bin activo {active_bin.bin_id} fuera de [{stored_range.min_bin_id}, {stored_range.max_bin_id}]. "
            f"{key} reemplazada por {new_key} (lado {side.value}, [{new_range.min_bin_id}, {new_range.max_bin_id}]).",
            pending.close_signatures + open_signatures,
        )
        if self.notifier:
            self.notifier.notify_action(event)
        return new_key

    def _recovered_value(self, position: OnChainPosition, side: Side, amount: int, active_bin: ActiveBin) -> float:
        if self.price_oracle is None:
            return 0.0
        quote_price = self.price_oracle.get_price(position.token_y_mint)
        if quote_price <= 0:
            return 0.0
        if side == Side.X:
            return calculate_position_value(to_ui_amount(amount, position.token_x_decimals), 0.0,
                                            active_bin.price_per_token, quote_price)
        return calculate_position_value(0.0, to_ui_amount(amount, position.token_y_decimals),
                                        active_bin.price_per_token, quote_price)
