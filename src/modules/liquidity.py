# src/modules/liquidity.py
import logging
from typing import List, Tuple

from modules.calculations import FULL_BPS, full_bin_range
from modules.transactions import TransactionSender
from modules.venue import OnChainPosition, PoolClientCache, PositionRange, Side, VenueClient

logger = logging.getLogger(__name__)


class LiquidityManager:
    """Operaciones de liquidez sobre el venue, enviadas a través del TransactionSender."""

    def __init__(self, venue: VenueClient, sender: TransactionSender, pool_cache: PoolClientCache):
        self.venue = venue
        self.sender = sender
        self.pool_cache = pool_cache

    def close_position(self, position: OnChainPosition) -> List[str]:
        """Retira el 100% de la liquidez y cierra la posición."""
        handle = self.pool_cache.get(position.pool_address)
        key = position.position_key

        if not position.liquidity_bin_ids:
            logger.info(f"La posición {key} no tiene bins con liquidez. Cerrando directamente...")
            return self.sender.submit(self.venue.close_position(handle, position))

        combined = self.venue.supports_close_after_removal
        logger.info(
            f"Retirando el 100% de la liquidez de {key} "
            f"(bins [{min(position.liquidity_bin_ids)}, {max(position.liquidity_bin_ids)}], cierre combinado={combined})"
        )
        signatures = self.sender.submit(
            self.venue.remove_liquidity(handle, position, position.liquidity_bin_ids, FULL_BPS, close_after=combined)
        )
        if not combined:
            signatures += self.sender.submit(self.venue.close_position(handle, position))
        logger.info(f"Posición {key} cerrada.")
        return signatures

    def reduce_liquidity(self, position: OnChainPosition, bps: int) -> List[str]:
        if bps >= FULL_BPS:
            return self.close_position(position)
        bin_ids = full_bin_range(position.liquidity_bin_ids)
        if not bin_ids:
            logger.info(f"La posición {position.position_key} no tiene liquidez que reducir.")
            return []
        handle = self.pool_cache.get(position.pool_address)
        logger.info(f"Reduciendo {bps / 100:.2f}% de la liquidez de {position.position_key}")
        return self.sender.submit(self.venue.remove_liquidity(handle, position, bin_ids, bps, close_after=False))

    def open_single_sided(self, pool_address: str, bin_range: PositionRange, side: Side, amount: int) -> Tuple[str, List[str]]:
        handle = self.pool_cache.get(pool_address)
        logger.info(
            f"Creando posición de un solo lado ({side.value}) en {pool_address}: "
            f"bins [{bin_range.min_bin_id}, {bin_range.max_bin_id}], cantidad {amount}"
        )
        result = self.venue.open_single_sided_position(handle, bin_range, side, amount)
        signatures = self.sender.submit(result.transactions)
        logger.info(f"Nueva posición creada: {result.position_key}")
        return result.position_key, signatures

    def claim_rewards(self, pool_address: str, positions: List[OnChainPosition]) -> List[str]:
        handle = self.pool_cache.get(pool_address)
        return self.sender.submit(self.venue.claim_all_rewards(handle, positions))
