# src/modules/reconciliation.py
import logging
import time
from typing import Callable, List

from modules.position_store import PositionStore
from modules.venue import OnChainPosition, VenueClient

logger = logging.getLogger(__name__)


def sync_positions_with_chain(
    venue: VenueClient,
    store: PositionStore,
    wallet_address: str,
    clock: Callable[[], float] = time.time
) -> List[OnChainPosition]:
    """
    Enumera las posiciones on-chain de la wallet y repara la deriva del almacén.
    Devuelve la enumeración para que el motor que la invoca trabaje sobre ella.
    """
    observed_at = clock()
    positions = venue.get_user_positions(wallet_address)
    result = store.reconcile(positions, observed_at=observed_at)
    if result.changed:
        logger.info(
            f"Almacén sincronizado con la cadena: {len(result.removed)} eliminadas, {len(result.added)} añadidas."
        )
    else:
        logger.info(f"Almacén ya sincronizado ({len(positions)} posiciones on-chain).")
    return positions
