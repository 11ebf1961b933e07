# src/daemon.py
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '.')))

import importlib
import logging
from apscheduler.schedulers.blocking import BlockingScheduler

from core.config import settings
from core.database import init_db
from modules.moralis_client import moralis_client
from modules.market_data import dexscreener_client
from modules.notifier import notifier
from modules.orchestrator import LifecycleOrchestrator
from modules.passive_scheduler import PassiveConfig
from modules.position_store import PositionStore

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

def load_factory(path: str | None, name: str):
    """Resuelve una ruta "paquete.modulo:funcion" y la invoca con la configuración."""
    if not path or ":" not in path:
        raise RuntimeError(f"{name} debe tener el formato 'paquete.modulo:funcion' (valor actual: {path!r})")
    module_name, attr = path.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    return factory(settings)

def build_orchestrator(scheduler) -> LifecycleOrchestrator:
    venue = load_factory(settings.VENUE_CLIENT_FACTORY, "VENUE_CLIENT_FACTORY")
    wallet = load_factory(settings.WALLET_PROVIDER_FACTORY, "WALLET_PROVIDER_FACTORY")
    if settings.WALLET_ADDRESS and settings.WALLET_ADDRESS != wallet.address:
        logger.warning(
            f"WALLET_ADDRESS ({settings.WALLET_ADDRESS}) no coincide con la wallet firmante ({wallet.address}). "
            f"Se usa la wallet firmante."
        )
    store = PositionStore(wallet.address)
    return LifecycleOrchestrator(
        venue, wallet, store, scheduler,
        price_oracle=moralis_client,
        market_data=dexscreener_client,
        balance_source=moralis_client,
        notifier=notifier,
        config=settings,
    )

def main():
    """Punto de entrada principal para el daemon."""
    logger.info("Iniciando el Agente de Posiciones DLMM...")
    init_db()
    scheduler = BlockingScheduler(timezone="UTC")
    orchestrator = build_orchestrator(scheduler)
    orchestrator.store.load()

    orchestrator.start()
    orchestrator.monitor_triggers(start=True)
    orchestrator.start_passive_processes(PassiveConfig.from_settings(settings))
    logger.info("Presiona Ctrl+C para detener el servicio.")
    try:
        orchestrator.manage_risk()
        orchestrator.check_and_rebalance()
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Deteniendo el servicio."); orchestrator.shutdown()

def close_all_main():
    """Cierre de emergencia de todas las posiciones (permanente)."""
    logger.warning("Cierre de emergencia solicitado desde la línea de comandos.")
    init_db()
    scheduler = BlockingScheduler(timezone="UTC")
    orchestrator = build_orchestrator(scheduler)
    orchestrator.store.load()
    closed = orchestrator.close_all_positions(permanent=True)
    logger.info(f"Posiciones cerradas: {len(closed)}")

if __name__ == "__main__":
    main()
