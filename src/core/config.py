# src/core/config.py
import os
import logging
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- 1. Definiciones ---
logger = logging.getLogger(__name__)
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))

# --- 2. Clase de Configuración ---
class Settings(BaseSettings):
    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{os.path.join(PROJECT_ROOT, 'src/data/agent.db')}"

    # --- Wallet / Venue ---
    WALLET_ADDRESS: Optional[str] = None
    VENUE_CLIENT_FACTORY: Optional[str] = None      # "paquete.modulo:funcion"
    WALLET_PROVIDER_FACTORY: Optional[str] = None

    # --- Risk Engine ---
    RISK_CHECK_INTERVAL_SECONDS: int = 900
    DRAWDOWN_THRESHOLD_PERCENT: float = 15.0
    DRAWDOWN_REDUCTION_BPS: int = Field(default=5000, ge=1, le=10000)
    RISK_COOLDOWN_SECONDS: int = 3600
    VOLUME_MA_WINDOW: int = 6
    VOLUME_DROP_THRESHOLD: float = 0.5

    # --- Rebalance Engine ---
    REBALANCE_INTERVAL_SECONDS: int = 1800
    REBALANCE_COOLDOWN_SECONDS: int = 900
    RANGE_INTERVAL_BINS: int = 69
    RANGE_EDGE_WARNING_PERCENT: float = 30.0

    # --- Trigger Monitor ---
    TRIGGER_CHECK_INTERVAL_SECONDS: int = 300
    STABLE_PRICE_TOLERANCE: float = 0.05

    # --- Procesos pasivos ---
    ENABLE_REWARD_CLAIMS: bool = True
    REWARD_CLAIM_INTERVAL_SECONDS: int = 3 * 3600
    ENABLE_AUTO_COMPOUND: bool = True
    AUTO_COMPOUND_INTERVAL_SECONDS: int = 3600

    # --- Transacciones ---
    PRIORITY_FEE_MICROLAMPORTS: int = 30000
    TX_MAX_RETRIES: int = 3
    TX_BACKOFF_SECONDS: float = 0.5

    # --- Precios y datos de mercado ---
    MORALIS_API_KEY: Optional[str] = None
    SOLANA_NETWORK: str = "mainnet"
    DEXSCREENER_API_URL: str = "https://api.dexscreener.com/tokens/v1"

    # --- Historial ---
    SNAPSHOT_RETENTION_DAYS: int = 7

    # --- Notifications ---
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = None

    model_config = SettingsConfigDict(env_file=os.path.join(PROJECT_ROOT, ".env"), extra="ignore")

# --- 3. Instancia ---
settings = Settings()

# --- 4. Verificación ---
if not settings.WALLET_ADDRESS:
    logger.error("¡ERROR CRÍTICO! Se requiere WALLET_ADDRESS en el archivo .env.")
else:
    logger.info(f"Configuración cargada para la wallet {settings.WALLET_ADDRESS}.")
