# src/modules/market_data.py
import logging
from dataclasses import dataclass
from typing import Optional

import requests

from core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenMetrics:
    volume_24h: float
    market_cap: float
    price_usd: float

    @property
    def volume_mcap_ratio(self) -> float:
        return self.volume_24h / self.market_cap if self.market_cap > 0 else 0.0


class DexScreenerClient:
    def __init__(self, base_url: str, chain_id: str = "solana", timeout: int = 10):
        self.base_url = base_url.rstrip("/")
        self.chain_id = chain_id
        self.timeout = timeout

    def get_token_metrics(self, mint: str) -> Optional[TokenMetrics]:
        """Volumen 24h, market cap y precio del par más líquido del token."""
        url = f"{self.base_url}/{self.chain_id}/{mint}"
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"No se pudieron obtener métricas de {mint} desde DexScreener: {e}")
            return None

        pairs = data.get("pairs") if isinstance(data, dict) else data
        if not pairs:
            logger.warning(f"DexScreener no devolvió pares para {mint}.")
            return None

        pair = max(pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0))
        return TokenMetrics(
            volume_24h=float((pair.get("volume") or {}).get("h24") or 0),
            market_cap=float(pair.get("marketCap") or pair.get("fdv") or 0),
            price_usd=float(pair.get("priceUsd") or 0),
        )

# Instancia global
dexscreener_client = DexScreenerClient(base_url=settings.DEXSCREENER_API_URL)
