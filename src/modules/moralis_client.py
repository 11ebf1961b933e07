# src/modules/moralis_client.py
import logging
from typing import Dict, Iterable
from moralis import sol_api
from core.config import settings

logger = logging.getLogger(__name__)

class MoralisClient:
    """Oráculo de precios USD y lector de balances SPL usando la API de Solana de Moralis."""

    def __init__(self, api_key: str | None, network: str = "mainnet"):
        if not api_key:
            logger.warning("No se proporcionó una API Key de Moralis. Los precios se resolverán como 0.")
            self.api_key = ""
        else:
            self.api_key = api_key
            logger.info("MoralisClient inicializado con API Key.")
        self.network = network

    def get_price(self, mint: str) -> float:
        """Precio USD de un token. Devuelve 0.0 si no se puede obtener."""
        if not self.api_key or not mint:
            return 0.0
        try:
            params = {"network": self.network, "address": mint}
            result = sol_api.token.get_token_price(api_key=self.api_key, params=params)
            price = float(result.get("usdPrice") or 0.0)
            logger.debug(f"Precio de {mint}: ${price:.6f}")
            return price
        except Exception as e:
            logger.error(f"No se pudo obtener el precio de {mint} desde Moralis: {e}")
            return 0.0

    def get_prices(self, mints: Iterable[str]) -> Dict[str, float]:
        return {mint: self.get_price(mint) for mint in dict.fromkeys(mints)}

    def get_token_balance(self, wallet_address: str, mint: str) -> int:
        """Balance crudo (sin decimales) de un token SPL en la wallet. Devuelve 0 si falla."""
        if not self.api_key:
            return 0
        try:
            params = {"network": self.network, "address": wallet_address}
            tokens = sol_api.account.get_spl(api_key=self.api_key, params=params)
            for token in tokens or []:
                if token.get("mint") == mint:
                    return int(token.get("amountRaw") or 0)
            return 0
        except Exception as e:
            logger.error(f"No se pudo obtener el balance de {mint} para {wallet_address}: {e}")
            return 0

# Instancia global
moralis_client = MoralisClient(api_key=settings.MORALIS_API_KEY, network=settings.SOLANA_NETWORK)
