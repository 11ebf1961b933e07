# src/modules/venue.py
"""
Contrato del cliente del venue DLMM (bins, posiciones, construcción de transacciones)
y del proveedor de wallet. El core solo depende de estas interfaces; la implementación
concreta se inyecta desde el punto de entrada (ver VENUE_CLIENT_FACTORY).
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"
SET_COMPUTE_UNIT_PRICE = 3  # discriminador de la instrucción SetComputeUnitPrice


class Side(str, Enum):
    X = "X"
    Y = "Y"


@dataclass(frozen=True)
class Instruction:
    program_id: str
    data: bytes
    accounts: Tuple[str, ...] = ()


@dataclass
class Transaction:
    instructions: List[Instruction] = field(default_factory=list)
    # Firmantes propios de la transacción (p.ej. el keypair de una posición nueva)
    signers: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class ActiveBin:
    bin_id: int
    price: float
    price_per_token: float  # token Y por token X, en unidades humanas


@dataclass(frozen=True)
class PositionRange:
    min_bin_id: int
    max_bin_id: int
    original_active_bin: Optional[int] = None

    def __post_init__(self):
        if self.min_bin_id >= self.max_bin_id:
            raise ValueError(f"Rango inválido: min_bin_id ({self.min_bin_id}) debe ser menor que max_bin_id ({self.max_bin_id})")

    def contains(self, bin_id: int) -> bool:
        """Estrictamente dentro del rango; los bordes cuentan como fuera."""
        return self.min_bin_id < bin_id < self.max_bin_id

    def same_bins(self, other: "PositionRange") -> bool:
        return self.min_bin_id == other.min_bin_id and self.max_bin_id == other.max_bin_id


@dataclass
class OnChainPosition:
    position_key: str
    pool_address: str
    token_x_mint: str
    token_y_mint: str
    lower_bin_id: int
    upper_bin_id: int
    liquidity_bin_ids: List[int] = field(default_factory=list)
    total_x_amount: int = 0  # unidades crudas
    total_y_amount: int = 0
    token_x_decimals: int = 9
    token_y_decimals: int = 9
    fee_x: int = 0  # fees pendientes de reclamar
    fee_y: int = 0
    raw: Any = None  # objeto nativo del SDK del venue


@dataclass
class OpenPositionResult:
    position_key: str
    transactions: List[Transaction]


def as_transactions(result) -> List[Transaction]:
    """Normaliza "una transacción o una lista de transacciones" a una lista."""
    if result is None:
        return []
    if isinstance(result, Transaction):
        return [result]
    if isinstance(result, (list, tuple)):
        return [tx for tx in result if tx is not None]
    raise TypeError(f"Resultado de transacción no reconocido: {type(result).__name__}")


class VenueClient(ABC):
    # Si el venue permite retirar el 100% y cerrar en una sola instrucción
    supports_close_after_removal: bool = True

    @abstractmethod
    def create_client(self, pool_address: str) -> Any:
        ...

    @abstractmethod
    def get_active_bin(self, handle: Any) -> ActiveBin:
        ...

    @abstractmethod
    def get_user_positions(self, wallet_address: str) -> List[OnChainPosition]:
        ...

    @abstractmethod
    def remove_liquidity(self, handle: Any, position: OnChainPosition, bin_ids: List[int],
                         bps: int, close_after: bool = False):
        ...

    @abstractmethod
    def close_position(self, handle: Any, position: OnChainPosition):
        ...

    @abstractmethod
    def open_single_sided_position(self, handle: Any, bin_range: PositionRange, side: Side,
                                   amount: int) -> OpenPositionResult:
        ...

    @abstractmethod
    def claim_all_rewards(self, handle: Any, positions: List[OnChainPosition]):
        ...

    @abstractmethod
    def send_and_confirm(self, transaction: Transaction, signers: List[Any]) -> str:
        """Envía y confirma una transacción firmada; devuelve la firma."""
        ...


class WalletProvider(ABC):
    @property
    @abstractmethod
    def address(self) -> str:
        ...

    @abstractmethod
    def signer(self) -> Any:
        ...


class PoolClientCache:
    """Caché explícita de handles del venue por dirección de pool (crea si no existe)."""

    def __init__(self, venue: VenueClient):
        self.venue = venue
        self._handles: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, pool_address: str) -> Any:
        with self._lock:
            handle = self._handles.get(pool_address)
            if handle is None:
                logger.info(f"Creando cliente del venue para el pool {pool_address}")
                handle = self.venue.create_client(pool_address)
                self._handles[pool_address] = handle
            return handle

    def invalidate(self, pool_address: str):
        with self._lock:
            self._handles.pop(pool_address, None)


def group_by_pool(positions: Iterable[OnChainPosition]) -> Dict[str, List[OnChainPosition]]:
    grouped: Dict[str, List[OnChainPosition]] = {}
    for position in positions:
        grouped.setdefault(position.pool_address, []).append(position)
    return grouped
