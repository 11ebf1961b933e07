from dataclasses import replace
from typing import Dict, List, Optional

from modules.market_data import TokenMetrics
from modules.venue import (
    ActiveBin,
    Instruction,
    OnChainPosition,
    OpenPositionResult,
    PositionRange,
    Side,
    Transaction,
    VenueClient,
    WalletProvider,
)

VENUE_PROGRAM = "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo"


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_position(key: str, pool: str = "POOL", lower: int = 100, upper: int = 169,
                  x: int = 0, y: int = 0, **kwargs) -> OnChainPosition:
    return OnChainPosition(
        position_key=key,
        pool_address=pool,
        token_x_mint=kwargs.pop("token_x_mint", "SOL"),
        token_y_mint=kwargs.pop("token_y_mint", "USDC"),
        lower_bin_id=lower,
        upper_bin_id=upper,
        liquidity_bin_ids=kwargs.pop("liquidity_bin_ids", list(range(lower, upper + 1))),
        total_x_amount=x,
        total_y_amount=y,
        **kwargs,
    )


class FakeVenue(VenueClient):
    """
    Venue en memoria. Las transacciones llevan instrucciones "op:clave" que se
    aplican al estado on-chain solo cuando se confirman.
    """

    def __init__(self, supports_close_after_removal: bool = True):
        self.supports_close_after_removal = supports_close_after_removal
        self.positions: Dict[str, OnChainPosition] = {}
        self.active_bins: Dict[str, List[ActiveBin]] = {}
        self.failures: List[Optional[Exception]] = []
        self.failing_pools = set()
        self.sent: List[tuple] = []
        self.created_clients: List[str] = []
        self.opened: List[tuple] = []
        self._pending: Dict[str, OnChainPosition] = {}
        self._counter = 0

    # --- helpers de test ---

    def add_position(self, position: OnChainPosition):
        self.positions[position.position_key] = position

    def set_active_bins(self, pool: str, *bins: ActiveBin):
        self.active_bins[pool] = list(bins)

    def set_active_bin(self, pool: str, bin_id: int, price_per_token: float = 1.0):
        self.set_active_bins(pool, ActiveBin(bin_id, price_per_token, price_per_token))

    def sent_ops(self) -> List[str]:
        return [
            ins.data.decode()
            for tx, _ in self.sent
            for ins in tx.instructions
            if ins.program_id == VENUE_PROGRAM
        ]

    # --- VenueClient ---

    def create_client(self, pool_address):
        self.created_clients.append(pool_address)
        return pool_address

    def get_active_bin(self, handle):
        if handle in self.failing_pools:
            raise ConnectionError(f"RPC no disponible para {handle}")
        queue = self.active_bins[handle]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def get_user_positions(self, wallet_address):
        return [replace(p, liquidity_bin_ids=list(p.liquidity_bin_ids)) for p in self.positions.values()]

    def remove_liquidity(self, handle, position, bin_ids, bps, close_after=False):
        instructions = [self._ins(f"remove:{position.position_key}:{bps}")]
        if close_after:
            instructions.append(self._ins(f"close:{position.position_key}"))
        return [Transaction(instructions)]

    def close_position(self, handle, position):
        return Transaction([self._ins(f"close:{position.position_key}")])

    def open_single_sided_position(self, handle, bin_range: PositionRange, side: Side, amount: int):
        self._counter += 1
        key = f"pos-{self._counter}"
        template = next((p for p in self.positions.values() if p.pool_address == handle), None)
        self._pending[key] = OnChainPosition(
            position_key=key,
            pool_address=handle,
            token_x_mint=template.token_x_mint if template else "SOL",
            token_y_mint=template.token_y_mint if template else "USDC",
            lower_bin_id=bin_range.min_bin_id,
            upper_bin_id=bin_range.max_bin_id,
            liquidity_bin_ids=list(range(bin_range.min_bin_id, bin_range.max_bin_id + 1)),
            total_x_amount=amount if side == Side.X else 0,
            total_y_amount=amount if side == Side.Y else 0,
        )
        self.opened.append((handle, bin_range, side, amount))
        return OpenPositionResult(key, [Transaction([self._ins(f"open:{key}")], signers=[f"keypair-{key}"])])

    def claim_all_rewards(self, handle, positions):
        if handle in self.failing_pools:
            raise ConnectionError(f"RPC no disponible para {handle}")
        return [Transaction([self._ins(f"claim:{p.position_key}")]) for p in positions]

    def send_and_confirm(self, transaction, signers):
        self.sent.append((transaction, list(signers)))
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        for ins in transaction.instructions:
            if ins.program_id == VENUE_PROGRAM:
                self._apply(ins.data.decode())
        return f"sig-{len(self.sent)}"

    def _ins(self, op: str) -> Instruction:
        return Instruction(VENUE_PROGRAM, op.encode())

    def _apply(self, op: str):
        name, key, *rest = op.split(":")
        if name == "remove":
            position = self.positions[key]
            remaining = 1 - int(rest[0]) / 10_000
            position.total_x_amount = int(position.total_x_amount * remaining)
            position.total_y_amount = int(position.total_y_amount * remaining)
            if remaining <= 0:
                position.liquidity_bin_ids = []
        elif name == "close":
            self.positions.pop(key, None)
        elif name == "open":
            self.positions[key] = self._pending.pop(key)
        elif name == "claim":
            position = self.positions[key]
            position.fee_x = 0
            position.fee_y = 0


class FakeWallet(WalletProvider):
    def __init__(self, address: str = "WALLET"):
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    def signer(self):
        return f"signer-{self._address}"


class FakeOracle:
    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices = dict(prices or {"SOL": 20.0, "USDC": 1.0})
        self.calls: List[str] = []

    def get_price(self, mint: str) -> float:
        self.calls.append(mint)
        return self.prices.get(mint, 0.0)


class FakeMarketData:
    def __init__(self, series: Dict[str, List[TokenMetrics]]):
        self.series = {mint: list(values) for mint, values in series.items()}

    def get_token_metrics(self, mint: str) -> Optional[TokenMetrics]:
        values = self.series.get(mint)
        if not values:
            return None
        return values.pop(0) if len(values) > 1 else values[0]


class FakeBalances:
    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self.balances = dict(balances or {})

    def get_token_balance(self, wallet_address: str, mint: str) -> int:
        return self.balances.get(mint, 0)
