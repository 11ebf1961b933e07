# src/modules/calculations.py
from typing import List, Optional, Tuple

from core.exceptions import InvalidTriggerError
from modules.venue import OnChainPosition, PositionRange, Side

FULL_BPS = 10_000


def to_ui_amount(raw_amount: int, decimals: int) -> float:
    return raw_amount / (10 ** decimals)


def calculate_position_value(
    amount_x: float,
    amount_y: float,
    price_per_token: float,
    quote_price_usd: float
) -> float:
    """
    Valor en USD de una posición: el lado X se convierte a token Y con el precio del bin
    activo y el total se valora con el precio USD del token de cotización (Y).
    """
    return (amount_x * price_per_token + amount_y) * quote_price_usd


def position_value_usd(position: OnChainPosition, price_per_token: float, quote_price_usd: float) -> float:
    return calculate_position_value(
        to_ui_amount(position.total_x_amount, position.token_x_decimals),
        to_ui_amount(position.total_y_amount, position.token_y_decimals),
        price_per_token,
        quote_price_usd,
    )


def calculate_drawdown_percent(previous_value: float, current_value: float) -> float:
    """Caída porcentual respecto a la observación anterior (no respecto a un pico)."""
    if previous_value <= 0:
        return 0.0
    return (previous_value - current_value) / previous_value * 100


def is_drawdown_breached(previous_value: float, current_value: float, threshold_percent: float) -> bool:
    if previous_value <= 0:
        return False
    return calculate_drawdown_percent(previous_value, current_value) >= threshold_percent


def is_out_of_range(active_bin_id: int, position_range: PositionRange) -> bool:
    return active_bin_id <= position_range.min_bin_id or active_bin_id >= position_range.max_bin_id


def percent_through_range(active_bin_id: int, position_range: PositionRange) -> float:
    total = position_range.max_bin_id - position_range.min_bin_id
    return (active_bin_id - position_range.min_bin_id) / total * 100


def is_near_range_edge(percent: float, warning_percent: float = 30.0) -> bool:
    return percent <= warning_percent or percent >= 100 - warning_percent


def replacement_range(active_bin_id: int, position_range: PositionRange, width: int) -> Tuple[Side, PositionRange]:
    """
    Lado y rango de la posición de reemplazo:
    - bin activo por debajo del mínimo -> la wallet tiene solo X -> [activo, activo + W] lado X
    - bin activo por encima del máximo -> la wallet tiene solo Y -> [activo - W, activo] lado Y
    """
    if active_bin_id <= position_range.min_bin_id:
        return Side.X, PositionRange(active_bin_id, active_bin_id + width, active_bin_id)
    if active_bin_id >= position_range.max_bin_id:
        return Side.Y, PositionRange(active_bin_id - width, active_bin_id, active_bin_id)
    raise ValueError(f"El bin activo {active_bin_id} está dentro del rango [{position_range.min_bin_id}, {position_range.max_bin_id}]")


def full_bin_range(bin_ids: List[int]) -> List[int]:
    if not bin_ids:
        return []
    return list(range(min(bin_ids), max(bin_ids) + 1))


def is_stable_price(price_usd: Optional[float], tolerance: float) -> bool:
    return bool(price_usd) and abs(price_usd - 1.0) < tolerance


def derive_pool_usd_price(
    price_per_token: float,
    token_x_price_usd: Optional[float],
    token_y_price_usd: Optional[float],
    tolerance: float = 0.05
) -> Optional[float]:
    """
    Precio USD del activo negociado del pool.
    - Y es estable (~$1): el precio del bin (Y por X) ya está en USD.
    - X es estable: se invierte el precio del bin.
    - Ninguno: tipo cruzado usando el precio USD conocido de ambos lados.
    Devuelve None si no se puede derivar.
    """
    if price_per_token <= 0:
        return None
    if is_stable_price(token_y_price_usd, tolerance):
        return price_per_token
    if is_stable_price(token_x_price_usd, tolerance):
        return 1 / price_per_token
    if token_x_price_usd and token_y_price_usd and token_x_price_usd > 0 and token_y_price_usd > 0:
        return price_per_token * token_y_price_usd
    return None


def validate_trigger_prices(take_profit_price: Optional[float], stop_loss_price: Optional[float]):
    if take_profit_price is not None and take_profit_price <= 0:
        raise InvalidTriggerError(f"El precio de take-profit debe ser positivo: {take_profit_price}")
    if stop_loss_price is not None and stop_loss_price <= 0:
        raise InvalidTriggerError(f"El precio de stop-loss debe ser positivo: {stop_loss_price}")
    if take_profit_price is not None and stop_loss_price is not None and take_profit_price <= stop_loss_price:
        raise InvalidTriggerError(
            f"El take-profit ({take_profit_price}) debe ser mayor que el stop-loss ({stop_loss_price})"
        )
