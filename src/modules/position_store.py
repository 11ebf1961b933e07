# src/modules/position_store.py
"""
Almacén de posiciones: caché en memoria (autoritativa durante la vida del proceso)
replicada en la base de datos. Un fallo de replicación se registra y nunca bloquea
ni revierte la actualización en memoria.
"""
import logging
import threading
import time
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from models import ActionEvent, EngineAction, Position, PositionMetric
from modules.calculations import validate_trigger_prices
from modules.venue import OnChainPosition, PositionRange

logger = logging.getLogger(__name__)

# Se conservan salvo que se sobrescriban explícitamente
PERSISTENT_FIELDS = (
    "starting_position_value",
    "original_start_date",
    "total_claimed_fee_x",
    "total_claimed_fee_y",
    "total_claimed_fees_usd",
)


class TriggerType(str, Enum):
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"


@dataclass
class PositionRecord:
    position_key: str
    pool_address: str = ""
    token_x_mint: Optional[str] = None
    token_y_mint: Optional[str] = None
    min_bin_id: Optional[int] = None
    max_bin_id: Optional[int] = None
    original_active_bin: Optional[int] = None
    amount_x: int = 0
    amount_y: int = 0
    snapshot_position_value: float = 0.0
    current_value: float = 0.0
    starting_position_value: Optional[float] = None
    original_start_date: Optional[datetime] = None
    total_claimed_fee_x: int = 0
    total_claimed_fee_y: int = 0
    total_claimed_fees_usd: float = 0.0
    rebalance_count: int = 0
    previous_position_key: Optional[str] = None
    take_profit_price: Optional[float] = None
    stop_loss_price: Optional[float] = None

    @property
    def range(self) -> Optional[PositionRange]:
        if self.min_bin_id is None or self.max_bin_id is None:
            return None
        return PositionRange(self.min_bin_id, self.max_bin_id, self.original_active_bin)

    @property
    def has_triggers(self) -> bool:
        return self.take_profit_price is not None or self.stop_loss_price is not None


RECORD_FIELDS = tuple(f.name for f in fields(PositionRecord))


@dataclass
class ReconcileResult:
    removed: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.added)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PositionStore:
    def __init__(self, wallet_address: str, session_factory=None, clock: Callable[[], float] = time.time):
        if session_factory is None:
            from core.database import SessionLocal
            session_factory = SessionLocal
        self.wallet_address = wallet_address
        self.session_factory = session_factory
        self._clock = clock
        self._records: Dict[str, PositionRecord] = {}
        self._inserted_at: Dict[str, float] = {}
        self._closed: set = set()
        # Claves que la reconciliación no poda aunque falten on-chain (recreación pendiente)
        self._held: set = set()
        self._lock = threading.RLock()

    # --- Carga y replicación ---

    def load(self) -> int:
        """Carga en memoria las posiciones persistidas de la wallet."""
        db = self.session_factory()
        try:
            rows = db.query(Position).filter(Position.wallet_address == self.wallet_address).all()
            with self._lock:
                for row in rows:
                    self._records[row.position_key] = PositionRecord(
                        **{name: getattr(row, name) for name in RECORD_FIELDS}
                    )
                    self._inserted_at.setdefault(row.position_key, 0.0)
            logger.info(f"Se cargaron {len(rows)} posiciones desde la base de datos.")
            return len(rows)
        except Exception as e:
            logger.error(f"No se pudieron cargar las posiciones persistidas: {e}", exc_info=True)
            return 0
        finally:
            db.close()

    def _mirror(self, description: str, operation: Callable[[Any], None]):
        db = None
        try:
            db = self.session_factory()
            operation(db)
            db.commit()
        except Exception as e:
            logger.error(f"Error al replicar en la base de datos ({description}): {e}", exc_info=True)
            if db is not None:
                db.rollback()
        finally:
            if db is not None:
                db.close()

    def _mirror_write(self, record: PositionRecord):
        data = asdict(record)

        def write(db):
            row = db.query(Position).filter(Position.position_key == record.position_key).first()
            if not row:
                row = Position(position_key=record.position_key, wallet_address=self.wallet_address)
                db.add(row)
            for name, value in data.items():
                setattr(row, name, value)

        self._mirror(f"upsert {record.position_key}", write)

    def _mirror_delete(self, keys: List[str]):
        def delete(db):
            db.query(Position).filter(Position.position_key.in_(keys)).delete(synchronize_session=False)

        self._mirror(f"delete {', '.join(keys)}", delete)

    # --- Lectura ---

    def get(self, position_key: str) -> Optional[PositionRecord]:
        with self._lock:
            record = self._records.get(position_key)
            return replace(record) if record else None

    def get_range(self, position_key: str) -> Optional[PositionRange]:
        with self._lock:
            record = self._records.get(position_key)
            return record.range if record else None

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def all(self) -> List[PositionRecord]:
        with self._lock:
            return [replace(record) for record in self._records.values()]

    def positions_with_triggers(self) -> List[PositionRecord]:
        with self._lock:
            return [
                replace(r) for r in self._records.values()
                if r.has_triggers and r.position_key not in self._closed and r.position_key not in self._held
            ]

    def is_closed(self, position_key: str) -> bool:
        with self._lock:
            return position_key in self._closed

    # --- Escritura ---

    def upsert(self, position_key: str, data: Dict[str, Any], override_persistent: bool = False) -> PositionRecord:
        """
        Fusiona `data` sobre el registro existente. Los campos persistentes solo se
        aplican si aún no tienen valor o si `override_persistent` es True; el resto
        de campos presentes en `data` se reemplazan.
        """
        unknown = set(data) - set(RECORD_FIELDS)
        if unknown:
            logger.warning(f"Campos desconocidos ignorados en upsert de {position_key}: {sorted(unknown)}")

        with self._lock:
            existing = self._records.get(position_key)
            record = replace(existing) if existing else PositionRecord(position_key=position_key)
            for name, value in data.items():
                if name in unknown or name == "position_key":
                    continue
                if name in PERSISTENT_FIELDS and not override_persistent and existing is not None:
                    current = getattr(existing, name)
                    if current not in (None, 0, 0.0):
                        continue
                setattr(record, name, value)
            if record.original_start_date is None:
                record.original_start_date = _utcnow()
            if record.starting_position_value is None and record.current_value:
                record.starting_position_value = record.current_value
            # Valida min < max si hay rango
            _ = record.range
            self._records[position_key] = record
            if existing is None:
                self._inserted_at[position_key] = self._clock()
            snapshot = replace(record)

        self._mirror_write(snapshot)
        return snapshot

    def remove(self, position_key: str):
        """Cierre permanente: elimina de la caché y de la base de datos."""
        with self._lock:
            self._records.pop(position_key, None)
            self._inserted_at.pop(position_key, None)
            self._closed.add(position_key)
        logger.info(f"Posición {position_key} eliminada del almacén.")
        self._mirror_delete([position_key])

    def hold(self, position_key: str):
        """La reconciliación no poda `position_key` hasta que se llame a `release`."""
        with self._lock:
            self._held.add(position_key)

    def release(self, position_key: str):
        with self._lock:
            self._held.discard(position_key)

    def is_held(self, position_key: str) -> bool:
        with self._lock:
            return position_key in self._held

    def mark_closed(self, position_key: str):
        """Marca una posición como cerrada sin borrar su registro (lo poda la reconciliación)."""
        with self._lock:
            self._closed.add(position_key)

    def transfer_history(
        self,
        old_key: str,
        new_key: str,
        new_range_snapshot: Dict[str, Any],
        accumulated_fees: Optional[Dict[str, Any]] = None
    ) -> PositionRecord:
        """
        Crea el registro de `new_key` heredando la procedencia de `old_key`: valor y fecha
        iniciales, fees acumulados, contador de rebalanceos + 1 y `previous_position_key`.
        Si `old_key` no tiene registro, `new_key` se trata como una posición nueva.
        """
        if old_key == new_key:
            raise ValueError(f"No se puede transferir el historial de {old_key} sobre sí misma")
        fees = accumulated_fees or {}
        data = {k: v for k, v in new_range_snapshot.items() if k in RECORD_FIELDS and k != "position_key"}

        with self._lock:
            old = self._records.get(old_key)
            if old is None:
                logger.warning(f"No hay historial para {old_key}; {new_key} se registra como posición nueva.")
                seed = data.get("current_value") or data.get("snapshot_position_value") or 0.0
                record = PositionRecord(position_key=new_key, **data)
                record.starting_position_value = seed
                record.original_start_date = _utcnow()
                record.total_claimed_fee_x = int(fees.get("total_claimed_fee_x", 0))
                record.total_claimed_fee_y = int(fees.get("total_claimed_fee_y", 0))
                record.total_claimed_fees_usd = float(fees.get("total_claimed_fees_usd", 0.0))
                old_snapshot = None
            else:
                record = PositionRecord(position_key=new_key, **data)
                record.starting_position_value = old.starting_position_value
                record.original_start_date = old.original_start_date
                record.total_claimed_fee_x = old.total_claimed_fee_x + int(fees.get("total_claimed_fee_x", 0))
                record.total_claimed_fee_y = old.total_claimed_fee_y + int(fees.get("total_claimed_fee_y", 0))
                record.total_claimed_fees_usd = old.total_claimed_fees_usd + float(fees.get("total_claimed_fees_usd", 0.0))
                record.rebalance_count = old.rebalance_count + 1
                record.previous_position_key = old_key
                # Los triggers armados pasan a la posición nueva
                record.take_profit_price = old.take_profit_price
                record.stop_loss_price = old.stop_loss_price
                old_snapshot = replace(old, take_profit_price=None, stop_loss_price=None)

            # Se valida el rango nuevo antes de tocar el registro anterior
            _ = record.range
            if old_snapshot is not None:
                self._records[old_key] = replace(old_snapshot)
            self._records[new_key] = record
            self._inserted_at[new_key] = self._clock()
            snapshot = replace(record)

        logger.info(
            f"Historial transferido {old_key} -> {new_key} "
            f"(rebalanceos: {snapshot.rebalance_count}, valor inicial: {snapshot.starting_position_value})"
        )
        if old_snapshot is not None:
            self._mirror_write(old_snapshot)
        self._mirror_write(snapshot)
        return snapshot

    def reconcile(self, on_chain_positions: Iterable[OnChainPosition], observed_at: Optional[float] = None) -> ReconcileResult:
        """
        Elimina las claves almacenadas que no están on-chain e inserta un registro por
        defecto para cada posición on-chain no almacenada. `observed_at` es el momento de
        la enumeración on-chain: no se poda nada insertado después de ese momento.
        """
        observed_at = self._clock() if observed_at is None else observed_at
        on_chain = {p.position_key: p for p in on_chain_positions}
        result = ReconcileResult()
        added_records = []

        with self._lock:
            for key in list(self._records):
                if key in on_chain:
                    continue
                if key in self._held:
                    continue
                if self._inserted_at.get(key, 0.0) > observed_at:
                    continue
                del self._records[key]
                self._inserted_at.pop(key, None)
                result.removed.append(key)

            for key, position in on_chain.items():
                if key in self._records or key in self._closed:
                    continue
                record = self._default_record(position)
                self._records[key] = record
                self._inserted_at[key] = self._clock()
                result.added.append(key)
                added_records.append(replace(record))

            self._closed.intersection_update(on_chain.keys())

        if result.removed:
            logger.info(f"Reconciliación: {len(result.removed)} posiciones obsoletas eliminadas: {result.removed}")
            self._mirror_delete(result.removed)
        for record in added_records:
            logger.info(f"Reconciliación: posición on-chain {record.position_key} añadida al almacén.")
            self._mirror_write(record)
        return result

    def _default_record(self, position: OnChainPosition) -> PositionRecord:
        bins = position.liquidity_bin_ids or [position.lower_bin_id, position.upper_bin_id]
        low = min(position.lower_bin_id, *bins)
        high = max(position.upper_bin_id, *bins)
        has_range = low < high
        return PositionRecord(
            position_key=position.position_key,
            pool_address=position.pool_address,
            token_x_mint=position.token_x_mint,
            token_y_mint=position.token_y_mint,
            min_bin_id=low if has_range else None,
            max_bin_id=high if has_range else None,
            amount_x=position.total_x_amount,
            amount_y=position.total_y_amount,
            original_start_date=_utcnow(),
        )

    # --- Triggers ---

    def set_triggers(self, position_key: str, take_profit_price: Optional[float] = None,
                     stop_loss_price: Optional[float] = None) -> PositionRecord:
        with self._lock:
            record = self._records.get(position_key)
            if record is None:
                raise KeyError(f"Posición desconocida: {position_key}")
            tp = take_profit_price if take_profit_price is not None else record.take_profit_price
            sl = stop_loss_price if stop_loss_price is not None else record.stop_loss_price
        # Se valida contra el valor ya almacenado del otro trigger
        validate_trigger_prices(tp, sl)
        logger.info(f"Triggers configurados para {position_key}: TP={tp}, SL={sl}")
        return self.upsert(position_key, {"take_profit_price": tp, "stop_loss_price": sl})

    def clear_trigger(self, position_key: str, trigger_type: TriggerType) -> Optional[PositionRecord]:
        with self._lock:
            if position_key not in self._records:
                return None
        name = "take_profit_price" if trigger_type == TriggerType.TAKE_PROFIT else "stop_loss_price"
        return self.upsert(position_key, {name: None})

    # --- Fees ---

    def add_claimed_fees(self, position_key: str, fee_x: int, fee_y: int, fees_usd: float = 0.0) -> Optional[PositionRecord]:
        with self._lock:
            record = self._records.get(position_key)
            if record is None:
                return None
            data = {
                "total_claimed_fee_x": record.total_claimed_fee_x + int(fee_x),
                "total_claimed_fee_y": record.total_claimed_fee_y + int(fee_y),
                "total_claimed_fees_usd": record.total_claimed_fees_usd + float(fees_usd),
            }
        return self.upsert(position_key, data, override_persistent=True)

    # --- Historial y auditoría ---

    def record_metric(self, position_key: str, pool_address: str, value_usd: float, active_bin_id: int,
                      is_in_range: bool, drawdown_percent: float):
        def write(db):
            db.add(PositionMetric(
                position_key=position_key,
                pool_address=pool_address,
                value_usd=value_usd,
                active_bin_id=active_bin_id,
                is_in_range=is_in_range,
                drawdown_percent=drawdown_percent,
            ))

        self._mirror(f"métrica {position_key}", write)

    def prune_metrics(self, retention_days: int):
        cutoff = _utcnow() - timedelta(days=retention_days)

        def delete(db):
            db.query(PositionMetric).filter(PositionMetric.snapshot_at < cutoff).delete(synchronize_session=False)

        self._mirror("poda de métricas", delete)

    def record_action(self, engine: str, action: str, position_key: Optional[str] = None,
                      pool_address: Optional[str] = None, justification: str = "",
                      signatures: Optional[List[str]] = None) -> ActionEvent:
        event = ActionEvent(
            engine=engine,
            action=action,
            position_key=position_key,
            pool_address=pool_address,
            justification=justification,
            signatures=list(signatures or []),
        )

        def write(db):
            db.add(EngineAction(
                engine=event.engine,
                action=event.action,
                position_key=event.position_key,
                pool_address=event.pool_address,
                justification=event.justification,
                signatures=",".join(event.signatures),
            ))

        self._mirror(f"acción {action}", write)
        return event
