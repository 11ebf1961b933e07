# src/models/position.py
from sqlalchemy import Column, Integer, String, Float, DateTime, BigInteger
from sqlalchemy.sql import func
from .base import Base

class Position(Base):
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, index=True)
    position_key = Column(String, unique=True, nullable=False, index=True) # Dirección de la posición DLMM
    wallet_address = Column(String, nullable=False, index=True)

    # Datos descriptivos del pool
    pool_address = Column(String, nullable=False, index=True)
    token_x_mint = Column(String)
    token_y_mint = Column(String)

    # Rango de la posición (bins)
    min_bin_id = Column(Integer)
    max_bin_id = Column(Integer)
    original_active_bin = Column(Integer)

    # Cantidades depositadas (unidades crudas del token)
    amount_x = Column(BigInteger, default=0)
    amount_y = Column(BigInteger, default=0)

    # Valoración
    snapshot_position_value = Column(Float, default=0.0)
    current_value = Column(Float, default=0.0)
    starting_position_value = Column(Float, nullable=True)
    original_start_date = Column(DateTime(timezone=True), nullable=True)

    # Fees reclamados acumulados (se arrastran entre rebalanceos)
    total_claimed_fee_x = Column(BigInteger, default=0)
    total_claimed_fee_y = Column(BigInteger, default=0)
    total_claimed_fees_usd = Column(Float, default=0.0)

    # Linaje
    rebalance_count = Column(Integer, default=0)
    previous_position_key = Column(String, nullable=True)

    # Triggers TP/SL
    take_profit_price = Column(Float, nullable=True)
    stop_loss_price = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Position(position_key='{self.position_key}', pool='{self.pool_address}', bins=[{self.min_bin_id}, {self.max_bin_id}])>"
