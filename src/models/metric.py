# src/models/metric.py
from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean
from sqlalchemy.sql import func
from .base import Base

class PositionMetric(Base):
    __tablename__ = "position_metrics"

    id = Column(Integer, primary_key=True, index=True)
    # Sin FK: el historial sobrevive al cierre de la posición
    position_key = Column(String, nullable=False, index=True)
    pool_address = Column(String, nullable=False)

    value_usd = Column(Float, default=0.0)
    active_bin_id = Column(Integer)
    is_in_range = Column(Boolean)
    drawdown_percent = Column(Float, nullable=True, default=0.0)

    snapshot_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
