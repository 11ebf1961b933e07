# src/models/action.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Column, Integer, String, Text, DateTime
from sqlalchemy.sql import func
from .base import Base

class EngineAction(Base):
    __tablename__ = "engine_actions"

    id = Column(Integer, primary_key=True, index=True)
    engine = Column(String, nullable=False)   # Ej: "risk", "rebalance", "trigger", "passive"
    action = Column(String, nullable=False)   # Ej: "REBALANCE", "TAKE_PROFIT", "EMERGENCY_CLOSE"
    position_key = Column(String, nullable=True, index=True)
    pool_address = Column(String, nullable=True)

    justification = Column(Text)
    signatures = Column(Text)  # Firmas separadas por comas, para auditoría

    created_at = Column(DateTime(timezone=True), server_default=func.now())


@dataclass
class ActionEvent:
    """Copia desacoplada de la sesión de una acción registrada (para notificar)."""
    engine: str
    action: str
    position_key: Optional[str] = None
    pool_address: Optional[str] = None
    justification: str = ""
    signatures: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
