# src/models/__init__.py
from .base import Base
from .position import Position
from .metric import PositionMetric
from .action import EngineAction, ActionEvent

__all__ = ["Base", "Position", "PositionMetric", "EngineAction", "ActionEvent"]
