# src/modules/cooldown.py
import logging
import threading
import time
from typing import Callable, Dict

logger = logging.getLogger(__name__)


class CooldownTracker:
    """
    Cooldowns por clave (posición, pool o global). La comprobación y el registro
    se hacen en una sola operación bajo lock para reducir la ventana de carrera
    entre jobs del scheduler.
    """

    def __init__(self, duration_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.duration_seconds = duration_seconds
        self._clock = clock
        self._release_at: Dict[str, float] = {}
        self._lock = threading.Lock()

    def is_active(self, key: str) -> bool:
        with self._lock:
            return self._clock() < self._release_at.get(key, float("-inf"))

    def remaining(self, key: str) -> float:
        with self._lock:
            return max(0.0, self._release_at.get(key, 0.0) - self._clock())

    def set(self, key: str):
        with self._lock:
            self._release_at[key] = self._clock() + self.duration_seconds

    def try_acquire(self, key: str) -> bool:
        """Si la clave no está en cooldown, la marca y devuelve True."""
        with self._lock:
            now = self._clock()
            if now < self._release_at.get(key, float("-inf")):
                return False
            self._release_at[key] = now + self.duration_seconds
            return True

    def clear(self, key: str):
        with self._lock:
            self._release_at.pop(key, None)
