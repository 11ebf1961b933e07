# src/core/exceptions.py
"""
Jerarquía de errores del agente.

    AgentError
    ├── TransientNetworkError  -> se reintenta con backoff (solo al enviar transacciones)
    ├── StalePositionError     -> la posición ya no existe on-chain; se registra y se salta
    ├── TransactionError       -> fallo de envío no reintentable
    └── InvalidTriggerError    -> configuración TP/SL inválida; se rechaza al configurarla
"""


class AgentError(Exception):
    pass


class TransientNetworkError(AgentError):
    pass


class StalePositionError(AgentError):
    pass


class TransactionError(AgentError):
    pass


class InvalidTriggerError(AgentError, ValueError):
    pass
