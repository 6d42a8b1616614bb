"""
Error taxonomy shared by the auto-trade engine and the scheduling pipeline.

- ValidationError: bad configuration or input. Never retried.
- ExternalApiError: order port or market-data failure, including timeouts.
- ConsistencyError: the decision would break a ledger invariant. Raised before
  any external call, nothing is written.
- PersistenceError: a database write failed. After a confirmed order this is
  logged at CRITICAL and needs operator reconciliation.
"""
from __future__ import annotations


class AutoTradeError(Exception):
    def __init__(self, message: str = "", *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(AutoTradeError):
    pass


class ExternalApiError(AutoTradeError):
    def __init__(self, message: str = "", *, status_code: int | None = None, details: dict | None = None):
        super().__init__(message, details=details)
        self.status_code = status_code


class ConsistencyError(AutoTradeError):
    pass


class PersistenceError(AutoTradeError):
    pass
