"""
Process-wide service instances for the HTTP layer.

Services are created lazily on first use so importing the package never
opens a database connection. Tests replace them through
app.dependency_overrides.
"""

import logging
from typing import Optional

from .credit_ledger import CreditLedgerService
from .ledger_store import MongoLedgerStore
from .rate_limiter import RateLimiter, build_rate_limiter
from .refresh_tokens import RefreshTokenManager
from .token_store import MongoTokenStore

logger = logging.getLogger(__name__)

_ledger_service: Optional[CreditLedgerService] = None
_token_manager: Optional[RefreshTokenManager] = None
_rate_limiter: Optional[RateLimiter] = None


def get_db():
    from database import db
    return db


def get_ledger_service() -> CreditLedgerService:
    global _ledger_service
    if _ledger_service is None:
        _ledger_service = CreditLedgerService(MongoLedgerStore(get_db()))
    return _ledger_service


def get_token_manager() -> RefreshTokenManager:
    global _token_manager
    if _token_manager is None:
        _token_manager = RefreshTokenManager(MongoTokenStore(get_db()))
    return _token_manager


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = build_rate_limiter()
    return _rate_limiter
