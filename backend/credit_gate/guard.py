"""
Credit Guard - request-path enforcement for FastAPI routes

Enforces, in order:
- Rate limiting per tier (by principal, or by client address when anonymous)
- Authentication (utils.auth)
- Atomic credit debit before the metered operation runs

IMPORTANT: A route that depends on require_credits() only executes after
the debit returned a Transaction. The balance reported back to the client
comes from that Transaction, never from a second read.

Usage:
    @router.post("/tarot", dependencies=[Depends(rate_limit("ai"))])
    async def tarot(txn: Transaction = Depends(require_credits("tarot"))):
        result = await run_tarot(...)
        return {"success": True, "data": result, "credits": credit_info(txn)}
"""

import logging
import math
import uuid

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from .config import CREDIT_COSTS, RATE_LIMIT_TIERS
from .credit_ledger import CreditLedgerService
from .dependencies import get_ledger_service, get_rate_limiter
from .errors import CreditGateError, RateLimited, StorageUnavailable
from .models import CreditInfo, RateDecision, Transaction
from .rate_limiter import RateLimiter
from utils.auth import decode_access_token, get_current_user

logger = logging.getLogger(__name__)


def principal_key(request: Request) -> str:
    """
    Rate-limit key for a request.

    Authenticated callers are keyed by user id. Anonymous callers, and
    callers presenting a bad token, are keyed by the connecting peer address.

    X-Forwarded-For is never read here: ProxyHeadersMiddleware rewrites the
    peer address from it only when the peer is one of FORWARDED_ALLOW_IPS.
    """
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            return f"user:{decode_access_token(token)['id']}"
        except HTTPException:
            pass

    return f"ip:{request.client.host if request.client else 'unknown'}"


def rate_limit(tier: str):
    """Dependency factory enforcing one configured rate-limit tier."""
    if tier not in RATE_LIMIT_TIERS:
        raise ValueError(f"Unknown rate limit tier '{tier}'. Valid: {list(RATE_LIMIT_TIERS)}")

    async def dependency(
        request: Request,
        response: Response,
        limiter: RateLimiter = Depends(get_rate_limiter)
    ) -> RateDecision:
        decision = await limiter.check_tier(tier, principal_key(request))

        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(math.ceil(decision.reset_at_ms / 1000))
        return decision

    return dependency


def require_credits(operation: str):
    """
    Dependency factory debiting the configured cost of an operation.

    The debit carries a fresh reference id; the metered handler only runs
    when the debit succeeded.
    """
    if operation not in CREDIT_COSTS:
        raise ValueError(f"Unknown metered operation '{operation}'")
    cost = CREDIT_COSTS[operation]

    async def dependency(
        user: dict = Depends(get_current_user),
        ledger: CreditLedgerService = Depends(get_ledger_service)
    ) -> Transaction:
        reference_id = f"{operation}:{uuid.uuid4()}"
        return await ledger.debit(user["id"], cost, reference_id)

    return dependency


def credit_info(txn: Transaction) -> CreditInfo:
    """Credit envelope for a metered response, taken from the debit result."""
    return CreditInfo(
        cost=txn.amount,
        previous_balance=txn.balance_before,
        new_balance=txn.balance_after,
    )


async def credit_gate_error_handler(request: Request, exc: CreditGateError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    if isinstance(exc, StorageUnavailable):
        # Full cause stays in the logs; the client gets the generic message
        logger.error(
            f"Storage unavailable on {request.method} {request.url.path} "
            f"(outcome_unknown={exc.outcome_unknown}): {exc.cause!r}"
        )

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CreditGateError, credit_gate_error_handler)
