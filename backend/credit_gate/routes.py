"""
Credit Gate API Routes

Credits:
- GET /api/credits - Current balance
- GET /api/credits/history - Transaction history
- GET /api/credits/costs - Credit cost per operation
- POST /api/credits/debit - Debit an operation's cost (for remote dispatchers)
- POST /api/credits/admin/grant - Admin credit grant

Session:
- POST /api/auth/register - Create user + credit account with the welcome bonus
- POST /api/auth/login - Password login, issues access + refresh token
- POST /api/auth/refresh - Rotate refresh token, mint new access token
- POST /api/auth/logout - Revoke one refresh token
- POST /api/auth/logout-all - Revoke every refresh token of the caller
"""

import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo.errors import DuplicateKeyError

from .config import ACCESS_TOKEN_TTL_MINUTES, CREDIT_COSTS, MIN_PASSWORD_LENGTH, WELCOME_BONUS_CREDITS
from .credit_ledger import CreditLedgerService
from .dependencies import get_db, get_ledger_service, get_token_manager
from .errors import InvalidToken
from .guard import credit_info, rate_limit
from .models import (
    BalanceResponse,
    CreditGrantRequest,
    DebitRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    SessionTokens,
)
from .refresh_tokens import RefreshTokenManager
from utils.auth import create_access_token, get_admin_user, get_current_user, hash_password, verify_password

logger = logging.getLogger(__name__)

credit_router = APIRouter(prefix="/credits", tags=["Credits"])
session_router = APIRouter(prefix="/auth", tags=["Session"])


# ==================== CREDIT ENDPOINTS ====================

@credit_router.get("", response_model=BalanceResponse, dependencies=[Depends(rate_limit("general"))])
async def get_balance(
    user: dict = Depends(get_current_user),
    ledger: CreditLedgerService = Depends(get_ledger_service)
):
    """Get current user's credit balance."""
    account = await ledger.get_balance(user["id"])
    return BalanceResponse(
        account_id=account.account_id,
        balance=account.balance,
        lifetime_earned=account.lifetime_earned
    )


@credit_router.get("/history", dependencies=[Depends(rate_limit("general"))])
async def get_history(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user),
    ledger: CreditLedgerService = Depends(get_ledger_service)
):
    """
    Get credit transaction history, newest first.

    Shows every balance mutation: usage, purchases, grants, refunds.
    """
    transactions = await ledger.history(user["id"], limit)
    return {
        "transactions": [txn.model_dump(mode="json") for txn in transactions],
        "count": len(transactions)
    }


@credit_router.get("/costs")
async def get_costs():
    """Credit cost for every metered operation."""
    return {"costs": CREDIT_COSTS}


@credit_router.post("/debit", dependencies=[Depends(rate_limit("ai"))])
async def debit_operation(
    body: DebitRequest,
    user: dict = Depends(get_current_user),
    ledger: CreditLedgerService = Depends(get_ledger_service)
):
    """
    Debit the cost of a metered operation before it runs.

    The caller may run the operation only on a 200 response. A 503 means
    the outcome is unknown and the operation must not run.
    """
    if body.operation not in CREDIT_COSTS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid operation. Valid options: {list(CREDIT_COSTS.keys())}"
        )

    reference_id = body.reference_id or f"{body.operation}:{uuid.uuid4()}"
    txn = await ledger.debit(user["id"], CREDIT_COSTS[body.operation], reference_id)

    return {
        "success": True,
        "transaction_id": txn.id,
        "reference_id": txn.reference_id,
        "credits": credit_info(txn).model_dump()
    }


@credit_router.post("/admin/grant", dependencies=[Depends(rate_limit("general"))])
async def grant_credits(
    body: CreditGrantRequest,
    admin: dict = Depends(get_admin_user),
    ledger: CreditLedgerService = Depends(get_ledger_service)
):
    """Add credits to an account (admin only)."""
    txn = await ledger.credit(
        body.account_id,
        body.amount,
        reference_id=f"admin:{admin['id']}:{uuid.uuid4()}",
        reason=body.reason,
        description=body.description,
        metadata={"granted_by": admin["id"]}
    )
    logger.info(f"Admin {admin['id']} granted {body.amount} credits to {body.account_id}")

    return {
        "success": True,
        "transaction": txn.model_dump(mode="json")
    }


# ==================== SESSION ENDPOINTS ====================

@session_router.post("/register", response_model=SessionTokens, dependencies=[Depends(rate_limit("auth"))])
async def register(
    body: RegisterRequest,
    ledger: CreditLedgerService = Depends(get_ledger_service),
    tokens: RefreshTokenManager = Depends(get_token_manager),
    db=Depends(get_db)
):
    """
    Register a new user.

    Opens an empty credit account and grants the welcome bonus as a
    recorded credit, then logs the user in.
    """
    if len(body.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    existing = await db.users.find_one({"email": body.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = {
        "id": str(uuid.uuid4()),
        "email": body.email,
        "name": body.name or body.email.split("@")[0],
        "password": hash_password(body.password),
        "is_admin": False,
        "created_at": datetime.now(timezone.utc).isoformat()
    }
    try:
        await db.users.insert_one(user)
    except DuplicateKeyError:
        # Lost a race with a concurrent registration of the same email
        raise HTTPException(status_code=400, detail="Email already registered")

    await ledger.open_account(user["id"])
    await ledger.credit(
        user["id"],
        WELCOME_BONUS_CREDITS,
        reference_id=f"welcome:{user['id']}",
        reason="grant",
        description="Welcome bonus"
    )
    logger.info(f"Registered user {user['id']} with {WELCOME_BONUS_CREDITS} welcome credits")

    refresh_token = await tokens.issue(user["id"])
    return SessionTokens(
        access_token=create_access_token(user["id"], user["email"], False),
        refresh_token=refresh_token,
        expires_in=ACCESS_TOKEN_TTL_MINUTES * 60
    )


@session_router.post("/login", response_model=SessionTokens, dependencies=[Depends(rate_limit("auth"))])
async def login(
    credentials: LoginRequest,
    tokens: RefreshTokenManager = Depends(get_token_manager),
    db=Depends(get_db)
):
    """Login user and return access + refresh token"""
    user = await db.users.find_one({"email": credentials.email}, {"_id": 0})
    if not user or not verify_password(credentials.password, user["password"]):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    refresh_token = await tokens.issue(user["id"])
    return SessionTokens(
        access_token=create_access_token(user["id"], user["email"], user.get("is_admin", False)),
        refresh_token=refresh_token,
        expires_in=ACCESS_TOKEN_TTL_MINUTES * 60
    )


@session_router.post("/refresh", response_model=SessionTokens, dependencies=[Depends(rate_limit("auth"))])
async def refresh(
    body: RefreshRequest,
    tokens: RefreshTokenManager = Depends(get_token_manager),
    db=Depends(get_db)
):
    """
    Exchange a refresh token for a new access token.

    The presented refresh token is rotated: it stops working and a new one
    is returned.
    """
    account_id, new_refresh_token = await tokens.rotate(body.refresh_token)

    user = await db.users.find_one({"id": account_id}, {"_id": 0, "password": 0})
    if not user:
        await tokens.revoke(new_refresh_token)
        raise InvalidToken("user_missing")

    return SessionTokens(
        access_token=create_access_token(account_id, user.get("email"), user.get("is_admin", False)),
        refresh_token=new_refresh_token,
        expires_in=ACCESS_TOKEN_TTL_MINUTES * 60
    )


@session_router.post("/logout", dependencies=[Depends(rate_limit("auth"))])
async def logout(body: RefreshRequest, tokens: RefreshTokenManager = Depends(get_token_manager)):
    """Revoke the presented refresh token."""
    revoked = await tokens.revoke(body.refresh_token)
    return {"success": True, "revoked": revoked}


@session_router.post("/logout-all", dependencies=[Depends(rate_limit("auth"))])
async def logout_all(
    user: dict = Depends(get_current_user),
    tokens: RefreshTokenManager = Depends(get_token_manager)
):
    """Revoke every refresh token of the current user (logout everywhere)."""
    count = await tokens.revoke_all(user["id"])
    return {"success": True, "revoked": count}
