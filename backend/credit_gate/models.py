"""
Credit Gate Data Models

Pydantic models for ledger, token and rate-limit operations.
These define the structure of documents stored in MongoDB collections.
"""

from pydantic import BaseModel, Field
from typing import Optional, Literal, Dict, Any
from datetime import datetime


# ==================== ACCOUNT MODELS ====================

class Account(BaseModel):
    """Principal's credit account"""
    account_id: str
    balance: int = Field(0, ge=0)
    lifetime_earned: int = Field(0, ge=0)
    active: bool = True
    txn_seq: int = 0  # Bumped with every balance mutation
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BalanceChange(BaseModel):
    """Result of one atomic balance mutation, read from the mutation itself"""
    balance_before: int
    balance_after: int
    sequence: int


# ==================== TRANSACTION MODELS ====================

class Transaction(BaseModel):
    """Immutable ledger entry for one balance mutation"""
    id: str
    account_id: str
    type: Literal["debit", "credit"]
    amount: int = Field(..., gt=0)
    balance_before: int
    balance_after: int
    sequence: int
    reference_id: Optional[str] = None
    reason: Optional[str] = None  # purchase, refund, grant, admin, usage
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


# ==================== TOKEN MODELS ====================

class RefreshTokenRecord(BaseModel):
    """Stored renewal credential. The raw secret is never persisted."""
    id: str
    account_id: str
    secret_hash: str
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime

    def is_usable(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


# ==================== RATE LIMIT MODELS ====================

class RateDecision(BaseModel):
    """Outcome of a rate-limit check"""
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_seconds: int = 0


# ==================== API MODELS ====================

class BalanceResponse(BaseModel):
    account_id: str
    balance: int
    lifetime_earned: int


class CreditInfo(BaseModel):
    """Credit envelope attached to metered responses"""
    cost: int
    previous_balance: int
    new_balance: int


class CreditGrantRequest(BaseModel):
    account_id: str
    amount: int = Field(..., gt=0)
    reason: Literal["purchase", "refund", "grant", "admin"] = "admin"
    description: Optional[str] = None


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class SessionTokens(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class DebitRequest(BaseModel):
    operation: str
    reference_id: Optional[str] = None


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str
