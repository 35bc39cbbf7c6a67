"""
Authentication utilities

Short-lived HS256 access tokens. Long-lived renewal is handled by
credit_gate.refresh_tokens; this module only mints and checks access JWTs.
"""
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import jwt
import bcrypt
from datetime import datetime, timezone, timedelta
import os

from credit_gate.config import ACCESS_TOKEN_TTL_MINUTES

security = HTTPBearer()
JWT_SECRET = os.environ.get('JWT_SECRET', 'credit-gate-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))

def create_access_token(user_id: str, email: Optional[str] = None, is_admin: bool = False) -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "is_admin": is_admin,
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_TTL_MINUTES)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode an access JWT into the principal dict used by route handlers"""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id or payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token")

    return {
        "id": user_id,
        "email": payload.get("email"),
        "is_admin": bool(payload.get("is_admin")),
    }


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify access JWT and return current principal"""
    return decode_access_token(credentials.credentials)


async def get_admin_user(user: dict = Depends(get_current_user)):
    """Check if user is admin"""
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
