"""
Credit Gate Configuration and Constants

Operation costs, rate-limit tiers and token lifetimes are defined here.
Storage timeouts can be overridden from the environment.
"""

import os

# ==================== OPERATION CREDIT COSTS ====================
# Fixed credit cost per metered AI operation
CREDIT_COSTS = {
    "name-analysis": 10,
    "dream-interpretation": 15,
    "story": 20,
    "chat": 5,
    "face-reading": 25,            # Vision calls cost more
    "saju": 25,
    "palmistry": 25,
    "horoscope": 15,
    "zodiac": 15,
    "love-compatibility": 20,
    "name-compatibility": 15,
    "marriage-compatibility": 25,
    "tarot": 20,
    "tojeong": 15,
}

# ==================== RATE LIMIT TIERS ====================
# Each tier keeps its own counters so one tier's exhaustion never blocks another
RATE_LIMIT_TIERS = {
    "ai": {"max_requests": 30, "window_ms": 60 * 1000},
    "auth": {"max_requests": 10, "window_ms": 60 * 1000},
    "general": {"max_requests": 100, "window_ms": 60 * 1000},
}

# ==================== REFRESH TOKENS ====================
REFRESH_TOKEN_TTL_DAYS = 30
REFRESH_TOKEN_SECRET_BYTES = 32      # 256 bits
REFRESH_TOKEN_ID_BYTES = 12
REFRESH_TOKEN_SEPARATOR = "."

ACCESS_TOKEN_TTL_MINUTES = int(os.environ.get("ACCESS_TOKEN_TTL_MINUTES", "15"))

# ==================== STORAGE ====================
STORAGE_TIMEOUT_SECONDS = float(os.environ.get("CREDIT_GATE_STORAGE_TIMEOUT_SECONDS", "5"))

# Upper bound on optimistic compare-and-set attempts when the store
# has no native conditional update
MAX_CAS_ATTEMPTS = 5

# Bounded retries for the transaction insert that follows a balance change
TRANSACTION_WRITE_ATTEMPTS = 3

# ==================== SWEEPS ====================
TOKEN_SWEEP_INTERVAL_MINUTES = 60
RATE_LIMIT_SWEEP_INTERVAL_SECONDS = 60

# Pending transaction entries older than the grace period are written out
# by the repair sweep; younger ones belong to requests still in flight
PENDING_REPAIR_INTERVAL_MINUTES = 5
PENDING_REPAIR_GRACE_SECONDS = 60

# ==================== ACCOUNTS ====================
# Granted once at registration, recorded as a "grant" credit
WELCOME_BONUS_CREDITS = 1000
MIN_PASSWORD_LENGTH = 8

# ==================== PROXIES ====================
# Peers allowed to set X-Forwarded-For (same format as uvicorn --forwarded-allow-ips)
FORWARDED_ALLOW_IPS = os.environ.get("FORWARDED_ALLOW_IPS", "127.0.0.1")

# ==================== CREDIT REASONS ====================
CREDIT_REASONS = {"purchase", "refund", "grant", "admin"}

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_CREDITS": "Not enough credits for this service.",
    "INVALID_TOKEN": "Your session has expired. Please sign in again.",
    "RATE_LIMITED": "Too many requests. Please wait before trying again.",
    "STORAGE_UNAVAILABLE": "The service is temporarily unavailable. Please try again.",
    "ACCOUNT_NOT_FOUND": "Account not found or inactive.",
}
