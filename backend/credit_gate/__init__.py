"""
Credit Gate Module
Paid-access gate for metered AI operations

This module provides:
- Credit ledger with atomic conditional debits (balance can never go negative)
- Immutable transaction history for every balance mutation
- Refresh token issuance, verification, rotation and revocation
- Fixed-window rate limiting per principal and per tier
- Scheduled sweeps for stale tokens and rate-limit counters

Collections used:
- accounts: Credit balances (validator enforces balance >= 0)
- credit_transactions: Immutable transaction log
- refresh_tokens: Hashed renewal credentials
- credit_gate_meta: Init version stamp
"""

__version__ = "1.0.0"
