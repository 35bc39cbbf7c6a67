"""
Refresh Token Manager

Issues, verifies, rotates and revokes long-lived session-renewal tokens.

Credential format: "<token_id>.<secret>"
- token_id is a public lookup key, so verification reads exactly one record
- secret carries 256 bits of randomness; only its SHA-256 hash is stored
- credentials without a token_id fall back to a scan over active records

All hash comparisons use hmac.compare_digest.
"""

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from .config import (
    REFRESH_TOKEN_ID_BYTES,
    REFRESH_TOKEN_SECRET_BYTES,
    REFRESH_TOKEN_SEPARATOR,
    REFRESH_TOKEN_TTL_DAYS,
    STORAGE_TIMEOUT_SECONDS,
)
from .errors import InvalidToken
from .models import RefreshTokenRecord
from .storage import bounded
from .token_store import TokenStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


class RefreshTokenManager:
    """
    Lifecycle of refresh tokens: active -> revoked, or active -> expired.

    Expiry is not a stored transition; it is evaluated against the clock
    on every lookup.
    """

    def __init__(
        self,
        store: TokenStore,
        ttl_days: int = REFRESH_TOKEN_TTL_DAYS,
        lookup_ids: bool = True,
        clock: Callable[[], datetime] = _utcnow,
        timeout: float = STORAGE_TIMEOUT_SECONDS
    ):
        self.store = store
        self.ttl = timedelta(days=ttl_days)
        self.lookup_ids = lookup_ids
        self.clock = clock
        self.timeout = timeout

    async def issue(self, account_id: str) -> str:
        """
        Create and store a refresh token for an account.

        Returns the raw credential. It is never persisted in recoverable
        form; losing it means the session must re-authenticate.
        """
        now = self.clock()
        secret = secrets.token_urlsafe(REFRESH_TOKEN_SECRET_BYTES)

        if self.lookup_ids:
            token_id = secrets.token_urlsafe(REFRESH_TOKEN_ID_BYTES)
            raw = f"{token_id}{REFRESH_TOKEN_SEPARATOR}{secret}"
        else:
            token_id = str(uuid.uuid4())
            raw = secret

        record = RefreshTokenRecord(
            id=token_id,
            account_id=account_id,
            secret_hash=hash_secret(secret),
            expires_at=now + self.ttl,
            created_at=now,
        )
        await bounded(self.store.insert(record), "issue_refresh_token", mutating=True, timeout=self.timeout)

        logger.info(f"Issued refresh token {token_id if self.lookup_ids else '(opaque)'} for account {account_id}")
        return raw

    async def verify(self, raw: str) -> str:
        """
        Return the owning account_id of a usable token.

        Raises:
            InvalidToken: unknown, revoked or expired credential
        """
        record = await self._lookup(raw, self.clock())
        if record is None:
            raise InvalidToken()
        return record.account_id

    async def revoke(self, raw: str) -> bool:
        """Revoke one token. Revoking an already revoked token returns False."""
        now = self.clock()
        record = await self._lookup(raw, now)
        if record is None:
            return False

        revoked = await bounded(
            self.store.mark_revoked(record.id, now),
            "revoke_refresh_token", mutating=True, timeout=self.timeout
        )
        if revoked:
            logger.info(f"Revoked refresh token for account {record.account_id}")
        return revoked

    async def revoke_all(self, account_id: str) -> int:
        """Revoke every active token of an account (logout everywhere)."""
        count = await bounded(
            self.store.revoke_all(account_id, self.clock()),
            "revoke_all_refresh_tokens", mutating=True, timeout=self.timeout
        )
        logger.info(f"Revoked {count} refresh tokens for account {account_id}")
        return count

    async def rotate(self, raw: str) -> Tuple[str, str]:
        """
        Exchange a usable token for a fresh one.

        The presented token is revoked first; of two concurrent rotations
        of the same token only one succeeds.

        Returns:
            (account_id, new raw credential)
        """
        now = self.clock()
        record = await self._lookup(raw, now)
        if record is None:
            raise InvalidToken()

        revoked = await bounded(
            self.store.mark_revoked(record.id, now),
            "rotate_refresh_token", mutating=True, timeout=self.timeout
        )
        if not revoked:
            logger.warning(f"Refresh token reuse during rotation for account {record.account_id}")
            raise InvalidToken("reused")

        return record.account_id, await self.issue(record.account_id)

    async def sweep(self) -> int:
        """Delete expired and revoked records. Runs on a schedule, not per request."""
        removed = await bounded(self.store.delete_stale(self.clock()), "sweep_refresh_tokens", timeout=self.timeout)
        logger.info(f"Refresh token sweep removed {removed} records")
        return removed

    async def _lookup(self, raw: str, now: datetime) -> Optional[RefreshTokenRecord]:
        if not raw:
            return None

        token_id, sep, secret = raw.partition(REFRESH_TOKEN_SEPARATOR)
        if sep:
            record = await bounded(self.store.get(token_id), "get_refresh_token", timeout=self.timeout)
            if record is None or not record.is_usable(now):
                return None
            if not hmac.compare_digest(hash_secret(secret), record.secret_hash):
                logger.warning(f"Refresh token secret mismatch for token {token_id}")
                return None
            return record

        # Opaque credential: scan active records
        presented = hash_secret(raw)
        candidates = await bounded(self.store.find_active(now), "find_active_refresh_tokens", timeout=self.timeout)
        for record in candidates:
            if hmac.compare_digest(presented, record.secret_hash) and record.is_usable(now):
                return record
        return None
