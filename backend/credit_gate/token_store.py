"""
Token Store

Durable storage for hashed refresh-token records. Each record is
independent, so every operation here is a single storage write or read.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from .models import RefreshTokenRecord

logger = logging.getLogger(__name__)


class TokenStore:
    async def insert(self, record: RefreshTokenRecord) -> None:
        raise NotImplementedError

    async def get(self, token_id: str) -> Optional[RefreshTokenRecord]:
        raise NotImplementedError

    async def find_active(self, now: datetime) -> List[RefreshTokenRecord]:
        """All records not revoked and not yet expired."""
        raise NotImplementedError

    async def mark_revoked(self, token_id: str, now: datetime) -> bool:
        """Set revoked_at if still unset. False when already revoked or missing."""
        raise NotImplementedError

    async def revoke_all(self, account_id: str, now: datetime) -> int:
        raise NotImplementedError

    async def delete_stale(self, now: datetime) -> int:
        """Delete expired or revoked records, returning how many were removed."""
        raise NotImplementedError


class MongoTokenStore(TokenStore):
    """Token store on the refresh_tokens collection."""

    def __init__(self, db):
        self.db = db

    async def insert(self, record: RefreshTokenRecord) -> None:
        await self.db.refresh_tokens.insert_one(record.model_dump())

    async def get(self, token_id: str) -> Optional[RefreshTokenRecord]:
        doc = await self.db.refresh_tokens.find_one({"id": token_id}, {"_id": 0})
        return RefreshTokenRecord(**doc) if doc else None

    async def find_active(self, now: datetime) -> List[RefreshTokenRecord]:
        cursor = self.db.refresh_tokens.find(
            {"revoked_at": None, "expires_at": {"$gt": now}},
            {"_id": 0}
        )
        docs = await cursor.to_list(length=None)
        return [RefreshTokenRecord(**doc) for doc in docs]

    async def mark_revoked(self, token_id: str, now: datetime) -> bool:
        result = await self.db.refresh_tokens.update_one(
            {"id": token_id, "revoked_at": None},
            {"$set": {"revoked_at": now}}
        )
        return result.modified_count > 0

    async def revoke_all(self, account_id: str, now: datetime) -> int:
        result = await self.db.refresh_tokens.update_many(
            {"account_id": account_id, "revoked_at": None, "expires_at": {"$gt": now}},
            {"$set": {"revoked_at": now}}
        )
        return result.modified_count

    async def delete_stale(self, now: datetime) -> int:
        result = await self.db.refresh_tokens.delete_many({
            "$or": [
                {"expires_at": {"$lte": now}},
                {"revoked_at": {"$ne": None}}
            ]
        })
        return result.deleted_count


class InMemoryTokenStore(TokenStore):
    """Process-local token store for tests and local development."""

    def __init__(self):
        self._records: Dict[str, RefreshTokenRecord] = {}

    async def insert(self, record: RefreshTokenRecord) -> None:
        if record.id in self._records:
            raise ValueError(f"Duplicate token id {record.id}")
        self._records[record.id] = record.model_copy()

    async def get(self, token_id: str) -> Optional[RefreshTokenRecord]:
        record = self._records.get(token_id)
        return record.model_copy() if record else None

    async def find_active(self, now: datetime) -> List[RefreshTokenRecord]:
        return [r.model_copy() for r in self._records.values() if r.is_usable(now)]

    async def mark_revoked(self, token_id: str, now: datetime) -> bool:
        record = self._records.get(token_id)
        if record is None or record.revoked_at is not None:
            return False
        record.revoked_at = now
        return True

    async def revoke_all(self, account_id: str, now: datetime) -> int:
        count = 0
        for record in self._records.values():
            if record.account_id == account_id and record.is_usable(now):
                record.revoked_at = now
                count += 1
        return count

    async def delete_stale(self, now: datetime) -> int:
        stale = [
            token_id for token_id, r in self._records.items()
            if r.revoked_at is not None or r.expires_at <= now
        ]
        for token_id in stale:
            del self._records[token_id]
        return len(stale)
