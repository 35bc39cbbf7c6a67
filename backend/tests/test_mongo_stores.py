"""
Unit Tests for the MongoDB stores
=================================

The stores are exercised against a mocked motor database. These tests pin
the exact filters and updates, since the conditional filter is what keeps
concurrent debits from overdrawing.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from credit_gate.ledger_store import MongoLedgerStore
from credit_gate.models import RefreshTokenRecord, Transaction
from credit_gate.token_store import MongoTokenStore


def _mock_db():
    db = MagicMock()
    db.accounts.find_one_and_update = AsyncMock()
    db.accounts.find_one = AsyncMock()
    db.accounts.update_one = AsyncMock()
    db.credit_transactions.insert_one = AsyncMock()
    db.refresh_tokens.insert_one = AsyncMock()
    db.refresh_tokens.find_one = AsyncMock()
    db.refresh_tokens.update_one = AsyncMock()
    db.refresh_tokens.update_many = AsyncMock()
    db.refresh_tokens.delete_many = AsyncMock()
    return db


def _txn(sequence=3):
    return Transaction(
        id="txn-1",
        account_id="user-1",
        type="debit",
        amount=25,
        balance_before=100,
        balance_after=75,
        sequence=sequence,
        reference_id="ref-1",
        reason="usage",
        created_at=datetime.now(timezone.utc),
    )


class TestMongoLedgerStore:
    @pytest.mark.asyncio
    async def test_conditional_decrement_filter(self):
        """The balance guard is part of the update filter, not a prior read."""
        db = _mock_db()
        db.accounts.find_one_and_update.return_value = {"balance": 75, "txn_seq": 4}
        store = MongoLedgerStore(db)

        change = await store.conditional_decrement("user-1", 25)

        args, kwargs = db.accounts.find_one_and_update.call_args
        query, update = args
        assert query == {"account_id": "user-1", "active": True, "balance": {"$gte": 25}}
        assert update["$inc"] == {"balance": -25, "txn_seq": 1}
        assert kwargs["return_document"] == ReturnDocument.AFTER

        assert change.balance_before == 100
        assert change.balance_after == 75
        assert change.sequence == 4
        db.accounts.find_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_conditional_decrement_no_match(self):
        db = _mock_db()
        db.accounts.find_one_and_update.return_value = None
        store = MongoLedgerStore(db)

        assert await store.conditional_decrement("user-1", 25) is None

    @pytest.mark.asyncio
    async def test_increment_counts_lifetime_earned(self):
        db = _mock_db()
        db.accounts.find_one_and_update.return_value = {"balance": 130, "txn_seq": 2}
        store = MongoLedgerStore(db)

        change = await store.increment("user-1", 30)

        query, update = db.accounts.find_one_and_update.call_args[0]
        assert query == {"account_id": "user-1", "active": True}
        assert update["$inc"] == {"balance": 30, "lifetime_earned": 30, "txn_seq": 1}
        assert (change.balance_before, change.balance_after) == (100, 130)

    @pytest.mark.asyncio
    async def test_append_transaction_is_idempotent(self):
        db = _mock_db()
        db.credit_transactions.insert_one.side_effect = DuplicateKeyError("dup")
        store = MongoLedgerStore(db)

        await store.append_transaction(_txn(sequence=3))

        entry = db.credit_transactions.insert_one.call_args[0][0]
        assert entry["_id"] == "user-1:3"
        assert entry["reference_id"] == "ref-1"

    @pytest.mark.asyncio
    async def test_open_account_never_overwrites(self):
        db = _mock_db()
        db.accounts.find_one.return_value = {"account_id": "user-1", "balance": 40}
        store = MongoLedgerStore(db)

        account = await store.open_account("user-1")

        query, update = db.accounts.update_one.call_args[0]
        assert query == {"account_id": "user-1"}
        assert list(update.keys()) == ["$setOnInsert"]
        assert update["$setOnInsert"]["balance"] == 0
        assert update["$setOnInsert"]["pending_txns"] == []
        assert db.accounts.update_one.call_args[1]["upsert"] is True
        assert account.balance == 40

    @pytest.mark.asyncio
    async def test_deactivate(self):
        db = _mock_db()
        db.accounts.update_one.return_value = MagicMock(modified_count=1)
        store = MongoLedgerStore(db)

        assert await store.deactivate("user-1") is True
        query, update = db.accounts.update_one.call_args[0]
        assert query == {"account_id": "user-1", "active": True}
        assert update["$set"]["active"] is False

    @pytest.mark.asyncio
    async def test_list_transactions_sorted_by_sequence(self):
        db = _mock_db()
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[_txn(sequence=3).model_dump()])
        db.credit_transactions.find.return_value = cursor
        store = MongoLedgerStore(db)

        result = await store.list_transactions("user-1", limit=10)

        cursor.sort.assert_called_once_with("sequence", -1)
        cursor.limit.assert_called_once_with(10)
        assert result[0].sequence == 3

    @pytest.mark.asyncio
    async def test_debit_parks_pending_entry_in_same_update(self):
        """The transaction entry rides on the balance update, computed from the old document."""
        db = _mock_db()
        db.accounts.find_one_and_update.return_value = {"balance": 75, "txn_seq": 4}
        store = MongoLedgerStore(db)
        created = datetime.now(timezone.utc)
        draft = {"id": "txn-1", "account_id": "user-1", "type": "debit", "amount": 25,
                 "reference_id": "ref-1", "description": "$pay", "created_at": created}

        change = await store.conditional_decrement("user-1", 25, pending=draft)

        query, update = db.accounts.find_one_and_update.call_args[0]
        assert query == {"account_id": "user-1", "active": True, "balance": {"$gte": 25}}
        assert isinstance(update, list) and len(update) == 1
        fields = update[0]["$set"]
        assert fields["balance"] == {"$add": ["$balance", -25]}
        assert fields["txn_seq"] == {"$add": ["$txn_seq", 1]}
        assert "lifetime_earned" not in fields

        entry = fields["pending_txns"]["$concatArrays"][1][0]
        assert entry["balance_before"] == "$balance"
        assert entry["balance_after"] == fields["balance"]
        assert entry["sequence"] == fields["txn_seq"]
        # User text is never read as a field path
        assert entry["description"] == {"$literal": "$pay"}
        assert entry["created_at"] == {"$literal": created}
        assert (change.balance_before, change.balance_after, change.sequence) == (100, 75, 4)

    @pytest.mark.asyncio
    async def test_credit_pending_update_counts_lifetime_earned(self):
        db = _mock_db()
        db.accounts.find_one_and_update.return_value = {"balance": 130, "txn_seq": 2}
        store = MongoLedgerStore(db)

        await store.increment("user-1", 30, pending={"id": "txn-2", "type": "credit"})

        fields = db.accounts.find_one_and_update.call_args[0][1][0]["$set"]
        assert fields["lifetime_earned"] == {"$add": ["$lifetime_earned", 30]}
        assert fields["balance"] == {"$add": ["$balance", 30]}

    @pytest.mark.asyncio
    async def test_clear_pending_pulls_by_sequence(self):
        db = _mock_db()
        store = MongoLedgerStore(db)

        await store.clear_pending("user-1", 7)

        query, update = db.accounts.update_one.call_args[0]
        assert query == {"account_id": "user-1"}
        assert update == {"$pull": {"pending_txns": {"sequence": 7}}}

    @pytest.mark.asyncio
    async def test_list_pending_filters_by_age(self):
        db = _mock_db()
        cursor = MagicMock()
        cursor.limit.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[{"pending_txns": [_txn(sequence=5).model_dump()]}])
        db.accounts.find.return_value = cursor
        store = MongoLedgerStore(db)
        cutoff = datetime.now(timezone.utc)

        result = await store.list_pending(cutoff)

        query, projection = db.accounts.find.call_args[0]
        assert query == {"pending_txns": {"$elemMatch": {"created_at": {"$lte": cutoff}}}}
        assert projection["pending_txns"]["$filter"]["cond"] == {"$lte": ["$$this.created_at", cutoff]}
        assert [t.sequence for t in result] == [5]

    @pytest.mark.asyncio
    async def test_get_account_hides_pending_entries(self):
        db = _mock_db()
        db.accounts.find_one.return_value = {"account_id": "user-1", "balance": 10}
        store = MongoLedgerStore(db)

        await store.get_account("user-1")

        assert db.accounts.find_one.call_args[0][1] == {"_id": 0, "pending_txns": 0}


class TestMongoTokenStore:
    @pytest.mark.asyncio
    async def test_mark_revoked_is_conditional(self):
        db = _mock_db()
        db.refresh_tokens.update_one.return_value = MagicMock(modified_count=0)
        store = MongoTokenStore(db)
        now = datetime.now(timezone.utc)

        assert await store.mark_revoked("tok-1", now) is False

        query, update = db.refresh_tokens.update_one.call_args[0]
        assert query == {"id": "tok-1", "revoked_at": None}
        assert update == {"$set": {"revoked_at": now}}

    @pytest.mark.asyncio
    async def test_insert_and_get(self):
        db = _mock_db()
        store = MongoTokenStore(db)
        now = datetime.now(timezone.utc)
        record = RefreshTokenRecord(
            id="tok-1",
            account_id="user-1",
            secret_hash="ab" * 32,
            expires_at=now + timedelta(days=30),
            created_at=now,
        )

        await store.insert(record)
        db.refresh_tokens.find_one.return_value = db.refresh_tokens.insert_one.call_args[0][0]
        fetched = await store.get("tok-1")

        assert fetched == record
        assert db.refresh_tokens.find_one.call_args[0][0] == {"id": "tok-1"}

    @pytest.mark.asyncio
    async def test_revoke_all_and_delete_stale(self):
        db = _mock_db()
        db.refresh_tokens.update_many.return_value = MagicMock(modified_count=3)
        db.refresh_tokens.delete_many.return_value = MagicMock(deleted_count=5)
        store = MongoTokenStore(db)
        now = datetime.now(timezone.utc)

        assert await store.revoke_all("user-1", now) == 3
        assert await store.delete_stale(now) == 5

        query = db.refresh_tokens.update_many.call_args[0][0]
        assert query["account_id"] == "user-1"
        assert query["revoked_at"] is None
        stale_query = db.refresh_tokens.delete_many.call_args[0][0]
        assert {"expires_at": {"$lte": now}} in stale_query["$or"]
