"""
Ledger Store

Durable storage for account balances and the append-only transaction log.

CRITICAL: Balance mutations are single conditional writes. The balance
check and the decrement happen inside one storage operation, so concurrent
requests from any number of processes can never drive a balance negative.

The same write parks the transaction entry on the account (pending_txns).
It is cleared once the entry lands in the transaction log, so a log write
that never happens leaves a marker the repair sweep can finish.

Stores without a native conditional update get the optimistic
version-stamp emulation implemented in LedgerStore.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .config import MAX_CAS_ATTEMPTS
from .errors import StorageUnavailable
from .models import Account, BalanceChange, Transaction

logger = logging.getLogger(__name__)


def _pending_entry(pending: Dict[str, Any], before: int, after: int, sequence: int) -> Dict[str, Any]:
    return {**pending, "balance_before": before, "balance_after": after, "sequence": sequence}


class LedgerStore:
    """
    Base ledger store.

    Subclasses with a native compare-and-swap override conditional_decrement
    and increment. Subclasses without one only implement read_versioned and
    write_versioned; the txn_seq counter doubles as the version stamp.

    `pending` is the transaction entry without its balances and sequence;
    the store completes it from the mutation and keeps it on the account
    until clear_pending is called.
    """

    max_cas_attempts = MAX_CAS_ATTEMPTS

    async def open_account(self, account_id: str) -> Account:
        raise NotImplementedError

    async def get_account(self, account_id: str) -> Optional[Account]:
        raise NotImplementedError

    async def deactivate(self, account_id: str) -> bool:
        raise NotImplementedError

    async def append_transaction(self, txn: Transaction) -> None:
        raise NotImplementedError

    async def list_transactions(self, account_id: str, limit: int = 50) -> List[Transaction]:
        raise NotImplementedError

    async def clear_pending(self, account_id: str, sequence: int) -> None:
        raise NotImplementedError

    async def list_pending(self, older_than: datetime, limit: int = 500) -> List[Transaction]:
        """Pending entries created at or before older_than."""
        raise NotImplementedError

    async def read_versioned(self, account_id: str) -> Optional[Tuple[int, int]]:
        """Return (balance, version) for an active account, or None."""
        raise NotImplementedError

    async def write_versioned(
        self,
        account_id: str,
        expected_version: int,
        new_balance: int,
        earned: int = 0,
        pending: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Write new_balance (and the completed pending entry) only if the version is still expected_version."""
        raise NotImplementedError

    async def conditional_decrement(
        self, account_id: str, amount: int, pending: Optional[Dict[str, Any]] = None
    ) -> Optional[BalanceChange]:
        """
        Decrement balance by amount only if balance >= amount.

        Returns the balance change, or None when the account is missing,
        inactive, or short of credits.
        """
        for attempt in range(1, self.max_cas_attempts + 1):
            current = await self.read_versioned(account_id)
            if current is None:
                return None
            balance, version = current
            if balance < amount:
                return None
            entry = _pending_entry(pending, balance, balance - amount, version + 1) if pending else None
            if await self.write_versioned(account_id, version, balance - amount, pending=entry):
                return BalanceChange(
                    balance_before=balance,
                    balance_after=balance - amount,
                    sequence=version + 1,
                )
            logger.warning(
                f"Version conflict debiting account {account_id} "
                f"(attempt {attempt}/{self.max_cas_attempts})"
            )
        raise StorageUnavailable()

    async def increment(
        self, account_id: str, amount: int, pending: Optional[Dict[str, Any]] = None
    ) -> Optional[BalanceChange]:
        """Unconditionally add amount. Returns None for missing or inactive accounts."""
        for attempt in range(1, self.max_cas_attempts + 1):
            current = await self.read_versioned(account_id)
            if current is None:
                return None
            balance, version = current
            entry = _pending_entry(pending, balance, balance + amount, version + 1) if pending else None
            if await self.write_versioned(account_id, version, balance + amount, earned=amount, pending=entry):
                return BalanceChange(
                    balance_before=balance,
                    balance_after=balance + amount,
                    sequence=version + 1,
                )
            logger.warning(
                f"Version conflict crediting account {account_id} "
                f"(attempt {attempt}/{self.max_cas_attempts})"
            )
        raise StorageUnavailable()


class MongoLedgerStore(LedgerStore):
    """Ledger store on MongoDB single-document atomic updates."""

    def __init__(self, db):
        self.db = db

    async def open_account(self, account_id: str) -> Account:
        now = datetime.now(timezone.utc)
        account_doc = {
            "account_id": account_id,
            "balance": 0,
            "lifetime_earned": 0,
            "active": True,
            "txn_seq": 0,
            "pending_txns": [],
            "created_at": now,
            "updated_at": now,
        }

        # Upsert so a registration retry never resets an existing balance
        await self.db.accounts.update_one(
            {"account_id": account_id},
            {"$setOnInsert": account_doc},
            upsert=True
        )
        return await self.get_account(account_id)

    async def get_account(self, account_id: str) -> Optional[Account]:
        doc = await self.db.accounts.find_one({"account_id": account_id}, {"_id": 0, "pending_txns": 0})
        return Account(**doc) if doc else None

    async def deactivate(self, account_id: str) -> bool:
        result = await self.db.accounts.update_one(
            {"account_id": account_id, "active": True},
            {"$set": {"active": False, "updated_at": datetime.now(timezone.utc)}}
        )
        return result.modified_count > 0

    @staticmethod
    def _mutation(delta: int, earned: int, pending: Optional[Dict[str, Any]]):
        """
        Update for one balance mutation.

        With a pending entry this is an aggregation pipeline so the entry's
        balances and sequence are computed from the document being updated.
        """
        now = datetime.now(timezone.utc)
        if pending is None:
            inc = {"balance": delta, "txn_seq": 1}
            if earned:
                inc["lifetime_earned"] = earned
            return {"$inc": inc, "$set": {"updated_at": now}}

        new_balance = {"$add": ["$balance", delta]}
        sequence = {"$add": ["$txn_seq", 1]}
        entry = {key: {"$literal": value} for key, value in pending.items()}
        entry.update(balance_before="$balance", balance_after=new_balance, sequence=sequence)

        fields = {
            "balance": new_balance,
            "txn_seq": sequence,
            "updated_at": now,
            "pending_txns": {"$concatArrays": [{"$ifNull": ["$pending_txns", []]}, [entry]]},
        }
        if earned:
            fields["lifetime_earned"] = {"$add": ["$lifetime_earned", earned]}
        return [{"$set": fields}]

    async def conditional_decrement(
        self, account_id: str, amount: int, pending: Optional[Dict[str, Any]] = None
    ) -> Optional[BalanceChange]:
        doc = await self.db.accounts.find_one_and_update(
            {
                "account_id": account_id,
                "active": True,
                "balance": {"$gte": amount}
            },
            self._mutation(-amount, 0, pending),
            projection={"_id": 0, "balance": 1, "txn_seq": 1},
            return_document=ReturnDocument.AFTER
        )
        if doc is None:
            return None

        # Before-balance comes from the same atomic write, not a second read
        return BalanceChange(
            balance_before=doc["balance"] + amount,
            balance_after=doc["balance"],
            sequence=doc["txn_seq"],
        )

    async def increment(
        self, account_id: str, amount: int, pending: Optional[Dict[str, Any]] = None
    ) -> Optional[BalanceChange]:
        doc = await self.db.accounts.find_one_and_update(
            {"account_id": account_id, "active": True},
            self._mutation(amount, amount, pending),
            projection={"_id": 0, "balance": 1, "txn_seq": 1},
            return_document=ReturnDocument.AFTER
        )
        if doc is None:
            return None

        return BalanceChange(
            balance_before=doc["balance"] - amount,
            balance_after=doc["balance"],
            sequence=doc["txn_seq"],
        )

    async def append_transaction(self, txn: Transaction) -> None:
        entry = txn.model_dump()
        # Deterministic _id makes a retried insert a no-op
        entry["_id"] = f"{txn.account_id}:{txn.sequence}"
        try:
            await self.db.credit_transactions.insert_one(entry)
        except DuplicateKeyError:
            logger.debug(f"Transaction {entry['_id']} already recorded")

    async def list_transactions(self, account_id: str, limit: int = 50) -> List[Transaction]:
        cursor = self.db.credit_transactions.find(
            {"account_id": account_id},
            {"_id": 0}
        ).sort("sequence", DESCENDING).limit(limit)

        docs = await cursor.to_list(length=limit)
        return [Transaction(**doc) for doc in docs]

    async def clear_pending(self, account_id: str, sequence: int) -> None:
        await self.db.accounts.update_one(
            {"account_id": account_id},
            {"$pull": {"pending_txns": {"sequence": sequence}}}
        )

    async def list_pending(self, older_than: datetime, limit: int = 500) -> List[Transaction]:
        cursor = self.db.accounts.find(
            {"pending_txns": {"$elemMatch": {"created_at": {"$lte": older_than}}}},
            {
                "_id": 0,
                "pending_txns": {
                    "$filter": {
                        "input": "$pending_txns",
                        "cond": {"$lte": ["$$this.created_at", older_than]}
                    }
                }
            }
        ).limit(limit)

        docs = await cursor.to_list(length=limit)
        return [Transaction(**entry) for doc in docs for entry in doc["pending_txns"]]


class InMemoryLedgerStore(LedgerStore):
    """
    Process-local ledger store for tests and local development.

    Each mutation runs without an await between check and write, which makes
    it atomic under asyncio. With native_cas=False the store only offers
    versioned reads and writes, exercising the optimistic path.
    """

    def __init__(self, native_cas: bool = True):
        self.native_cas = native_cas
        self._accounts: Dict[str, Account] = {}
        self._transactions: Dict[str, List[Transaction]] = {}
        self._pending: Dict[Tuple[str, int], Dict[str, Any]] = {}

    async def open_account(self, account_id: str) -> Account:
        if account_id not in self._accounts:
            now = datetime.now(timezone.utc)
            self._accounts[account_id] = Account(account_id=account_id, created_at=now, updated_at=now)
        return self._accounts[account_id].model_copy()

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return account.model_copy() if account else None

    async def deactivate(self, account_id: str) -> bool:
        account = self._accounts.get(account_id)
        if account is None or not account.active:
            return False
        account.active = False
        return True

    async def read_versioned(self, account_id: str) -> Optional[Tuple[int, int]]:
        account = self._accounts.get(account_id)
        if account is None or not account.active:
            return None
        snapshot = (account.balance, account.txn_seq)
        # Yield like a network round trip so concurrent writers can interleave
        await asyncio.sleep(0)
        return snapshot

    async def write_versioned(
        self,
        account_id: str,
        expected_version: int,
        new_balance: int,
        earned: int = 0,
        pending: Optional[Dict[str, Any]] = None
    ) -> bool:
        account = self._accounts.get(account_id)
        if account is None or not account.active or account.txn_seq != expected_version:
            return False
        self._apply(account, new_balance, earned)
        if pending:
            self._pending[(account_id, pending["sequence"])] = pending
        return True

    async def conditional_decrement(
        self, account_id: str, amount: int, pending: Optional[Dict[str, Any]] = None
    ) -> Optional[BalanceChange]:
        if not self.native_cas:
            return await super().conditional_decrement(account_id, amount, pending)

        await asyncio.sleep(0)
        account = self._accounts.get(account_id)
        if account is None or not account.active or account.balance < amount:
            return None
        return self._mutate(account, -amount, 0, pending)

    async def increment(
        self, account_id: str, amount: int, pending: Optional[Dict[str, Any]] = None
    ) -> Optional[BalanceChange]:
        if not self.native_cas:
            return await super().increment(account_id, amount, pending)

        await asyncio.sleep(0)
        account = self._accounts.get(account_id)
        if account is None or not account.active:
            return None
        return self._mutate(account, amount, amount, pending)

    async def append_transaction(self, txn: Transaction) -> None:
        entries = self._transactions.setdefault(txn.account_id, [])
        if any(existing.sequence == txn.sequence for existing in entries):
            return
        entries.append(txn)

    async def list_transactions(self, account_id: str, limit: int = 50) -> List[Transaction]:
        entries = sorted(self._transactions.get(account_id, []), key=lambda t: t.sequence, reverse=True)
        return entries[:limit]

    async def clear_pending(self, account_id: str, sequence: int) -> None:
        self._pending.pop((account_id, sequence), None)

    async def list_pending(self, older_than: datetime, limit: int = 500) -> List[Transaction]:
        entries = [Transaction(**entry) for entry in self._pending.values() if entry["created_at"] <= older_than]
        return entries[:limit]

    def _mutate(
        self, account: Account, delta: int, earned: int, pending: Optional[Dict[str, Any]]
    ) -> BalanceChange:
        before = account.balance
        self._apply(account, before + delta, earned)
        if pending:
            entry = _pending_entry(pending, before, account.balance, account.txn_seq)
            self._pending[(account.account_id, account.txn_seq)] = entry
        return BalanceChange(balance_before=before, balance_after=account.balance, sequence=account.txn_seq)

    @staticmethod
    def _apply(account: Account, new_balance: int, earned: int) -> None:
        if new_balance < 0:
            # Mirrors the accounts collection validator
            raise ValueError("balance must be >= 0")
        account.balance = new_balance
        account.lifetime_earned += earned
        account.txn_seq += 1
        account.updated_at = datetime.now(timezone.utc)
