"""
Credit Ledger Service

Core ledger operations:
- Account opening and deactivation (never hard-deleted)
- Balance and history queries
- Debits (atomic, conditional, all-or-nothing)
- Credits (purchases, refunds, grants)
- Transaction entries for every balance mutation
- Repair of entries whose log write never completed

CRITICAL: The caller's metered operation must not run unless debit()
returned a Transaction. InsufficientCredits writes nothing; StorageUnavailable
with outcome_unknown=True means the debit may or may not have applied.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .config import (
    CREDIT_REASONS,
    PENDING_REPAIR_GRACE_SECONDS,
    STORAGE_TIMEOUT_SECONDS,
    TRANSACTION_WRITE_ATTEMPTS,
)
from .errors import AccountNotFound, InsufficientCredits, StorageUnavailable
from .ledger_store import LedgerStore
from .models import Account, BalanceChange, Transaction
from .storage import bounded

logger = logging.getLogger(__name__)


class CreditLedgerService:
    """Service for debiting and crediting account balances."""

    def __init__(self, store: LedgerStore, timeout: float = STORAGE_TIMEOUT_SECONDS):
        self.store = store
        self.timeout = timeout

    async def open_account(self, account_id: str) -> Account:
        """
        Create an empty account on registration. Re-opening an existing
        account is a no-op; starting credits are granted with credit().
        """
        return await bounded(
            self.store.open_account(account_id),
            "open_account", mutating=True, timeout=self.timeout
        )

    async def get_balance(self, account_id: str) -> Account:
        account = await bounded(self.store.get_account(account_id), "get_account", timeout=self.timeout)
        if account is None or not account.active:
            raise AccountNotFound(account_id)
        return account

    async def debit(self, account_id: str, amount: int, reference_id: str) -> Transaction:
        """
        Atomically debit credits.

        Balance check and decrement are one storage operation; the
        transaction's before/after balances come from that operation.

        Raises:
            InsufficientCredits: balance < amount (nothing written)
            AccountNotFound: account missing or deactivated
            StorageUnavailable: store fault or timeout
        """
        _validate_amount(amount)
        draft = _draft_transaction(account_id, "debit", amount, reference_id, reason="usage")

        change = await bounded(
            self.store.conditional_decrement(account_id, amount, pending=draft),
            "debit", mutating=True, timeout=self.timeout
        )

        if change is None:
            # No-op: find out why, for a precise error
            account = await bounded(self.store.get_account(account_id), "get_account", timeout=self.timeout)
            if account is None or not account.active:
                raise AccountNotFound(account_id)
            logger.info(
                f"Insufficient credits for account {account_id}: "
                f"required={amount}, current={account.balance}"
            )
            raise InsufficientCredits(required=amount, current=account.balance)

        txn = _complete(draft, change)
        await self._record(txn)

        logger.info(
            f"Debited {amount} credits from account {account_id} "
            f"({change.balance_before} -> {change.balance_after}, ref={reference_id})"
        )
        return txn

    async def credit(
        self,
        account_id: str,
        amount: int,
        reference_id: str,
        reason: str = "grant",
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """
        Credit earned, purchased or refunded credits.

        Args:
            account_id: Account to credit
            amount: Positive number of credits
            reference_id: Link to the triggering payment, refund or grant
            reason: 'purchase', 'refund', 'grant' or 'admin'
            description: Free text shown in history
            metadata: Extra details for the transaction entry

        Returns:
            The recorded Transaction
        """
        _validate_amount(amount)
        if reason not in CREDIT_REASONS:
            raise ValueError(f"Invalid credit reason '{reason}'. Valid: {sorted(CREDIT_REASONS)}")
        draft = _draft_transaction(
            account_id, "credit", amount, reference_id,
            reason=reason, description=description, metadata=metadata
        )

        change = await bounded(
            self.store.increment(account_id, amount, pending=draft),
            "credit", mutating=True, timeout=self.timeout
        )
        if change is None:
            raise AccountNotFound(account_id)

        txn = _complete(draft, change)
        await self._record(txn)

        logger.info(f"Credited {amount} credits to account {account_id} (reason={reason}, ref={reference_id})")
        return txn

    async def history(self, account_id: str, limit: int = 50) -> List[Transaction]:
        """Most recent transactions first."""
        return await bounded(
            self.store.list_transactions(account_id, limit),
            "list_transactions", timeout=self.timeout
        )

    async def deactivate(self, account_id: str) -> bool:
        deactivated = await bounded(self.store.deactivate(account_id), "deactivate", mutating=True, timeout=self.timeout)
        if deactivated:
            logger.info(f"Deactivated account {account_id}")
        return deactivated

    async def repair_pending(self, grace_seconds: int = PENDING_REPAIR_GRACE_SECONDS) -> int:
        """
        Write out pending transaction entries older than grace_seconds.

        Appends are idempotent per (account_id, sequence), so an entry whose
        log write did land but whose marker was not cleared is only cleared.

        Returns:
            Number of entries repaired
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=grace_seconds)
        entries = await bounded(self.store.list_pending(cutoff), "list_pending", timeout=self.timeout)

        for txn in entries:
            await bounded(self.store.append_transaction(txn), "append_transaction", timeout=self.timeout)
            await bounded(
                self.store.clear_pending(txn.account_id, txn.sequence),
                "clear_pending", mutating=True, timeout=self.timeout
            )
            logger.info(f"Repaired transaction entry for account {txn.account_id} seq={txn.sequence}")

        return len(entries)

    async def _record(self, txn: Transaction) -> None:
        """
        Write the transaction entry for an applied balance change.

        The balance change has already committed, so a failed write must not
        turn into an error the caller would read as "not charged". Inserts are
        idempotent per (account_id, sequence). The pending marker written with
        the balance change is cleared once the insert lands; otherwise it stays
        on the account for repair_pending().
        """
        for attempt in range(1, TRANSACTION_WRITE_ATTEMPTS + 1):
            try:
                await bounded(self.store.append_transaction(txn), "append_transaction", timeout=self.timeout)
                break
            except StorageUnavailable as e:
                logger.warning(
                    f"Transaction write failed for account {txn.account_id} seq={txn.sequence} "
                    f"(attempt {attempt}/{TRANSACTION_WRITE_ATTEMPTS}): {e.cause}"
                )
        else:
            logger.error(
                f"Transaction entry for account {txn.account_id} seq={txn.sequence} "
                f"left pending for repair (ref={txn.reference_id})"
            )
            return

        try:
            await bounded(
                self.store.clear_pending(txn.account_id, txn.sequence),
                "clear_pending", mutating=True, timeout=self.timeout
            )
        except StorageUnavailable as e:
            logger.warning(f"Pending marker for account {txn.account_id} seq={txn.sequence} not cleared: {e.cause}")


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")


def _draft_transaction(
    account_id: str,
    txn_type: str,
    amount: int,
    reference_id: str,
    reason: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Transaction fields known before the balance change."""
    return {
        "id": str(uuid.uuid4()),
        "account_id": account_id,
        "type": txn_type,
        "amount": amount,
        "reference_id": reference_id,
        "reason": reason,
        "description": description,
        "metadata": metadata,
        "created_at": datetime.now(timezone.utc),
    }


def _complete(draft: Dict[str, Any], change: BalanceChange) -> Transaction:
    return Transaction(
        **draft,
        balance_before=change.balance_before,
        balance_after=change.balance_after,
        sequence=change.sequence,
    )
