"""
Ledger storage: user balances and the append-only credit transaction log.
"""
import asyncio
import logging
import uuid
from collections import OrderedDict
from typing import Dict, List, Optional

from creditscribe.errors import AccountNotFound, InsufficientCredits
from creditscribe.ledger.models import (
    STARTING_CREDITS,
    AdjustResult,
    CreditTransaction,
    TransactionType,
    UserAccount,
    UserRole,
)

logger = logging.getLogger(__name__)

# Most recent idempotency keys remembered per user; older keys can no longer be replayed
IDEMPOTENCY_KEYS_PER_USER = 100


class LedgerStore:
    """
    In-memory ledger. Adjustments for one user are serialized by a per-user
    lock, so concurrent sessions of the same user can never drive the balance
    below zero or lose an update.
    """

    def __init__(self, starting_credits: int = STARTING_CREDITS):
        self.starting_credits = starting_credits
        self._accounts: Dict[str, UserAccount] = {}
        self._transactions: Dict[str, List[CreditTransaction]] = {}
        self._idempotency: Dict[str, "OrderedDict[str, AdjustResult]"] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    def _get_account(self, user_id: str) -> UserAccount:
        account = self._accounts.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        return account

    async def create_account(
        self,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
        role: UserRole = UserRole.USER
    ) -> UserAccount:
        """Create an account and record its starting grant"""
        user_id = user_id or uuid.uuid4().hex
        async with self._lock_for(user_id):
            if user_id in self._accounts:
                raise ValueError(f"Account already exists: {user_id}")

            account = UserAccount(user_id=user_id, email=email, name=name, role=role)
            self._accounts[user_id] = account
            self._transactions[user_id] = []

            if self.starting_credits > 0:
                self._append(
                    account,
                    self.starting_credits,
                    TransactionType.BONUS,
                    "Starting credits"
                )

        logger.info(f"Account created | user_id={user_id} | credits={account.credits}")
        return account.model_copy()

    def _append(
        self,
        account: UserAccount,
        amount: int,
        type: TransactionType,
        description: str,
        related_payment_id: Optional[str] = None
    ) -> CreditTransaction:
        account.credits += amount
        transaction = CreditTransaction(
            user_id=account.user_id,
            amount=amount,
            type=type,
            description=description,
            related_payment_id=related_payment_id
        )
        self._transactions[account.user_id].append(transaction)
        return transaction

    async def get_account(self, user_id: str) -> UserAccount:
        return self._get_account(user_id).model_copy()

    async def get_balance(self, user_id: str) -> int:
        return self._get_account(user_id).credits

    async def adjust(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        related_payment_id: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> AdjustResult:
        """
        Apply a signed delta to a user's balance.

        Decrements are clamped at zero and the transaction records the amount
        actually applied. A decrement that cannot apply anything raises
        InsufficientCredits. A repeated idempotency key returns the original
        result without touching the balance again.
        """
        if amount == 0:
            raise ValueError("Adjustment amount must be non-zero")

        async with self._lock_for(user_id):
            if idempotency_key:
                previous = self._idempotency.get(user_id, {}).get(idempotency_key)
                if previous is not None:
                    logger.info(f"Replayed adjustment | user_id={user_id} | key={idempotency_key}")
                    return previous

            account = self._get_account(user_id)
            new_credits = max(0, account.credits + amount)
            applied = new_credits - account.credits

            if applied == 0:
                raise InsufficientCredits(credits=account.credits)

            transaction = self._append(account, applied, type, description, related_payment_id)
            result = AdjustResult(
                credits=account.credits,
                applied=applied,
                transaction_id=transaction.id
            )

            if idempotency_key:
                self._remember(user_id, idempotency_key, result)

        logger.debug(
            f"Balance adjusted | user_id={user_id} | requested={amount} | "
            f"applied={applied} | credits={result.credits}"
        )
        return result

    def _remember(self, user_id: str, idempotency_key: str, result: AdjustResult) -> None:
        keys = self._idempotency.setdefault(user_id, OrderedDict())
        keys[idempotency_key] = result
        while len(keys) > IDEMPOTENCY_KEYS_PER_USER:
            keys.popitem(last=False)

    async def list_transactions(self, user_id: str, limit: Optional[int] = None) -> List[CreditTransaction]:
        """Transactions for a user, newest first"""
        self._get_account(user_id)
        transactions = list(reversed(self._transactions[user_id]))
        return transactions[:limit] if limit else transactions

    async def list_accounts(self) -> List[UserAccount]:
        return [account.model_copy() for account in self._accounts.values()]


_ledger_store: Optional[LedgerStore] = None


def get_ledger_store() -> LedgerStore:
    """Get the singleton ledger store"""
    global _ledger_store
    if _ledger_store is None:
        _ledger_store = LedgerStore()
    return _ledger_store
