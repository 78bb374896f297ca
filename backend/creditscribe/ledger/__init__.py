"""Ledger service: balances, transactions and the REST API serving them"""
from .models import STARTING_CREDITS, CreditTransaction, TransactionType, UserAccount, UserRole
from .store import LedgerStore, get_ledger_store
from .auth import Principal, TokenValidator

__all__ = [
    "STARTING_CREDITS",
    "CreditTransaction",
    "TransactionType",
    "UserAccount",
    "UserRole",
    "LedgerStore",
    "get_ledger_store",
    "Principal",
    "TokenValidator",
]
