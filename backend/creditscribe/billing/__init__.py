"""Credit metering: balance cache, ledger client, metering loop and coordinator"""
from .balance_cache import BalanceCache
from .ledger_client import LedgerAdjustmentClient
from .metering import (
    CREDITS_PER_QUANTUM,
    QUANTUM_SECONDS,
    CreditMeteringLoop,
    MeteringMetrics,
    MeteringState,
)
from .coordinator import SessionBillingCoordinator

__all__ = [
    "BalanceCache",
    "LedgerAdjustmentClient",
    "CreditMeteringLoop",
    "MeteringMetrics",
    "MeteringState",
    "QUANTUM_SECONDS",
    "CREDITS_PER_QUANTUM",
    "SessionBillingCoordinator",
]
