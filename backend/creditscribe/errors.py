"""
Error taxonomy shared by the ledger, the metering loop and the transcription
session controller.
"""
from typing import Optional


class CreditScribeError(Exception):
    """Base class for all application errors"""


class InsufficientCredits(CreditScribeError):
    """The balance cannot pay for another quantum. Expected, not a fault."""

    def __init__(self, message: str = "Insufficient credits", credits: int = 0):
        super().__init__(message)
        self.credits = credits


class LedgerError(CreditScribeError):
    """A balance read or adjustment request failed (network, auth, server)"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is not None:
            return f"{base} (status={self.status})"
        return base


class AccountNotFound(CreditScribeError):
    """No ledger account exists for the given user id"""

    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class CaptureError(CreditScribeError):
    """Audio capture could not be started (permission denied, source closed)"""


class UnsupportedError(CreditScribeError):
    """The audio source uses a capability the provider cannot handle"""


class ConfigurationError(CreditScribeError):
    """Required configuration such as a provider API key is missing"""


class ProviderConnectionError(CreditScribeError):
    """The streaming recognition provider refused or dropped the connection"""
