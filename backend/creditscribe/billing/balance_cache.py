from typing import Optional


class BalanceCache:
    """
    Last known credit balance for the current user.

    Written only from server-confirmed values (initial load and successful
    ledger adjustments); read synchronously by the metering loop.
    """

    def __init__(self, credits: Optional[int] = None):
        self._credits = credits

    @property
    def is_warm(self) -> bool:
        return self._credits is not None

    def get(self) -> int:
        return self._credits if self._credits is not None else 0

    def set(self, credits: int) -> None:
        self._credits = credits

    def __repr__(self) -> str:
        return f"BalanceCache(credits={self._credits!r})"
