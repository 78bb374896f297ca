import asyncio
import heapq
import itertools
from typing import List, Optional

import pytest

from creditscribe.billing.balance_cache import BalanceCache
from creditscribe.errors import InsufficientCredits, LedgerError, ProviderConnectionError
from creditscribe.transcription.base import StreamingSTTProvider, TranscriptEvent


async def settle(rounds: int = 50) -> None:
    """Let every ready task run until the loop goes quiet"""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """
    Manual clock for the metering loop. ``sleep`` parks the caller until
    ``advance`` moves time past its deadline. ``jitter`` offsets successive
    wake-ups, negative values firing early.
    """

    def __init__(self, jitter: Optional[List[float]] = None):
        self.now = 0.0
        self.jitter = list(jitter or [])
        self.sleeps: List[float] = []
        self._timers = []
        self._seq = itertools.count()

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        offset = self.jitter.pop(0) if self.jitter else 0.0
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._timers, (self.now + delay + offset, next(self._seq), future))
        await future

    @property
    def pending(self) -> int:
        return sum(1 for _, _, f in self._timers if not f.done())

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking sleepers in deadline order"""
        target = self.now + seconds
        await settle()
        while self._timers and self._timers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._timers)
            if future.done():
                continue
            self.now = max(self.now, deadline)
            future.set_result(None)
            await settle()
        self.now = target
        await settle()


class FakeLedger:
    """In-process stand-in for LedgerAdjustmentClient with the same cache contract"""

    def __init__(self, cache: BalanceCache, balance: int = 5, error: Optional[Exception] = None):
        self.cache = cache
        self.balance = balance
        self.error = error
        self.calls = []
        self.fetches = 0
        self.gate: Optional[asyncio.Event] = None

    async def fetch_balance(self) -> int:
        self.fetches += 1
        if isinstance(self.error, LedgerError):
            raise self.error
        self.cache.set(self.balance)
        return self.balance

    async def adjust(self, delta, type, description, related_payment_id=None) -> int:
        self.calls.append((delta, type, description))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        new_balance = max(0, self.balance + delta)
        if new_balance == self.balance and delta < 0:
            self.cache.set(self.balance)
            raise InsufficientCredits(credits=self.balance)
        self.balance = new_balance
        self.cache.set(self.balance)
        return self.balance


class FakeProvider(StreamingSTTProvider):
    """Records audio and lets tests drive transcript, close and error events"""

    supported_encodings = frozenset({"webm", "ogg"})

    def __init__(self, config=None, fail: bool = False):
        super().__init__(config or {})
        self.fail = fail
        self.connected = False
        self.initialized = 0
        self.cleaned_up = 0
        self.audio: List[bytes] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def initialize(self) -> None:
        self.initialized += 1
        if self.fail:
            raise ProviderConnectionError("provider refused the connection")
        self.connected = True

    async def cleanup(self) -> None:
        self.cleaned_up += 1
        self.connected = False

    async def send_audio(self, chunk: bytes) -> None:
        self.audio.append(chunk)

    async def emit_transcript(self, text: str, confidence: float = 0.9) -> None:
        await self._on_transcript(TranscriptEvent(source="fake", text=text, confidence=confidence))

    async def emit_close(self) -> None:
        self.connected = False
        await self._on_close()

    async def emit_error(self, error="boom") -> None:
        self.connected = False
        await self._on_error(error)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache():
    return BalanceCache()


@pytest.fixture
def ledger(cache):
    return FakeLedger(cache, balance=5)


@pytest.fixture
def fake_provider():
    return FakeProvider()
