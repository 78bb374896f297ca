import asyncio
from unittest.mock import AsyncMock

import pytest

from creditscribe.billing.balance_cache import BalanceCache
from creditscribe.billing.coordinator import SessionBillingCoordinator
from creditscribe.billing.metering import MeteringState
from creditscribe.errors import LedgerError, ProviderConnectionError
from creditscribe.transcription.audio_source import QueueAudioSource
from creditscribe.transcription.controller import SessionState, TranscriptionSessionController

from conftest import FakeLedger, FakeProvider, settle


def make_coordinator(clock, balance=5, provider=None, error=None, cache=None):
    cache = cache or BalanceCache()
    ledger = FakeLedger(cache, balance=balance, error=error)
    provider = provider or FakeProvider()
    source = QueueAudioSource()
    controller = TranscriptionSessionController(lambda: provider, source, session_id="s1")
    callbacks = {
        "on_insufficient_credits": AsyncMock(),
        "on_billing_error": AsyncMock(),
        "on_balance": AsyncMock(),
    }
    coordinator = SessionBillingCoordinator(
        controller,
        ledger,
        cache,
        clock=clock,
        sleep=clock.sleep,
        **callbacks
    )
    return coordinator, ledger, provider, callbacks


@pytest.mark.asyncio
async def test_start_seeds_cache_and_arms_meter(clock):
    coordinator, ledger, provider, callbacks = make_coordinator(clock, balance=5)

    assert await coordinator.start_session() is True

    assert ledger.fetches == 1
    assert provider.connected
    assert coordinator.loop.state is MeteringState.ARMED

    await clock.advance(2)
    callbacks["on_balance"].assert_awaited_once_with(4)

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_warm_cache_is_not_refetched(clock):
    cache = BalanceCache(5)
    coordinator, ledger, _, _ = make_coordinator(clock, cache=cache)

    await coordinator.start_session()

    assert ledger.fetches == 0
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_empty_balance_refuses_to_open(clock):
    coordinator, ledger, provider, callbacks = make_coordinator(clock, balance=0)

    assert await coordinator.start_session() is False

    assert provider.initialized == 0
    assert ledger.calls == []
    callbacks["on_insufficient_credits"].assert_awaited_once()
    callbacks["on_billing_error"].assert_not_awaited()


@pytest.mark.asyncio
async def test_exhaustion_tears_down_and_notifies_once(clock):
    coordinator, ledger, provider, callbacks = make_coordinator(clock, balance=2)
    await coordinator.start_session()

    await clock.advance(4)
    await clock.advance(10)

    assert len(ledger.calls) == 2
    assert coordinator.controller.state is SessionState.CLOSED
    assert provider.cleaned_up == 1
    callbacks["on_insufficient_credits"].assert_awaited_once()
    callbacks["on_billing_error"].assert_not_awaited()
    assert coordinator.is_active is False


@pytest.mark.asyncio
async def test_billing_error_tears_down_and_is_not_exhaustion(clock):
    error = LedgerError("Ledger adjustment failed", status=500)
    coordinator, ledger, provider, callbacks = make_coordinator(clock, balance=5)
    await coordinator.start_session()
    ledger.error = error

    await clock.advance(2)
    await clock.advance(10)

    assert len(ledger.calls) == 1
    assert coordinator.controller.state is SessionState.CLOSED
    callbacks["on_billing_error"].assert_awaited_once_with(error)
    callbacks["on_insufficient_credits"].assert_not_awaited()


@pytest.mark.asyncio
async def test_stop_session_halts_billing(clock):
    coordinator, ledger, provider, callbacks = make_coordinator(clock, balance=5)
    await coordinator.start_session()
    await clock.advance(3)

    await coordinator.stop_session()
    await coordinator.stop_session()
    await clock.advance(10)

    assert len(ledger.calls) == 1
    assert provider.connected is False
    assert coordinator.loop.state is MeteringState.IDLE
    callbacks["on_insufficient_credits"].assert_not_awaited()
    callbacks["on_billing_error"].assert_not_awaited()


@pytest.mark.asyncio
async def test_provider_close_stops_meter(clock):
    coordinator, ledger, provider, callbacks = make_coordinator(clock, balance=5)
    await coordinator.start_session()
    await clock.advance(2)

    await provider.emit_close()
    await coordinator.controller.wait_closed()
    await clock.advance(10)

    assert len(ledger.calls) == 1
    assert coordinator.loop.state is MeteringState.IDLE
    callbacks["on_insufficient_credits"].assert_not_awaited()


@pytest.mark.asyncio
async def test_startup_failure_propagates_without_charging(clock):
    coordinator, ledger, _, callbacks = make_coordinator(clock, provider=FakeProvider(fail=True))

    with pytest.raises(ProviderConnectionError):
        await coordinator.start_session()

    await clock.advance(10)
    assert ledger.calls == []
    assert coordinator.loop.state is MeteringState.IDLE
    assert coordinator.is_active is False


@pytest.mark.asyncio
async def test_balance_read_failure_propagates(clock):
    coordinator, _, provider, _ = make_coordinator(
        clock, error=LedgerError("Unauthorized", status=401)
    )

    with pytest.raises(LedgerError):
        await coordinator.start_session()

    assert provider.initialized == 0


@pytest.mark.asyncio
async def test_second_start_is_noop(clock):
    coordinator, _, provider, _ = make_coordinator(clock)

    assert await coordinator.start_session() is True
    assert await coordinator.start_session() is False
    assert provider.initialized == 1

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_stats_reports_meter(clock):
    coordinator, _, _, _ = make_coordinator(clock, balance=5)
    await coordinator.start_session()
    await clock.advance(2)

    stats = coordinator.stats()

    assert stats["balance"] == 4
    assert stats["credits_charged"] == 1
    assert stats["metering_state"] == "armed"
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_restart_after_stop_during_charge_keeps_billing(clock):
    """A restart waits for the in-flight charge instead of leaving the new session unmetered"""
    coordinator, ledger, provider, callbacks = make_coordinator(clock, balance=20)
    ledger.gate = asyncio.Event()
    await coordinator.start_session()

    await clock.advance(2)
    assert coordinator.loop.state is MeteringState.CHARGING

    await coordinator.stop_session()
    coordinator.controller._audio_source = QueueAudioSource()
    restart = asyncio.create_task(coordinator.start_session())
    await settle()
    assert not restart.done()

    ledger.gate.set()
    assert await restart is True
    assert coordinator.loop.state is MeteringState.ARMED

    await clock.advance(20)

    assert coordinator.controller.is_active
    assert len(ledger.calls) == 11
    assert coordinator.cache.get() == 9
    assert coordinator.sessions_started == 2
    callbacks["on_insufficient_credits"].assert_not_awaited()
    callbacks["on_billing_error"].assert_not_awaited()
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_failed_open_is_not_counted_as_started(clock):
    coordinator, _, _, _ = make_coordinator(clock, provider=FakeProvider(fail=True))

    with pytest.raises(ProviderConnectionError):
        await coordinator.start_session()

    assert coordinator.sessions_started == 0


@pytest.mark.asyncio
async def test_successful_open_is_counted_once(clock):
    coordinator, _, _, _ = make_coordinator(clock)

    await coordinator.start_session()
    await coordinator.start_session()

    assert coordinator.sessions_started == 1
    await coordinator.shutdown()
