"""
Session/billing coordinator: keeps the metering loop in lockstep with the
transcription session and turns loop signals into teardown plus exactly one
caller-visible notification per session.
"""
import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from creditscribe.billing.balance_cache import BalanceCache
from creditscribe.billing.ledger_client import LedgerAdjustmentClient
from creditscribe.billing.metering import CreditMeteringLoop, Handler
from creditscribe.errors import LedgerError
from creditscribe.events import EventBus, billing_event
from creditscribe.logging_config import BILLING_LOGGER_NAME
from creditscribe.transcription.controller import TranscriptionSessionController

billing_logger = logging.getLogger(BILLING_LOGGER_NAME)


class SessionBillingCoordinator:
    """Starts and stops billing together with the transcription session"""

    def __init__(
        self,
        controller: TranscriptionSessionController,
        ledger: LedgerAdjustmentClient,
        cache: BalanceCache,
        on_insufficient_credits: Handler,
        on_billing_error: Handler,
        on_balance: Optional[Handler] = None,
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        event_bus: Optional[EventBus] = None
    ):
        self.controller = controller
        self.ledger = ledger
        self.cache = cache
        self.session_id = session_id or controller.session_id
        self._on_insufficient_credits = on_insufficient_credits
        self._on_billing_error = on_billing_error
        self._on_balance = on_balance
        self._event_bus = event_bus

        self.loop = CreditMeteringLoop(
            cache,
            ledger,
            on_insufficient_credits=self._handle_insufficient_credits,
            on_billing_error=self._handle_billing_error,
            is_session_active=lambda: self.controller.is_active,
            on_charged=self._handle_charged,
            session_id=self.session_id,
            clock=clock,
            sleep=sleep,
            event_bus=event_bus
        )
        controller.set_listeners(on_session_active=self._handle_session_active)

        self.sessions_started = 0
        self._starting = False
        self._terminal_notified = False

    @property
    def is_active(self) -> bool:
        return self._starting or self.controller.is_active

    async def _emit(self, event_type: str, **data: Any) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.emit(
                billing_event(self.session_id, event_type),
                session_id=self.session_id,
                **data
            )
        except Exception as e:
            billing_logger.error(f"[EVENT] Failed to emit {event_type} | error={str(e)}")

    async def _notify(self, handler: Optional[Handler], *args) -> None:
        if handler is None:
            return
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            billing_logger.error(
                f"[COORDINATOR] Caller callback failed | "
                f"session_id={self.session_id} | "
                f"error={str(e)}",
                exc_info=True
            )

    async def start_session(self) -> bool:
        """
        Open the transcription session; billing starts once it is live.

        Returns True when the session is live. Startup failures (LedgerError
        while seeding the balance, CaptureError, UnsupportedError,
        ConfigurationError, ProviderConnectionError) propagate before any
        credit is charged.
        """
        if self.is_active:
            billing_logger.warning(
                f"[COORDINATOR] Session already active | session_id={self.session_id}"
            )
            return False

        self._starting = True
        self._terminal_notified = False
        try:
            if not self.cache.is_warm:
                await self.ledger.fetch_balance()

            if self.cache.get() <= 0:
                billing_logger.info(
                    f"[COORDINATOR] Refusing to start, no credits | session_id={self.session_id}"
                )
                await self._notify_insufficient_credits()
                return False

            # A charge from the previous session may still be in flight
            await self.loop.wait_stopped()
            await self.controller.open()
            self.sessions_started += 1
        finally:
            self._starting = False

        await self._emit("session_started", balance=self.cache.get())
        return self.controller.is_active

    async def stop_session(self) -> None:
        """Stop billing first, then tear down capture and the provider"""
        self.loop.stop("session_stopped")
        await self.controller.close()

    async def shutdown(self) -> None:
        """Stop everything and wait for background tasks to finish"""
        await self.stop_session()
        await self.loop.wait_stopped()
        await self.controller.wait_closed()

    def stats(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "active": self.is_active,
            "balance": self.cache.get(),
            "credits_charged": self.loop.credits_charged,
            "metering_state": self.loop.state.value,
            "metrics": self.loop.metrics.to_dict(),
        }

    async def _handle_session_active(self, active: bool) -> None:
        if active:
            billing_logger.info(f"[COORDINATOR] Session live, arming meter | session_id={self.session_id}")
            await self.loop.start()
        else:
            billing_logger.info(f"[COORDINATOR] Session ended, stopping meter | session_id={self.session_id}")
            self.loop.stop("session_inactive")
            await self._emit("session_ended", credits_charged=self.loop.credits_charged)

    async def _handle_charged(self, balance: int) -> None:
        await self._notify(self._on_balance, balance)

    async def _handle_insufficient_credits(self) -> None:
        await self.stop_session()
        await self._notify_insufficient_credits()

    async def _notify_insufficient_credits(self) -> None:
        if self._terminal_notified:
            return
        self._terminal_notified = True
        await self._emit("terminated", reason="insufficient_credits")
        await self._notify(self._on_insufficient_credits)

    async def _handle_billing_error(self, error: LedgerError) -> None:
        await self.stop_session()
        if self._terminal_notified:
            return
        self._terminal_notified = True
        await self._emit("terminated", reason="billing_error", error=str(error))
        await self._notify(self._on_billing_error, error)
