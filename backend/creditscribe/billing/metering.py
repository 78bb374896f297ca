"""
Credit metering loop: charges one credit per fixed quantum while a
transcription session is live, and stops as soon as the balance runs out.
"""
import asyncio
import inspect
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from creditscribe.billing.balance_cache import BalanceCache
from creditscribe.billing.ledger_client import LedgerAdjustmentClient
from creditscribe.errors import InsufficientCredits, LedgerError
from creditscribe.events import EventBus, billing_event
from creditscribe.logging_config import BILLING_LOGGER_NAME

billing_logger = logging.getLogger(BILLING_LOGGER_NAME)

# One credit buys one quantum of transcription
QUANTUM_SECONDS = 2
CREDITS_PER_QUANTUM = 1
# Fires landing earlier than this fraction of a quantum after the last charge are discarded
DEBOUNCE_RATIO = 0.95

Handler = Callable[..., Union[None, Awaitable[None]]]


class MeteringState(Enum):
    """Metering loop state"""
    IDLE = "idle"
    ARMED = "armed"
    CHARGING = "charging"


class MeteringMetrics:
    """Track charge metrics for monitoring"""
    def __init__(self):
        self.charge_attempts = 0
        self.charge_successes = 0
        self.charge_failures = 0
        self.spurious_fires = 0
        self.total_latency_ms = 0.0
        self.min_latency_ms = float('inf')
        self.max_latency_ms = 0.0
        self.state_transitions: List[Dict[str, Any]] = []

    def record_latency(self, latency_ms: float) -> None:
        self.total_latency_ms += latency_ms
        self.min_latency_ms = min(self.min_latency_ms, latency_ms)
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)

    def to_dict(self) -> Dict[str, Any]:
        avg_latency = (
            self.total_latency_ms / self.charge_successes
            if self.charge_successes > 0 else 0
        )
        return {
            "charge_attempts": self.charge_attempts,
            "charge_successes": self.charge_successes,
            "charge_failures": self.charge_failures,
            "spurious_fires": self.spurious_fires,
            "avg_latency_ms": avg_latency,
            "min_latency_ms": self.min_latency_ms if self.min_latency_ms != float('inf') else 0,
            "max_latency_ms": self.max_latency_ms,
            "state_transitions": self.state_transitions
        }


class CreditMeteringLoop:
    """
    Billing heartbeat for one transcription session.

    The loop runs as a single task. Each iteration sleeps until the next
    quantum boundary, checks the cached balance, and charges the ledger.
    Only the server-confirmed balance decides whether another quantum is armed,
    so charges are strictly serialized and overspend is bounded to one quantum.

    Signals are delivered through callbacks and never raised to the caller:
    ``on_insufficient_credits()`` when the balance is exhausted and
    ``on_billing_error(error)`` when the ledger call fails.
    """

    def __init__(
        self,
        cache: BalanceCache,
        ledger: LedgerAdjustmentClient,
        on_insufficient_credits: Handler,
        on_billing_error: Handler,
        is_session_active: Optional[Callable[[], bool]] = None,
        on_charged: Optional[Handler] = None,
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        event_bus: Optional[EventBus] = None
    ):
        self.cache = cache
        self.ledger = ledger
        self.session_id = session_id or "default"
        self._on_insufficient_credits = on_insufficient_credits
        self._on_billing_error = on_billing_error
        self._on_charged = on_charged
        self._is_session_active = is_session_active or (lambda: True)
        self._clock = clock
        self._sleep = sleep
        self._event_bus = event_bus

        self.state = MeteringState.IDLE
        self.last_charge_at: Optional[float] = None
        self.credits_charged = 0
        self.metrics = MeteringMetrics()
        self._task: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._pending_events: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self.state is not MeteringState.IDLE

    def _transition_state(self, new_state: MeteringState, reason: str = ""):
        """Track state transitions with logging"""
        old_state = self.state
        self.state = new_state

        transition = {
            "from": old_state.value,
            "to": new_state.value,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
        self.metrics.state_transitions.append(transition)

        billing_logger.info(
            f"[STATE] Transition | "
            f"session_id={self.session_id} | "
            f"from={old_state.value} | "
            f"to={new_state.value} | "
            f"reason={reason}"
        )

        if self._event_bus is not None:
            task = asyncio.create_task(self._emit_billing_event("state_transition", transition))
            self._pending_events.add(task)
            task.add_done_callback(self._pending_events.discard)

    async def _emit_billing_event(self, event_type: str, data: Dict[str, Any]):
        """Emit billing events for tracking"""
        if self._event_bus is None:
            return
        try:
            await self._event_bus.emit(
                billing_event(self.session_id, event_type),
                session_id=self.session_id,
                **data
            )
        except Exception as e:
            billing_logger.error(
                f"[EVENT] Failed to emit {event_type} | error={str(e)}"
            )

    async def _notify(self, handler: Optional[Handler], *args) -> None:
        if handler is None:
            return
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            billing_logger.error(
                f"[SIGNAL] Handler failed | "
                f"session_id={self.session_id} | "
                f"handler={getattr(handler, '__name__', repr(handler))} | "
                f"error={str(e)}",
                exc_info=True
            )

    async def _signal_insufficient_credits(self, reason: str) -> None:
        billing_logger.warning(
            f"[SIGNAL] Insufficient credits | "
            f"session_id={self.session_id} | "
            f"reason={reason} | "
            f"credits_charged={self.credits_charged}"
        )
        await self._emit_billing_event("insufficient_credits", {"reason": reason})
        await self._notify(self._on_insufficient_credits)

    async def _signal_billing_error(self, error: LedgerError) -> None:
        billing_logger.error(
            f"[SIGNAL] Billing error | "
            f"session_id={self.session_id} | "
            f"error={str(error)}"
        )
        await self._emit_billing_event("billing_error", {"error": str(error)})
        await self._notify(self._on_billing_error, error)

    async def start(self) -> bool:
        """Arm the loop. Returns False when it stays idle."""
        if self.state is not MeteringState.IDLE:
            billing_logger.warning(
                f"[START] Already running | "
                f"session_id={self.session_id} | "
                f"state={self.state.value}"
            )
            return False

        balance = self.cache.get()
        if balance <= 0:
            await self._signal_insufficient_credits("no_balance_at_start")
            return False

        self._stop_requested = False
        self.last_charge_at = self._clock()
        self._transition_state(MeteringState.ARMED, "started")

        billing_logger.info(
            f"[START] Metering armed | "
            f"session_id={self.session_id} | "
            f"balance={balance} | "
            f"quantum_s={QUANTUM_SECONDS}"
        )

        self._task = asyncio.create_task(
            self._run(),
            name=f"metering_loop_{self.session_id}"
        )
        return True

    def stop(self, reason: str = "stop_requested") -> None:
        """
        Stop metering. A pending quantum is cancelled immediately; a charge
        already in flight completes but nothing further is scheduled.
        """
        self._stop_requested = True

        if self.state is MeteringState.ARMED:
            task = self._task
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
            self._transition_state(MeteringState.IDLE, reason)

        elif self.state is MeteringState.CHARGING:
            billing_logger.info(
                f"[STOP] Charge in flight, will not re-arm | "
                f"session_id={self.session_id}"
            )

    async def wait_stopped(self) -> None:
        """Wait for the loop task to finish"""
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        await asyncio.wait({task})

    async def _wait_for_quantum(self) -> None:
        """Sleep until a full quantum has elapsed since the last charge"""
        while True:
            remaining = QUANTUM_SECONDS - (self._clock() - self.last_charge_at)
            if remaining > 0:
                await self._sleep(remaining)

            elapsed = self._clock() - self.last_charge_at
            if elapsed >= QUANTUM_SECONDS * DEBOUNCE_RATIO:
                return

            self.metrics.spurious_fires += 1
            billing_logger.debug(
                f"[LOOP] Early fire discarded | "
                f"session_id={self.session_id} | "
                f"elapsed_s={elapsed:.3f}"
            )

    async def _run(self) -> None:
        iteration = 0
        try:
            while True:
                await self._wait_for_quantum()
                iteration += 1

                if self._stop_requested:
                    if self.state is not MeteringState.IDLE:
                        self._transition_state(MeteringState.IDLE, "stop_requested")
                    break

                if not self._is_session_active():
                    self._transition_state(MeteringState.IDLE, "session_inactive")
                    break

                if self.cache.get() <= 0:
                    self._transition_state(MeteringState.IDLE, "balance_exhausted")
                    await self._signal_insufficient_credits("cached_balance_exhausted")
                    break

                if not await self._charge():
                    break

        except asyncio.CancelledError:
            billing_logger.info(
                f"[LOOP] Cancelled | "
                f"session_id={self.session_id} | "
                f"iterations={iteration} | "
                f"credits_charged={self.credits_charged}"
            )
            raise

        except Exception as e:
            billing_logger.error(
                f"[LOOP] Error | "
                f"session_id={self.session_id} | "
                f"iteration={iteration} | "
                f"error={str(e)} | "
                f"error_type={type(e).__name__}",
                exc_info=True
            )
            self._transition_state(MeteringState.IDLE, f"loop_error: {type(e).__name__}")
            if not self._stop_requested:
                await self._signal_billing_error(LedgerError(f"Metering failed: {e}"))

        finally:
            billing_logger.info(
                f"[LOOP] Ended | "
                f"session_id={self.session_id} | "
                f"iterations={iteration} | "
                f"credits_charged={self.credits_charged} | "
                f"final_state={self.state.value}"
            )

    async def _charge(self) -> bool:
        """Charge one quantum. Returns True when the next quantum is armed."""
        fired_at = self._clock()
        self._transition_state(MeteringState.CHARGING, "quantum_elapsed")
        self.metrics.charge_attempts += 1
        start_time = time.time()

        try:
            balance = await self.ledger.adjust(
                -CREDITS_PER_QUANTUM,
                "usage",
                f"Live transcription ({QUANTUM_SECONDS}s)"
            )

        except InsufficientCredits:
            self.metrics.charge_failures += 1
            self._transition_state(MeteringState.IDLE, "ledger_refused_decrement")
            if not self._stop_requested:
                await self._signal_insufficient_credits("ledger_refused_decrement")
            return False

        except LedgerError as e:
            self.metrics.charge_failures += 1
            self._transition_state(MeteringState.IDLE, "ledger_error")
            if not self._stop_requested:
                await self._signal_billing_error(e)
            return False

        self.metrics.charge_successes += 1
        self.metrics.record_latency((time.time() - start_time) * 1000)
        self.credits_charged += CREDITS_PER_QUANTUM
        self.last_charge_at = fired_at

        billing_logger.info(
            f"[CHARGE] Quantum charged | "
            f"session_id={self.session_id} | "
            f"balance={balance} | "
            f"credits_charged={self.credits_charged}"
        )
        await self._notify(self._on_charged, balance)

        if balance <= 0:
            self._transition_state(MeteringState.IDLE, "balance_exhausted")
            if not self._stop_requested:
                await self._signal_insufficient_credits("balance_exhausted")
            return False

        if self._stop_requested:
            self._transition_state(MeteringState.IDLE, "stopped_after_charge")
            return False

        if not self._is_session_active():
            self._transition_state(MeteringState.IDLE, "session_inactive")
            return False

        self._transition_state(MeteringState.ARMED, "charged")
        return True
