import asyncio
import inspect
import logging
import random
from typing import Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from pulseprint.core.exceptions import DecodeError
from pulseprint.schemas.connection import ConnectionParams, EngineConfig, SessionState
from pulseprint.schemas.events import ConnectionEstablished, ConnectionLost, InboundEvent, RawStatusFragment
from pulseprint.schemas.status import DeviceState
from pulseprint.services.printer import reducer
from pulseprint.services.printer.decoder import decode, preview
from pulseprint.services.printer.event_queue import EventQueue
from pulseprint.services.printer.supervisor import ConnectionSupervisor, SessionObserver
from pulseprint.services.printer.transport import Transport

logger = logging.getLogger("SubscriptionEngine")

StateObserver = Callable[[DeviceState], Union[None, Awaitable[None]]]


class EngineStats(BaseModel):
    fragments_applied: int = 0
    decode_failures: int = 0
    event_failures: int = 0
    dropped_events: int = 0
    reconnects: int = 0
    connection_losses: int = 0


class SubscriptionEngine:
    """
    Wires ConnectionSupervisor -> EventQueue -> decode -> reduce for one device.

    The supervisor task and the consumer task only share the queue. The
    consumer is the single writer of the device state; readers get copies
    through snapshot().
    """

    def __init__(
        self,
        params: ConnectionParams,
        config: Optional[EngineConfig] = None,
        transport: Optional[Transport] = None,
        on_session_change: Optional[SessionObserver] = None,
        rng: Optional[random.Random] = None,
    ):
        self.params = params
        self.config = config or EngineConfig()
        self._queue: EventQueue[InboundEvent] = EventQueue(self.config.queue_capacity)
        self._supervisor = ConnectionSupervisor(
            params,
            self._queue,
            transport=transport,
            config=self.config,
            on_session_change=on_session_change,
            rng=rng,
        )
        self._state = reducer.initial_state(self.config.staleness_window)
        self._fragments_applied = 0
        self._decode_failures = 0
        self._event_failures = 0
        self._consumer_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self._started = False

    # --- public surface --------------------------------------------------

    def start(self, on_state_change: Optional[StateObserver] = None) -> asyncio.Task:
        """Schedules run() and returns its task as a cancellable handle."""
        if self._run_task is None:
            self._run_task = asyncio.create_task(self.run(on_state_change), name=f"engine-{self.params.device_id}")
        return self._run_task

    async def run(self, on_state_change: Optional[StateObserver] = None) -> None:
        """
        Monitors the device until shutdown() or cancellation.

        on_state_change, when given, is called (or awaited) once per applied
        fragment, serialized on the consumer task. Raises ReconnectLimitExceeded
        when a configured reconnect limit runs out.
        """
        if self._started:
            raise RuntimeError("SubscriptionEngine.run() can only be called once")
        self._started = True

        self._consumer_task = asyncio.create_task(self._consume(on_state_change), name="engine-consumer")
        supervisor_task = self._supervisor.start()
        try:
            await asyncio.wait({supervisor_task})
        except asyncio.CancelledError:
            logger.info("Engine run cancelled, shutting down...")
            await self.shutdown()
            raise
        finally:
            self._queue.close()
            await asyncio.wait({self._consumer_task})
            if not self._consumer_task.cancelled() and self._consumer_task.exception() is not None:
                logger.error(f"Consumer for {self.params.device_id} crashed: {self._consumer_task.exception()}")

        # Surfaces ReconnectLimitExceeded (or an unexpected supervisor crash)
        supervisor_task.result()

    async def shutdown(self) -> None:
        """
        Stops the supervisor, closes the queue and returns once the consumer
        has drained every buffered event and exited. Idempotent.
        """
        await self._supervisor.stop()
        self._queue.close()
        if self._consumer_task is not None and not self._consumer_task.done():
            await asyncio.wait({self._consumer_task})
        logger.info(f"Engine for {self.params.device_id} shut down")

    def request_shutdown(self) -> None:
        """Thread-safe, non-blocking shutdown request (e.g. from a signal handler)."""
        self._supervisor.request_stop()

    def snapshot(self) -> DeviceState:
        """Copy of the current device state. Never a live reference."""
        return self._state.model_copy(deep=True)

    @property
    def session_state(self) -> SessionState:
        return self._supervisor.state

    @property
    def stats(self) -> EngineStats:
        return EngineStats(
            fragments_applied=self._fragments_applied,
            decode_failures=self._decode_failures,
            event_failures=self._event_failures,
            dropped_events=self._queue.dropped,
            reconnects=self._supervisor.reconnects,
            connection_losses=self._supervisor.connection_losses,
        )

    # --- consumer --------------------------------------------------------

    async def _consume(self, on_state_change: Optional[StateObserver]) -> None:
        async for event in self._queue:
            try:
                await self._handle(event, on_state_change)
            except Exception as e:
                # One bad event must not end the loop
                self._event_failures += 1
                logger.error(f"Failed to process {event.kind} event from {self.params.device_id}: {e}", exc_info=True)
        logger.debug("Consumer loop exited")

    async def _handle(self, event: InboundEvent, on_state_change: Optional[StateObserver]) -> None:
        if isinstance(event, RawStatusFragment):
            if self._reduce(event):
                await self._notify(on_state_change)
        elif isinstance(event, ConnectionLost):
            logger.info(f"Connection lost: {event.reason}")
        elif isinstance(event, ConnectionEstablished):
            logger.info(f"Receiving reports from {self.params.device_id}")

    def _reduce(self, event: RawStatusFragment) -> bool:
        try:
            fragment = decode(event.payload)
        except DecodeError as e:
            self._decode_failures += 1
            logger.warning(f"Discarding report from {self.params.device_id}: {e}. Raw: {preview(event.payload)}")
            return False

        self._state = reducer.apply(self._state, fragment, received_at=event.received_at)
        self._fragments_applied += 1
        return True

    async def _notify(self, on_state_change: Optional[StateObserver]) -> None:
        if on_state_change is None:
            return
        try:
            result = on_state_change(self.snapshot())
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"State observer failed: {e}", exc_info=True)
