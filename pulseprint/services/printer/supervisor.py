import asyncio
import json
import logging
import random
import time
from typing import Callable, Optional

from pulseprint.core.exceptions import QueueClosedError, ReconnectLimitExceeded, TransportError
from pulseprint.schemas.connection import ConnectionParams, EngineConfig, SessionState, SessionStatus
from pulseprint.schemas.events import ConnectionEstablished, ConnectionLost, InboundEvent, RawStatusFragment
from pulseprint.services.printer.event_queue import EventQueue
from pulseprint.services.printer.transport import MQTT_USERNAME, AiomqttTransport, Transport

logger = logging.getLogger("ConnectionSupervisor")

# Asks the printer for a complete report instead of waiting for the next delta
PUSHALL_REQUEST = {"pushing": {"sequence_id": "0", "command": "pushall"}}

SessionObserver = Callable[[SessionState], None]


class Backoff:
    """
    Exponential backoff with bounded jitter.

    delay(n) = min(cap, base * 2^(n-1) + U(0, jitter * base * 2^(n-1)))
    With jitter < 1 the sequence never decreases.
    """
    MAX_EXPONENT = 32

    def __init__(self, base: float, cap: float, jitter: float = 0.1, rng: Optional[random.Random] = None):
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.base = base
        self.cap = cap
        self.jitter = jitter
        self._rng = rng or random.Random()

    def delay(self, attempt: int) -> float:
        exponent = min(max(attempt - 1, 0), self.MAX_EXPONENT)
        raw = min(self.cap, self.base * (2 ** exponent))
        return min(self.cap, raw + self._rng.uniform(0, raw * self.jitter))


class ConnectionSupervisor:
    """
    Owns the transport session for one device and feeds the event queue.

    DISCONNECTED -> CONNECTING -> CONNECTED, and on any transport failure
    RECONNECTING(attempt, next_delay) -> CONNECTING again. attempt resets to 0
    once a session is connected and subscribed. Attempts are unbounded unless
    max_reconnect_attempts is set, in which case running out raises
    ReconnectLimitExceeded from the supervisor task.
    """

    def __init__(
        self,
        params: ConnectionParams,
        queue: EventQueue[InboundEvent],
        transport: Optional[Transport] = None,
        config: Optional[EngineConfig] = None,
        on_session_change: Optional[SessionObserver] = None,
        rng: Optional[random.Random] = None,
    ):
        self.params = params
        self.config = config or EngineConfig()
        self._queue = queue
        self._transport = transport or AiomqttTransport(
            keepalive=self.config.keep_alive_interval,
            timeout=self.config.connect_timeout,
            identifier=f"pulseprint-{params.device_id}",
        )
        self._on_session_change = on_session_change
        self._backoff = Backoff(self.config.base_backoff, self.config.max_backoff, self.config.backoff_jitter, rng)

        self.state = SessionState()
        self._attempt = 0
        self._stop = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None

        # Observability counters
        self.reconnects = 0
        self.connection_losses = 0

    # --- lifecycle -------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Schedules the supervisor loop on the running loop and returns its task."""
        if self._task is not None:
            return self._task
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self.run(), name=f"supervisor-{self.params.device_id}")
        return self._task

    async def wait(self) -> None:
        """Waits for the loop to end. Re-raises ReconnectLimitExceeded."""
        if self._task is not None:
            await self._task

    def request_stop(self) -> None:
        """Non-blocking stop request. Safe to call from any thread."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is None or running is self._loop:
            self._stop.set()
        else:
            self._loop.call_soon_threadsafe(self._stop.set)

    async def stop(self) -> None:
        """
        Requests shutdown and waits until the session is closed, at most
        shutdown_timeout seconds before the task is cancelled outright.
        Never raises the loop's own failure; use wait() for that.
        """
        self.request_stop()
        task = self._task
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=self.config.shutdown_timeout)
        if not done:
            logger.warning(f"Supervisor for {self.params.device_id} did not stop in time, cancelling")
            task.cancel()
            await asyncio.wait({task})

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    # --- main loop -------------------------------------------------------

    async def run(self) -> None:
        topic = self.params.report_topic()
        logger.info(f"Supervising {self.params.host}:{self.params.port}, topic {topic}")
        self._attempt = 0
        try:
            while not self._stop.is_set():
                self._set_state(SessionState(status=SessionStatus.CONNECTING, attempt=self._attempt))
                reason = await self._session_or_stop()
                if reason is None:
                    break

                self._attempt += 1
                limit = self.config.max_reconnect_attempts
                if limit is not None and self._attempt > limit:
                    logger.error(f"Reconnect limit reached for {self.params.device_id} after {limit} attempts: {reason}")
                    raise ReconnectLimitExceeded(limit, reason)

                delay = self._backoff.delay(self._attempt)
                self.reconnects += 1
                self._set_state(SessionState.reconnecting(self._attempt, delay))
                logger.warning(f"{reason}. Reconnecting to {self.params.host} in {delay:.1f}s (attempt {self._attempt})...")

                if await self._wait_for_stop(delay):
                    self._set_state(SessionState(status=SessionStatus.SHUTTING_DOWN))
                    break
        finally:
            self._set_state(SessionState(status=SessionStatus.DISCONNECTED))
            logger.info(f"Supervisor for {self.params.device_id} stopped")

    async def _wait_for_stop(self, delay: float) -> bool:
        """Sleeps for delay unless stop is requested first. True when stopped."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _session_or_stop(self) -> Optional[str]:
        """
        Runs one session until it fails or stop is requested.
        Returns the failure reason, or None when stopped.
        """
        session_task = asyncio.create_task(self._run_session())
        stop_task = asyncio.create_task(self._stop.wait())
        try:
            done, _ = await asyncio.wait({session_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if session_task in done:
                return session_task.result()
            self._set_state(SessionState(status=SessionStatus.SHUTTING_DOWN))
            return None
        finally:
            for task in (session_task, stop_task):
                if not task.done():
                    task.cancel()
            # Let the session close its transport before moving on
            await asyncio.wait({session_task, stop_task})

    async def _run_session(self) -> str:
        session = None
        established = False
        try:
            session = await self._open_session()
            stream = await self._transport.subscribe(session, self.params.report_topic())
            if self.config.request_full_report:
                await self._transport.publish(session, self.params.request_topic(), json.dumps(PUSHALL_REQUEST))

            self._attempt = 0
            established = True
            self._set_state(SessionState(status=SessionStatus.CONNECTED))
            logger.info(f"Connected to {self.params.device_id} and subscribed to {self.params.report_topic()}")
            self._emit(ConnectionEstablished())

            async for payload in stream:
                self._emit(RawStatusFragment(payload=payload, received_at=time.time()))
            raise TransportError("Message stream ended")

        except TransportError as e:
            reason = str(e)
            if established:
                self.connection_losses += 1
                logger.warning(f"MQTT connection lost for {self.params.device_id}: {reason}")
                self._emit(ConnectionLost(reason=reason))
            else:
                logger.warning(f"MQTT connection to {self.params.host} failed: {reason}")
            return reason

        finally:
            if session is not None:
                await self._close_session(session)

    async def _open_session(self):
        async def _connect_and_authenticate():
            opened = await self._transport.connect(self.params.host, self.params.port, self.params.tls_required)
            try:
                await self._transport.authenticate(opened, MQTT_USERNAME, self.params.access_code)
            except BaseException:
                await self._close_session(opened)
                raise
            return opened

        try:
            return await asyncio.wait_for(_connect_and_authenticate(), timeout=self.config.connect_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Connect timed out after {self.config.connect_timeout:.1f}s") from e

    async def _close_session(self, session) -> None:
        try:
            await self._transport.close(session)
        except TransportError as e:
            logger.debug(f"Error while closing session: {e}")

    # --- helpers ---------------------------------------------------------

    def _emit(self, event: InboundEvent) -> None:
        try:
            self._queue.push(event)
        except QueueClosedError:
            # Consumer side is gone, nothing more to deliver
            logger.debug("Event queue closed, stopping supervisor")
            self._stop.set()

    def _set_state(self, state: SessionState) -> None:
        if state == self.state:
            return
        self.state = state
        logger.debug(f"Session state -> {state}")
        if self._on_session_change is None:
            return
        try:
            self._on_session_change(state)
        except Exception as e:
            logger.error(f"Session observer failed: {e}", exc_info=True)
