import asyncio
import re
import time
from typing import Callable, List, Optional

from rich.console import Console
from rich.markup import escape

from pulseprint.schemas.connection import SessionState, SessionStatus
from pulseprint.schemas.status import DeviceState, PrintState

STATE_EMOJI = {
    PrintState.IDLE: "💤",
    PrintState.PREPARING: "🔧",
    PrintState.PRINTING: "🖨️",
    PrintState.PAUSED: "⏸️",
    PrintState.FINISHED: "✅",
    PrintState.FAILED: "❌",
    PrintState.UNKNOWN: "❓",
}

STATE_STYLE = {
    PrintState.PRINTING: "cyan",
    PrintState.FINISHED: "green",
    PrintState.FAILED: "bold red",
    PrintState.PAUSED: "yellow",
}

SIGNAL_PATTERN = re.compile(r"(-?\d+)")


def format_remaining(minutes: Optional[float]) -> Optional[str]:
    """1h 05m style. None when unknown."""
    if minutes is None:
        return None
    total = max(int(round(minutes)), 0)
    hours, mins = divmod(total, 60)
    if hours:
        return f"{hours}h {mins:02d}m"
    return f"{mins}m"


def parse_signal(wifi_signal: Optional[str]) -> Optional[int]:
    """'-45dBm' -> -45."""
    if not wifi_signal:
        return None
    match = SIGNAL_PATTERN.search(wifi_signal)
    return int(match.group(1)) if match else None


def _temperature(label: str, current: Optional[float], target: Optional[float]) -> Optional[str]:
    if current is None:
        return None
    text = f"{label} {current:.0f}°C"
    if target:
        text = f"{text}/{target:.0f}°C"
    return text


def format_status_line(state: DeviceState, now: Optional[float] = None) -> str:
    """One rich-markup line summarising the device state."""
    if not state.has_data:
        return "[dim]⏳ Waiting for printer status...[/dim]"

    status = state.status
    style = STATE_STYLE.get(status, "white")
    parts: List[str] = [f"{STATE_EMOJI[status]} [{style}]{status.value}[/{style}]"]

    if state.progress is not None:
        parts.append(f"{state.progress:.0f}%")
    remaining = format_remaining(state.remaining_time)
    if remaining:
        parts.append(f"⏱️ {remaining} left")
    if state.layer is not None:
        total = state.total_layers if state.total_layers is not None else "?"
        parts.append(f"layer {state.layer}/{total}")

    for temp in (
        _temperature("🔥 nozzle", state.nozzle_temp, state.nozzle_target_temp),
        _temperature("🛏️ bed", state.bed_temp, state.bed_target_temp),
    ):
        if temp:
            parts.append(temp)

    signal = parse_signal(state.wifi_signal)
    if signal is not None:
        parts.append(f"📶 {signal}dBm")
    if state.fail_reason:
        parts.append(f"[red]reason: {escape(state.fail_reason)}[/red]")
    if state.is_stale_at(now if now is not None else time.time()):
        parts.append("[yellow](stale)[/yellow]")

    return " | ".join(parts)


def format_session_line(session: SessionState, device_id: str) -> str:
    device_id = escape(device_id)
    if session.status == SessionStatus.CONNECTING:
        return f"[dim]🔌 Connecting to {device_id}...[/dim]"
    if session.status == SessionStatus.CONNECTED:
        return f"[green]📡 Connected to {device_id}[/green]"
    if session.status == SessionStatus.RECONNECTING:
        return (
            f"[yellow]🔄 Reconnecting to {device_id} in {session.next_delay:.1f}s "
            f"(attempt {session.attempt})[/yellow]"
        )
    if session.status == SessionStatus.SHUTTING_DOWN:
        return "[dim]🛑 Shutting down...[/dim]"
    return f"[dim]Disconnected from {device_id}[/dim]"


class StatusRenderer:
    """Prints state and session transitions to a rich console."""

    def __init__(self, device_id: str, console: Optional[Console] = None):
        self.device_id = device_id
        self.console = console or Console()
        self._last_line: Optional[str] = None

    def render_state(self, state: DeviceState) -> None:
        line = format_status_line(state)
        if line == self._last_line:
            return
        self._last_line = line
        self.console.print(line)

    def render_session(self, session: SessionState) -> None:
        self.console.print(format_session_line(session, self.device_id))

    async def refresh(self, snapshot: Callable[[], DeviceState], interval: float) -> None:
        """Re-renders the latest state every interval seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.render_state(snapshot())
