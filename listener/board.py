"""Console session board for the tcp-speedtest listener."""

from datetime import datetime

from colorama import Fore, Style
from colorama import init as colorama_init

from common.protocol import Phase
from listener.registry import SessionEntry

colorama_init(autoreset=True)

PHASE_COLORS = {
    Phase.IDLE: Fore.GREEN,
    Phase.UPLOAD_IN_FLIGHT: Fore.YELLOW,
    Phase.AWAIT_DOWNLOAD_SIGNAL: Fore.YELLOW,
    Phase.DOWNLOAD_IN_FLIGHT: Fore.MAGENTA,
    Phase.AWAIT_DOWNLOAD_ACK: Fore.MAGENTA,
    Phase.COMPLETED: Fore.CYAN,
}


def format_entry(entry: SessionEntry, now: datetime | None = None) -> str:
    """One board line for a session (without color codes)."""
    now = now or datetime.now()
    connected_s = int((now - entry.connected_at).total_seconds())
    line = f"{entry.session_id} ({entry.phase.value}) - connected {connected_s}s"
    if entry.iteration_target:
        line += f", iteration {entry.iteration_index}/{entry.iteration_target}"
    if entry.tests_completed:
        line += f", {entry.tests_completed} tests completed"
    return line


def print_board(entries: list[SessionEntry]) -> None:
    """Print the list of connected sessions."""
    print(f"{Style.BRIGHT}Connected sessions:")
    if not entries:
        print(f"{Fore.WHITE}   (none)")
        return
    now = datetime.now()
    for entry in entries:
        color = PHASE_COLORS.get(entry.phase, Fore.RESET)
        print(f"{color}   {format_entry(entry, now)}")
