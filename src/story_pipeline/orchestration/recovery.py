"""Run cancellation and shutdown handling.

Handles:
- Signal handlers for graceful shutdown (SIGINT, SIGTERM)
- File-based stop requests, one file per unit, so another process (the
  CLI's cancel command) can stop a run it does not own

Cancellation is only honoured between steps; a step in flight always runs
to its outcome first.
"""

import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.console import Console


console = Console()


class RunCancellation:
    """Tracks which runs have been asked to stop.

    Args:
        stop_dir: Directory holding stop request files (.pipeline/stop-requested)
    """

    def __init__(self, stop_dir: Optional[Path] = None):
        self.stop_dir = Path(stop_dir) if stop_dir is not None else None
        self._requested: dict[str, str] = {}
        self._shutdown_requested = False

    def setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown.

        On Windows, only SIGINT (Ctrl+C) is supported.
        On Unix, both SIGINT and SIGTERM are handled.
        """
        signal.signal(signal.SIGINT, self._handle_shutdown_signal)

        # SIGTERM is not available on Windows
        if sys.platform != "win32":
            signal.signal(signal.SIGTERM, self._handle_shutdown_signal)

    def _handle_shutdown_signal(self, signum: int, frame: Any) -> None:
        signal_name = signal.Signals(signum).name
        console.print(
            f"\n[yellow]Shutdown signal received ({signal_name}) - "
            "active runs will stop after their current step...[/yellow]"
        )
        self._shutdown_requested = True

    def _stop_file(self, unit_id: str) -> Optional[Path]:
        if self.stop_dir is None:
            return None
        safe = "".join(c if c.isalnum() or c in "._-" else "-" for c in unit_id)
        return self.stop_dir / safe

    def request(self, unit_id: str, reason: str = "User requested stop") -> Optional[Path]:
        """Ask a run to stop at its next step boundary.

        Returns:
            Path to the stop file, if a stop directory is configured
        """
        self._requested[unit_id] = reason
        stop_file = self._stop_file(unit_id)
        if stop_file is not None:
            stop_file.parent.mkdir(parents=True, exist_ok=True)
            stop_file.write_text(f"{datetime.now().isoformat()}\n{reason}", encoding="utf-8")
        return stop_file

    def request_all(self, reason: str = "Shutdown requested") -> None:
        self._shutdown_requested = True
        console.print(f"[yellow]{reason}[/yellow]")

    def is_requested(self, unit_id: str) -> bool:
        """Check the in-memory flags, then the unit's stop file."""
        if self._shutdown_requested or unit_id in self._requested:
            return True

        stop_file = self._stop_file(unit_id)
        if stop_file is not None and stop_file.exists():
            console.print(f"[yellow]Stop request file detected for {unit_id}[/yellow]")
            self._requested[unit_id] = self.reason(unit_id)
            return True

        return False

    def reason(self, unit_id: str) -> str:
        if unit_id in self._requested:
            return self._requested[unit_id]
        if self._shutdown_requested:
            return "Shutdown requested"
        stop_file = self._stop_file(unit_id)
        if stop_file is not None and stop_file.exists():
            lines = stop_file.read_text(encoding="utf-8", errors="replace").splitlines()
            if len(lines) > 1 and lines[1].strip():
                return lines[1].strip()
        return "Stop requested"

    def clear(self, unit_id: str) -> None:
        """Forget a stop request once the run has stopped."""
        self._requested.pop(unit_id, None)
        stop_file = self._stop_file(unit_id)
        if stop_file is not None and stop_file.exists():
            try:
                stop_file.unlink()
            except FileNotFoundError:
                pass  # File may have been removed already
