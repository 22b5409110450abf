"""File-backed status ledger.

Keeps the externally visible status of each unit in a single JSON object,
unit id -> {status, updated_at}. The ledger is informational: failing to
update it is logged and never fails a run.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console

from .fileio import atomic_write_text


console = Console()


class FileStatusLedger:
    """StatusLedger stored in a JSON file."""

    def __init__(self, ledger_file: Path):
        self.ledger_file = Path(ledger_file)

    def _load(self) -> dict[str, dict]:
        if not self.ledger_file.exists():
            return {}
        try:
            data = json.loads(self.ledger_file.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            console.print(f"[yellow]Warning: Could not read status ledger: {e}[/yellow]")
            return {}
        return data if isinstance(data, dict) else {}

    def update_status(self, unit_id: str, status: str) -> None:
        entries = self._load()
        entries[unit_id] = {"status": status, "updated_at": datetime.now().isoformat()}
        try:
            atomic_write_text(self.ledger_file, json.dumps(entries, indent=2, sort_keys=True))
        except OSError as e:
            console.print(f"[yellow]Warning: Could not update status ledger for {unit_id}: {e}[/yellow]")

    def get_status(self, unit_id: str) -> Optional[str]:
        entry = self._load().get(unit_id)
        return entry.get("status") if isinstance(entry, dict) else None

    def all_statuses(self) -> dict[str, str]:
        return {
            unit_id: entry.get("status", "unknown")
            for unit_id, entry in self._load().items()
            if isinstance(entry, dict)
        }
