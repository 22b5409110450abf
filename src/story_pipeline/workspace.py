"""The .pipeline/ directory and per-unit working directories.

PipelineHome owns the layout; LocalWorkspaceManager hands out one
exclusively owned directory per unit of work.
"""

import json
import os
import shutil
from datetime import datetime
from pathlib import Path

from rich.console import Console

from .errors import WorkspaceExistsFault, WorkspaceInUseFault
from .models import WorkspaceHandle


console = Console()

OWNER_MARKER = ".pipeline-owner"


class PipelineHome:
    """Manages the .pipeline/ directory structure.

    Directory structure:
        .pipeline/
        ├── config.json             # Optional config overrides
        ├── state/                  # Checkpoints: <run_id>.json + <run_id>.md
        ├── escalations/            # esc-<uuid>.json, one per record
        ├── workspaces/             # One directory per unit in flight
        ├── stop-requested/         # Stop files, one per unit
        ├── ledger.json             # unit id -> status
        └── progress.txt            # Append-only run log
    """

    DIRNAME = ".pipeline"

    def __init__(self, project_path: Path):
        self.project_path = Path(project_path).resolve()
        self.root = self.project_path / self.DIRNAME
        self.state_dir = self.root / "state"
        self.escalations_dir = self.root / "escalations"
        self.workspaces_dir = self.root / "workspaces"
        self.stop_dir = self.root / "stop-requested"

        self.config_file = self.root / "config.json"
        self.ledger_file = self.root / "ledger.json"
        self.progress_file = self.root / "progress.txt"

    def ensure_structure(self) -> None:
        """Create the .pipeline/ directory structure if it doesn't exist."""
        for directory in (self.root, self.state_dir, self.escalations_dir, self.workspaces_dir, self.stop_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        return self.root.is_dir()


class LocalWorkspaceManager:
    """Creates per-unit directories under a root.

    Ownership is recorded in a marker file created with O_EXCL, so two
    processes racing for the same directory cannot both win.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, unit_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "._-" else "-" for c in unit_id).strip("-.")
        if not safe:
            raise ValueError(f"Cannot derive a workspace name from unit id {unit_id!r}")
        return self.root / safe

    @staticmethod
    def _read_owner(marker: Path) -> dict:
        try:
            return json.loads(marker.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            return {}

    async def create(self, unit_id: str) -> WorkspaceHandle:
        path = self.path_for(unit_id)
        path.mkdir(parents=True, exist_ok=True)
        marker = path / OWNER_MARKER
        created_at = datetime.now()

        try:
            fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            owner = self._read_owner(marker)
            if owner.get("unit_id") == unit_id:
                handle = WorkspaceHandle(
                    unit_id=unit_id,
                    path=str(path),
                    created_at=owner.get("created_at", created_at),
                )
                raise WorkspaceExistsFault(handle.model_dump(mode="json"))
            raise WorkspaceInUseFault(
                f"Workspace {path} is owned by {owner.get('unit_id', 'an unknown unit')}",
                {"path": str(path), "owner": owner.get("unit_id")},
            )

        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump({"unit_id": unit_id, "created_at": created_at.isoformat()}, handle)

        console.print(f"[dim]Created workspace {path}[/dim]")
        return WorkspaceHandle(unit_id=unit_id, path=str(path), created_at=created_at)

    async def destroy(self, handle: WorkspaceHandle) -> None:
        path = Path(handle.path)
        if not path.exists():
            return
        owner = self._read_owner(path / OWNER_MARKER)
        if owner and owner.get("unit_id") != handle.unit_id:
            raise WorkspaceInUseFault(
                f"Refusing to destroy {path}: owned by {owner.get('unit_id')}",
                {"path": str(path), "owner": owner.get("unit_id")},
            )
        shutil.rmtree(path)
        console.print(f"[dim]Destroyed workspace {path}[/dim]")
