from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from pdev_core.mode import InstallMode

PHASE_DATABASE = "database"
PHASE_FILES = "files"
PHASE_DEPENDENCIES = "dependencies"
PHASE_PROXY = "proxy"
PHASE_PROCESS = "process"
PHASE_CLIENT = "client"

SKIPPED = "skipped"


@dataclass
class UndoAction:
    label: str
    action: Callable[[], None]
    ignore_errors: bool = False


@dataclass
class UndoEntry:
    phase: str
    actions: list[UndoAction] = field(default_factory=list)
    partial: bool = False  # left behind by a phase that failed midway


@dataclass
class PhaseRecord:
    name: str
    status: str  # ok | skipped | failed | dry-run
    detail: str = ""


@dataclass
class InstallationState:
    """In-memory record of one run; nothing here is persisted."""

    mode: InstallMode
    install_dir: str
    dry_run: bool = False
    undo_stack: list[UndoEntry] = field(default_factory=list)
    trace: list[PhaseRecord] = field(default_factory=list)

    def commit(self, phase: str, actions: list[UndoAction]) -> None:
        """Record a mutating phase as complete; called only after it verified itself."""
        self.undo_stack.append(UndoEntry(phase=phase, actions=list(actions)))

    def stash_partial(self, phase: str, actions: list[UndoAction]) -> None:
        """Keep the undo steps of a failed phase so rollback can revert its partial work."""
        self.undo_stack.append(UndoEntry(phase=phase, actions=list(actions), partial=True))

    def is_complete(self, phase: str) -> bool:
        return any(entry.phase == phase and not entry.partial for entry in self.undo_stack)

    def record(self, name: str, status: str, detail: str = "") -> None:
        self.trace.append(PhaseRecord(name=name, status=status, detail=detail))

    @property
    def completed_phases(self) -> list[str]:
        return [entry.phase for entry in self.undo_stack if not entry.partial]

    @property
    def database_created(self) -> bool:
        return self.is_complete(PHASE_DATABASE)

    @property
    def files_copied(self) -> bool:
        return self.is_complete(PHASE_FILES)

    @property
    def dependencies_installed(self) -> bool:
        return self.is_complete(PHASE_DEPENDENCIES)

    @property
    def proxy_configured(self) -> bool:
        return self.is_complete(PHASE_PROXY)

    @property
    def process_started(self) -> bool:
        return self.is_complete(PHASE_PROCESS)

    @property
    def client_installed(self) -> bool:
        return self.is_complete(PHASE_CLIENT)
