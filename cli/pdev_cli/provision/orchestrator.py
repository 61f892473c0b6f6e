from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from pdev_core.credentials import Credentials, generate_credentials
from pdev_core.errors import InstallError, PhaseError
from pdev_core.mode import InstallMode

from .. import console
from ..config import InstallerConfig, load_config
from ..runner import HostRunner
from . import database, phases, verify
from .context import InstallLayout, InstallOptions, PhaseContext, Prompter, TargetConfig
from .rollback import RollbackReport, rollback
from .state import (
    PHASE_CLIENT,
    PHASE_DATABASE,
    PHASE_DEPENDENCIES,
    PHASE_FILES,
    PHASE_PROCESS,
    PHASE_PROXY,
    SKIPPED,
    InstallationState,
    PhaseRecord,
    UndoAction,
)

logger = logging.getLogger(__name__)

PHASE_DETECT = "detect-existing"
PHASE_PREREQUISITES = "prerequisites"
PHASE_VERIFY = "verify"
PHASE_AUDIT = "audit"


@dataclass(frozen=True)
class Phase:
    name: str
    run: Callable[[PhaseContext, list[UndoAction]], str]
    mutating: bool = False


@dataclass
class InstallResult:
    success: bool
    state: InstallationState
    credentials: Credentials | None = None
    failed_phase: str | None = None
    error: InstallError | None = None
    rollback: RollbackReport | None = None

    @property
    def trace(self) -> list[PhaseRecord]:
        return self.state.trace


def run_verify(ctx: PhaseContext, undo: list[UndoAction]) -> str:
    if ctx.dry_run:
        console.info("[dry-run] post-install verification would check the process, port and endpoints")
        return SKIPPED
    report = verify.verify(ctx)
    report.print()
    if not report.passed:
        names = ", ".join(c.name for c in report.hard_failures)
        raise PhaseError(PHASE_VERIFY, f"Hard-gate check failed: {names}")
    return f"{report.count(verify.PASS)} passed, {report.count(verify.WARN)} warnings"


def run_audit(ctx: PhaseContext, undo: list[UndoAction]) -> str:
    if ctx.dry_run:
        console.info("[dry-run] security audit would inspect permissions and proxy authentication")
        return SKIPPED
    report = verify.audit(ctx)
    report.print()
    return f"{report.count(verify.FAIL)} finding(s), {report.count(verify.WARN)} warning(s)"


def full_stack_phases() -> list[Phase]:
    return [
        Phase(PHASE_DETECT, phases.detect_existing),
        Phase(PHASE_PREREQUISITES, phases.check_prerequisites),
        Phase(PHASE_DATABASE, database.provision_database, mutating=True),
        Phase(PHASE_FILES, phases.install_files, mutating=True),
        Phase(PHASE_DEPENDENCIES, phases.install_dependencies, mutating=True),
        Phase(PHASE_PROXY, phases.configure_proxy, mutating=True),
        Phase(PHASE_PROCESS, phases.start_process, mutating=True),
        Phase(PHASE_VERIFY, run_verify),
        Phase(PHASE_AUDIT, run_audit),
    ]


def client_phases() -> list[Phase]:
    return [
        Phase(PHASE_DETECT, phases.detect_existing),
        Phase(PHASE_PREREQUISITES, phases.check_prerequisites),
        Phase(PHASE_CLIENT, phases.install_client, mutating=True),
        Phase(PHASE_VERIFY, run_verify),
        Phase(PHASE_AUDIT, run_audit),
    ]


def build_context(
        mode: InstallMode,
        target: TargetConfig,
        options: InstallOptions,
        *,
        config: InstallerConfig | None = None,
        install_dir: str | None = None,
        runner: HostRunner | None = None,
        prompter: Prompter | None = None,
        credentials: Credentials | None = None,
) -> PhaseContext:
    cfg = config or load_config()
    layout = InstallLayout.from_config(cfg, install_dir=install_dir)
    if mode is InstallMode.SOURCE and credentials is None:
        credentials = generate_credentials()
    return PhaseContext(
        mode=mode,
        target=target,
        options=options,
        config=cfg,
        layout=layout,
        runner=runner or HostRunner(dry_run=options.dry_run),
        state=InstallationState(mode=mode, install_dir=str(layout.install_dir), dry_run=options.dry_run),
        prompter=prompter or Prompter(),
        credentials=credentials,
    )


def execute(ctx: PhaseContext, plan: list[Phase] | None = None) -> InstallResult:
    """Run every phase in order; on failure roll back what completed."""
    if plan is None:
        plan = full_stack_phases() if ctx.mode is InstallMode.SOURCE else client_phases()
    state = ctx.state
    if ctx.dry_run:
        console.warn("Dry run: no changes will be made.")

    for phase in plan:
        try:
            _run_phase(ctx, phase)
        except InstallError as exc:
            state.record(phase.name, "failed", str(exc))
            console.err(f"Phase '{phase.name}' failed: {exc}")
            logger.debug("phase %s failed", phase.name, exc_info=True)
            return InstallResult(
                success=False,
                state=state,
                credentials=ctx.credentials,
                failed_phase=phase.name,
                error=exc,
                rollback=_offer_rollback(ctx),
            )

    if ctx.mode is InstallMode.SOURCE:
        try:
            phases.write_client_config(ctx)
        except OSError as exc:
            console.warn(f"Could not write client config {ctx.layout.client_config}: {exc}")
    return InstallResult(success=True, state=state, credentials=ctx.credentials)


def _run_phase(ctx: PhaseContext, phase: Phase) -> None:
    console.rule(phase.name)
    undo: list[UndoAction] = []
    try:
        detail = phase.run(ctx, undo)
    except Exception as exc:
        if undo:
            ctx.state.stash_partial(phase.name, undo)
        if isinstance(exc, InstallError):
            raise
        raise PhaseError(phase.name, f"{type(exc).__name__}: {exc}") from exc

    if detail == SKIPPED:
        ctx.state.record(phase.name, "skipped")
        return
    if phase.mutating and undo:
        ctx.state.commit(phase.name, undo)
    status = "dry-run" if ctx.dry_run and phase.mutating else "ok"
    ctx.state.record(phase.name, status, detail or "")


def _offer_rollback(ctx: PhaseContext) -> RollbackReport | None:
    if not ctx.state.undo_stack:
        console.info("No changes were made; nothing to roll back.")
        return None
    if ctx.interactive and not ctx.prompter.confirm("Roll back the changes made so far?", default=True):
        console.warn("Rollback skipped; the host is left partially installed.")
        return None
    return rollback(ctx.state)
