from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .. import console
from .context import PhaseContext
from .state import InstallationState, UndoAction

logger = logging.getLogger(__name__)


@dataclass
class RollbackReport:
    undone: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failed


def allow_database_drop(ctx: PhaseContext) -> bool:
    """Decide once per run whether rollback may drop the database.

    Interactive runs ask. Unattended runs drop unless --keep-database was given.
    """
    if ctx.drop_database_decision is not None:
        return ctx.drop_database_decision
    name = ctx.config.db_name
    if ctx.options.keep_database:
        decision = False
    elif ctx.interactive:
        decision = ctx.prompter.confirm(
            f"Drop database '{name}' and role '{ctx.config.db_user}'? All data in it will be lost.",
            default=True,
        )
    else:
        decision = True
    if not decision:
        console.warn(f"Keeping database '{name}'. Drop it manually if it is no longer needed.")
    ctx.drop_database_decision = decision
    return decision


def run_actions(actions: list[UndoAction], report: RollbackReport) -> None:
    for undo in reversed(actions):
        try:
            undo.action()
        except Exception as exc:
            if undo.ignore_errors:
                logger.debug("ignored rollback failure in %s: %s", undo.label, exc)
                report.undone.append(undo.label)
                continue
            console.warn(f"Rollback step failed ({undo.label}): {exc}")
            report.failed.append(undo.label)
            continue
        report.undone.append(undo.label)
        console.ok(f"Rolled back: {undo.label}")


def rollback(state: InstallationState) -> RollbackReport:
    """Undo completed phases newest first. Best effort; never raises."""
    report = RollbackReport()
    if not state.undo_stack:
        console.info("Nothing to roll back.")
        return report
    console.rule("Rollback")
    while state.undo_stack:
        entry = state.undo_stack.pop()
        suffix = " (partial)" if entry.partial else ""
        console.info(f"Rolling back phase: {entry.phase}{suffix}")
        run_actions(entry.actions, report)
    if report.failed:
        console.warn(f"Rollback finished with {len(report.failed)} failed step(s); manual cleanup may be needed.")
    else:
        console.ok("Rollback complete.")
    return report
