from __future__ import annotations

import json
import subprocess
from typing import Callable

from pdev_core.errors import PhaseError

from .. import console
from ..runner import as_user
from .context import PhaseContext
from .rollback import allow_database_drop
from .state import PHASE_DATABASE, SKIPPED, UndoAction
from .templates import timestamp

DB_SUPERUSER = "postgres"


def psql(*args: str, db: str | None = None) -> list[str]:
    argv = ["psql", "-X", "-q", "-v", "ON_ERROR_STOP=1"]
    if db:
        argv += ["-d", db]
    return as_user(DB_SUPERUSER, [*argv, *args])


def query_scalar(ctx: PhaseContext, sql: str, *, db: str | None = None) -> str | None:
    res = ctx.runner.probe(psql("-tAc", sql, db=db))
    if res.returncode != 0:
        return None
    return (res.stdout or "").strip()


def database_exists(ctx: PhaseContext) -> bool:
    return query_scalar(ctx, f"SELECT 1 FROM pg_database WHERE datname = '{ctx.config.db_name}'") == "1"


def role_exists(ctx: PhaseContext) -> bool:
    return query_scalar(ctx, f"SELECT 1 FROM pg_roles WHERE rolname = '{ctx.config.db_user}'") == "1"


def migration_count(ctx: PhaseContext) -> int:
    raw = query_scalar(ctx, "SELECT COUNT(*) FROM pdev_migrations", db=ctx.config.db_name)
    try:
        return int(raw or 0)
    except ValueError:
        return 0


def _check(res: subprocess.CompletedProcess, message: str) -> None:
    if res.returncode != 0:
        detail = (res.stderr or "").strip().splitlines()
        raise PhaseError(PHASE_DATABASE, f"{message}: {detail[-1] if detail else 'exit ' + str(res.returncode)}")


def drop_database(ctx: PhaseContext) -> None:
    _check(ctx.runner.run(psql("-c", f"DROP DATABASE IF EXISTS {ctx.config.db_name}")), "Failed to drop database")


def drop_role(ctx: PhaseContext) -> None:
    _check(ctx.runner.run(psql("-c", f"DROP ROLE IF EXISTS {ctx.config.db_user}")), "Failed to drop role")


def undo_database(ctx: PhaseContext) -> None:
    drop_database(ctx)
    marker = ctx.layout.migration_marker
    if marker.exists():
        # append-only: record that the applied set is gone instead of editing history
        ctx.runner.append_file(marker, json.dumps({"rolled_back_at": timestamp(), "database": ctx.config.db_name}))


def _guarded(ctx: PhaseContext, fn: Callable[[PhaseContext], None]) -> Callable[[], None]:
    def action() -> None:
        if allow_database_drop(ctx):
            fn(ctx)
    return action


def sync_role_password(ctx: PhaseContext) -> bool:
    """Create the application role or reset its password. Returns True when the role is new."""
    creds = ctx.credentials
    if creds is None:
        raise PhaseError(PHASE_DATABASE, "Credentials were not generated.")
    user = ctx.config.db_user
    had_role = role_exists(ctx)
    verb = "ALTER" if had_role else "CREATE"
    res = ctx.runner.run_input(
        psql(),
        f"{verb} ROLE {user} WITH LOGIN NOSUPERUSER NOCREATEDB NOCREATEROLE PASSWORD '{creds.db_password}';\n",
        log_label=f"{verb.lower()} role {user}",
    )
    if res.returncode != 0:
        # psql may echo the statement, which carries the password
        raise PhaseError(PHASE_DATABASE, f"Failed to {verb.lower()} role {user} (see PostgreSQL logs).")
    return not had_role


def provision_database(ctx: PhaseContext, undo: list[UndoAction]) -> str:
    name, user = ctx.config.db_name, ctx.config.db_user
    if database_exists(ctx):
        recreate = ctx.force
        if not recreate and ctx.interactive:
            recreate = ctx.prompter.confirm(f"Database '{name}' already exists. Drop and recreate it?", default=False)
        if not recreate:
            # the new .env carries a fresh password; the kept role must accept it
            sync_role_password(ctx)
            console.ok(f"Database '{name}' already exists; leaving it in place.")
            return SKIPPED
        console.warn(f"Dropping existing database '{name}'.")
        drop_database(ctx)

    if sync_role_password(ctx):
        undo.append(UndoAction(f"drop role {user}", _guarded(ctx, drop_role)))

    _check(ctx.runner.run(psql("-c", f"CREATE DATABASE {name} OWNER {user}")), f"Failed to create database {name}")
    undo.append(UndoAction(f"drop database {name}", _guarded(ctx, undo_database)))
    console.ok(f"Database '{name}' created (owner {user}).")

    applied = apply_migrations(ctx)
    if not ctx.dry_run:
        count = migration_count(ctx)
        if count < len(applied):
            raise PhaseError(
                PHASE_DATABASE,
                f"Migration check failed: {count} recorded in pdev_migrations, expected at least {len(applied)}.",
            )
    ctx.runner.append_file(
        ctx.layout.migration_marker,
        json.dumps({"applied_at": timestamp(), "database": name, "migrations": applied}),
    )
    return f"{len(applied)} migration(s) applied"


def apply_migrations(ctx: PhaseContext) -> list[str]:
    files = sorted(ctx.layout.migrations_dir.glob("*.sql")) if ctx.layout.migrations_dir.is_dir() else []
    if not files:
        if ctx.dry_run:
            console.warn(f"No migrations found in {ctx.layout.migrations_dir}")
            return []
        raise PhaseError(PHASE_DATABASE, f"No migration files found in {ctx.layout.migrations_dir}")
    for path in files:
        res = ctx.runner.run(psql("-f", str(path), db=ctx.config.db_name), timeout=300)
        if res.returncode == 124:
            raise PhaseError(PHASE_DATABASE, f"Migration {path.name} timed out.", timed_out=True)
        _check(res, f"Migration {path.name} failed")
        console.ok(f"Migration applied: {path.name}")
    return [path.name for path in files]
