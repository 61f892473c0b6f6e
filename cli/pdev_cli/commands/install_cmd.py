from __future__ import annotations

import typer
from rich.table import Table

from pdev_core.command import (
    DEFAULT_URL_PREFIX,
    parse_ip_list,
    parse_server_list,
    validate_domain,
    validate_source_url,
    validate_url_prefix,
)
from pdev_core.credentials import Credentials, generate_credentials
from pdev_core.errors import InvalidRequestError
from pdev_core.mode import InstallMode, select_mode

from .. import console
from ..config import load_config
from ..logging_ import default_log_file, setup_logging
from ..provision.context import InstallOptions, Prompter, TargetConfig
from ..provision.orchestrator import InstallResult, build_context, execute
from ..runner import HostRunner

EXIT_FAILED = 1
EXIT_USAGE = 2


def _usage_error(message: str) -> None:
    console.err(message)
    raise typer.Exit(code=EXIT_USAGE)


def _resolve_target(
        mode: InstallMode,
        *,
        domain: str | None,
        source_url: str | None,
        url_prefix: str | None,
        valid_servers: str | None,
        allowed_ips: str | None,
        prompter: Prompter,
        interactive: bool,
) -> TargetConfig:
    if mode is InstallMode.SOURCE:
        if not domain and interactive:
            domain = prompter.text("Domain for this server (e.g. pdev.example.com):")
        if not domain:
            raise InvalidRequestError("Full-stack install requires --domain.")
        return TargetConfig(
            domain=validate_domain(domain),
            url_prefix=validate_url_prefix(url_prefix) if url_prefix else DEFAULT_URL_PREFIX,
            valid_servers=parse_server_list(valid_servers),
            allowed_ips=parse_ip_list(allowed_ips),
        )
    if not source_url and interactive:
        source_url = prompter.text("URL of the existing PDev Live server (https://...):")
    if not source_url:
        raise InvalidRequestError("Client-only install requires --source-url.")
    return TargetConfig(source_url=validate_source_url(source_url))


def _print_summary(result: InstallResult, target: TargetConfig, *, dry_run: bool) -> None:
    console.rule("Installation complete" if not dry_run else "Dry run complete")
    for record in result.trace:
        console.info(f"{record.name}: {record.status}{f' ({record.detail})' if record.detail else ''}")
    if dry_run or result.credentials is None:
        return
    _print_credentials(result.credentials, target)


def _print_credentials(creds: Credentials, target: TargetConfig) -> None:
    # shown once on the terminal; deliberately bypasses the log file
    table = Table(title="Save these credentials now. They are not shown again.", show_header=False)
    table.add_row("URL", f"{target.base_url}{target.url_prefix}/")
    table.add_row("HTTP user", creds.http_user)
    table.add_row("HTTP password", creds.http_password)
    table.add_row("Admin key", creds.admin_key)
    table.add_row("Database password", creds.db_password)
    console.print(table)


def install(
        domain: str | None = typer.Option(
            None, "--domain", envvar="PDEV_DOMAIN", help="Full-stack install served at this domain."
        ),
        source_url: str | None = typer.Option(
            None, "--source-url", envvar="PDEV_SOURCE_URL", help="Client-only install reporting to this server."
        ),
        mode: str | None = typer.Option(None, "--mode", envvar="PDEV_MODE", help="source or project."),
        install_dir: str | None = typer.Option(
            None, "--install-dir", envvar="PDEV_INSTALL_DIR", help="Application directory (default /opt/pdev-live)."
        ),
        dry_run: bool = typer.Option(False, "--dry-run", envvar="PDEV_DRY_RUN", help="Print changes, make none."),
        non_interactive: bool = typer.Option(
            False, "--non-interactive", envvar="PDEV_NON_INTERACTIVE", help="Never prompt; roll back automatically."
        ),
        force: bool = typer.Option(False, "--force", envvar="PDEV_FORCE", help="Overwrite an existing install."),
        keep_database: bool = typer.Option(
            False, "--keep-database", envvar="PDEV_KEEP_DATABASE", help="Never drop the database during rollback."
        ),
        http_user: str | None = typer.Option(None, "--http-user", envvar="PDEV_HTTP_USER"),
        http_password: str | None = typer.Option(None, "--http-password", envvar="PDEV_HTTP_PASSWORD"),
        db_password: str | None = typer.Option(None, "--db-password", envvar="PDEV_DB_PASSWORD"),
        admin_key: str | None = typer.Option(None, "--admin-key", envvar="PDEV_ADMIN_KEY"),
        url_prefix: str | None = typer.Option(None, "--url-prefix", envvar="PDEV_URL_PREFIX"),
        valid_servers: str | None = typer.Option(
            None, "--valid-servers", envvar="PDEV_VALID_SERVERS", help="Comma-separated server names."
        ),
        allowed_ips: str | None = typer.Option(
            None, "--allowed-ips", envvar="PDEV_ALLOWED_IPS", help="Comma-separated addresses or CIDRs."
        ),
        package_version: str | None = typer.Option(None, "--package-version", envvar="PDEV_PACKAGE_VERSION"),
        migrations_dir: str | None = typer.Option(None, "--migrations-dir", envvar="PDEV_MIGRATIONS_DIR"),
        log_file: str | None = typer.Option(None, "--log-file", envvar="PDEV_LOG_FILE"),
        verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logs."),
) -> None:
    """Install the full stack (--domain) or the reporting client (--source-url)."""
    log_path = setup_logging(verbose, log_file or default_log_file())
    interactive = not non_interactive
    prompter = Prompter()

    try:
        selected = select_mode(
            domain=domain,
            source_url=source_url,
            mode=mode,
            prompt=prompter.select_mode if interactive else None,
        )
        target = _resolve_target(
            selected,
            domain=domain,
            source_url=source_url,
            url_prefix=url_prefix,
            valid_servers=valid_servers,
            allowed_ips=allowed_ips,
            prompter=prompter,
            interactive=interactive,
        )
        credentials = None
        if selected is InstallMode.SOURCE:
            credentials = generate_credentials(
                db_password=db_password,
                admin_key=admin_key,
                http_user=http_user,
                http_password=http_password,
            )
        cfg = load_config()
        if package_version:
            cfg.package_version = package_version
        if migrations_dir:
            cfg.migrations_dir = migrations_dir
        options = InstallOptions(
            dry_run=dry_run,
            non_interactive=non_interactive,
            force=force,
            keep_database=keep_database,
        )
        ctx = build_context(
            selected,
            target,
            options,
            config=cfg,
            install_dir=install_dir,
            runner=HostRunner(dry_run=dry_run),
            prompter=prompter,
            credentials=credentials,
        )
    except InvalidRequestError as exc:
        _usage_error(str(exc))

    console.info(f"Mode: {selected.label}")
    console.info(f"Log file: {log_path}")
    result = execute(ctx)
    if not result.success:
        console.err(f"Installation failed during phase '{result.failed_phase}'. See log: {log_path}")
        raise typer.Exit(code=EXIT_FAILED)
    _print_summary(result, target, dry_run=dry_run)
