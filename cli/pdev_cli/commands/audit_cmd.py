from __future__ import annotations

import typer

from pdev_core.command import validate_domain, validate_source_url
from pdev_core.errors import InvalidRequestError
from pdev_core.mode import InstallMode, select_mode

from .. import console
from ..config import load_config
from ..logging_ import setup_logging
from ..provision import verify
from ..provision.context import InstallOptions, TargetConfig
from ..provision.orchestrator import build_context
from ..runner import HostRunner


def audit(
        mode: str | None = typer.Option(None, "--mode", envvar="PDEV_MODE", help="source or project."),
        domain: str | None = typer.Option(None, "--domain", envvar="PDEV_DOMAIN", help="Domain of the full-stack install."),
        source_url: str | None = typer.Option(
            None, "--source-url", envvar="PDEV_SOURCE_URL", help="Server a client-only install reports to."
        ),
        install_dir: str | None = typer.Option(None, "--install-dir", envvar="PDEV_INSTALL_DIR"),
        verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logs."),
) -> None:
    """Re-run the security audit against an existing install."""
    setup_logging(verbose)
    try:
        selected = select_mode(domain=domain, source_url=source_url, mode=mode)
        if selected is InstallMode.SOURCE:
            target = TargetConfig(domain=validate_domain(domain or ""))
        else:
            target = TargetConfig(source_url=validate_source_url(source_url or ""))
        ctx = build_context(
            selected,
            target,
            InstallOptions(non_interactive=True),
            config=load_config(),
            install_dir=install_dir,
            runner=HostRunner(),
        )
    except InvalidRequestError as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)

    report = verify.audit(ctx)
    report.print()
    if not report.passed:
        raise typer.Exit(code=1)
