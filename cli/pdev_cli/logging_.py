from __future__ import annotations

import logging
import os
import time
from pathlib import Path


def default_log_file() -> Path:
    return Path("/tmp") / f"pdev-install-{time.strftime('%Y%m%d-%H%M%S')}.log"


def setup_logging(verbose: bool, log_file: str | os.PathLike | None = None) -> Path | None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    # chatty transports stay quiet unless -v
    for noisy in ("httpx", "httpcore", "paramiko"):
        logging.getLogger(noisy).setLevel(logging.DEBUG if verbose else logging.WARNING)

    if log_file is None:
        return None
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    os.chmod(path, 0o600)

    logging.getLogger().addHandler(handler)
    transcript = logging.getLogger("pdev_cli.console")
    transcript.setLevel(logging.INFO)
    transcript.addHandler(handler)
    return path


def setup_service_logging(level: str = "info") -> None:
    """Long-running relay: timestamped records on stderr."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    logging.getLogger("paramiko").setLevel(logging.WARNING)
