from __future__ import annotations

import hashlib
import hmac
import logging
import os
import random
import re
import shutil
import tarfile
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

import httpx

from pdev_core.errors import ConnectivityError, IntegrityError, PreflightError

from .. import console

logger = logging.getLogger(__name__)

MIN_FREE_BYTES = 100 * 1024 * 1024
MAX_ATTEMPTS = 3
BACKOFF_BASE = 5.0
BACKOFF_JITTER = 3.0
MAX_CHECKSUM_BYTES = 1024
GZIP_MAGIC = b"\x1f\x8b"
SHIM_PARENTS = ("node_modules", ".bin")

_DIGEST_RE = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class ExtractedPackage:
    root: Path
    app_root: Path
    flattened: bool

    def cleanup(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)


def backoff_delay(attempt: int) -> float:
    return BACKOFF_BASE * 2 ** (attempt - 1) + random.uniform(0, BACKOFF_JITTER)


def check_free_space(path: str | Path, required: int = MIN_FREE_BYTES) -> None:
    free = shutil.disk_usage(path).free
    if free < required:
        raise PreflightError(
            f"Insufficient disk space in {path}: {free // (1024 * 1024)} MiB free, "
            f"{required // (1024 * 1024)} MiB required."
        )


def download(url: str, dest: Path, *, client: httpx.Client, max_bytes: int | None = None) -> Path:
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            with client.stream("GET", url, follow_redirects=True) as resp:
                resp.raise_for_status()
                written = 0
                with open(dest, "wb") as fh:
                    for chunk in resp.iter_bytes():
                        written += len(chunk)
                        if max_bytes is not None and written > max_bytes:
                            raise IntegrityError(f"Unexpectedly large response from {url}")
                        fh.write(chunk)
            logger.debug("downloaded %s (%d bytes)", url, written)
            return dest
        except httpx.HTTPError as exc:
            dest.unlink(missing_ok=True)
            if attempt == MAX_ATTEMPTS:
                raise ConnectivityError(f"Download failed after {MAX_ATTEMPTS} attempts: {url}") from exc
            delay = backoff_delay(attempt)
            console.warn(f"Download failed (attempt {attempt}/{MAX_ATTEMPTS}); retrying in {delay:.0f}s")
            time.sleep(delay)
        except IntegrityError:
            dest.unlink(missing_ok=True)
            raise
    raise ConnectivityError(f"Download failed: {url}")


def parse_checksum(text: str) -> str:
    """Accept one 64-hex digest, optionally followed by a file name (sha256sum output)."""
    tokens = text.split()
    malformed = (
        not tokens
        or len(tokens) > 2
        or not _DIGEST_RE.match(tokens[0])
        or (len(tokens) == 2 and _DIGEST_RE.match(tokens[1]) is not None)
    )
    if malformed:
        raise IntegrityError("Checksum file is malformed; expected a single 64-character hex digest.")
    return tokens[0].lower()


def sniff_gzip(path: Path) -> None:
    with open(path, "rb") as fh:
        head = fh.read(2)
    if head != GZIP_MAGIC:
        raise IntegrityError(f"Downloaded file is not a gzip archive: {path.name}")


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


def fetch(url: str, checksum_url: str, dest_dir: str | Path, *, client: httpx.Client | None = None) -> Path:
    """Download an archive and its checksum into `dest_dir`; return the verified archive."""
    dest_dir = Path(dest_dir)
    check_free_space(dest_dir)
    archive = dest_dir / url.rsplit("/", 1)[-1]
    checksum_file = dest_dir / f"{archive.name}.sha256"
    own_client = client is None
    if own_client:
        client = httpx.Client(timeout=httpx.Timeout(60.0, connect=15.0))
    try:
        console.info(f"Downloading {url}")
        download(url, archive, client=client)
        try:
            sniff_gzip(archive)
            download(checksum_url, checksum_file, client=client, max_bytes=MAX_CHECKSUM_BYTES)
            expected = parse_checksum(checksum_file.read_text(encoding="utf-8", errors="replace"))
            actual = sha256_file(archive)
            if not hmac.compare_digest(actual, expected):
                raise IntegrityError("Checksum mismatch: package may be corrupted or tampered with.")
        except BaseException:
            archive.unlink(missing_ok=True)
            raise
        finally:
            checksum_file.unlink(missing_ok=True)
    finally:
        if own_client:
            client.close()
    console.ok(f"Package verified (sha256 {actual[:12]}…)")
    return archive


def extract(archive: str | Path, entry_files: tuple[str, ...]) -> ExtractedPackage:
    """Unpack into a private temp dir, reject escapes, flatten a redundant top-level directory."""
    root = Path(tempfile.mkdtemp(prefix="pdev-extract."))
    try:
        try:
            with tarfile.open(archive, "r:gz") as tar:
                validate_members(tar.getmembers())
                tar.extractall(root, filter="data")
        except tarfile.FilterError as exc:
            raise IntegrityError(f"Archive rejected: {exc}") from exc
        except (tarfile.TarError, EOFError) as exc:
            raise IntegrityError(f"Archive is unreadable: {exc}") from exc
        assert_contained(root)
        app_root, flattened = _maybe_flatten(root, entry_files)
        if app_root != root:
            # only app_root is installed; links into its parent would dangle outside the install dir
            assert_contained(app_root)
        missing = [name for name in entry_files if not (app_root / name).is_file()]
        if missing:
            raise IntegrityError(f"Package is missing required files: {', '.join(missing)}")
    except BaseException:
        shutil.rmtree(root, ignore_errors=True)
        raise
    return ExtractedPackage(root=root, app_root=app_root, flattened=flattened)


def validate_members(members: list[tarfile.TarInfo]) -> None:
    for member in members:
        name = member.name
        if os.path.isabs(name) or ".." in Path(name).parts:
            raise IntegrityError(f"Archive entry escapes the extraction directory: {name}")
        if member.isdev():
            raise IntegrityError(f"Archive contains a device entry: {name}")
        if member.issym() or member.islnk():
            link = member.linkname
            base = os.path.dirname(name) if member.issym() else ""
            resolved = os.path.normpath(os.path.join(base, link))
            if os.path.isabs(link) or resolved == ".." or resolved.startswith(".." + os.sep):
                raise IntegrityError(f"Archive link points outside the package: {name} -> {link}")


def assert_contained(root: Path) -> None:
    base = os.path.realpath(root)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            real = os.path.realpath(os.path.join(dirpath, name))
            if real != base and not real.startswith(base + os.sep):
                raise IntegrityError(f"Extracted path resolves outside the package: {name}")


def is_allowed_shim(rel: Path) -> bool:
    return rel.parent.name == SHIM_PARENTS[1] and rel.parent.parent.name == SHIM_PARENTS[0]


def symlinks_under(top: Path) -> list[Path]:
    found = []
    for dirpath, dirnames, filenames in os.walk(top):
        for name in dirnames + filenames:
            path = Path(dirpath) / name
            if path.is_symlink():
                found.append(path)
    return found


def _maybe_flatten(root: Path, entry_files: tuple[str, ...]) -> tuple[Path, bool]:
    if all((root / name).is_file() for name in entry_files):
        return root, False
    entries = list(root.iterdir())
    if len(entries) != 1 or entries[0].is_symlink() or not entries[0].is_dir():
        return root, False
    top = entries[0]
    if not all((top / name).is_file() for name in entry_files):
        return root, False

    links = symlinks_under(top)
    disallowed = [link for link in links if not is_allowed_shim(link.relative_to(top))]
    if disallowed:
        console.warn(
            f"Keeping nested layout: {len(disallowed)} symlink(s) outside node_modules/.bin "
            f"(first: {disallowed[0].relative_to(root)})"
        )
        return top, False

    # shims are regenerated by npm install
    for link in links:
        link.unlink()
    staging = root / f".flatten-{uuid.uuid4().hex}"
    top.rename(staging)
    for child in list(staging.iterdir()):
        child.rename(root / child.name)
    staging.rmdir()
    return root, True
