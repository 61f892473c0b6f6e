from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from . import console

ERASE_PASSES = 3
_CHUNK = 64 * 1024


def _completed(argv: list[str], code: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(argv, code, stdout, stderr)


@dataclass
class HostRunner:
    """Executes commands and file changes on the local host.

    Every mutating call is replaced by a printed no-op when `dry_run` is set;
    `probe` is read-only and always executes.
    """

    dry_run: bool = False

    def probe(self, argv: list[str], *, cwd: str | None = None, timeout: float | None = 30) -> subprocess.CompletedProcess:
        return self._exec(argv, cwd=cwd, timeout=timeout)

    def run(self, argv: list[str], *, cwd: str | None = None, timeout: float | None = None) -> subprocess.CompletedProcess:
        if self.dry_run:
            console.info(f"[dry-run] {_display(argv, cwd)}")
            return _completed(argv)
        return self._exec(argv, cwd=cwd, timeout=timeout)

    def run_input(
            self,
            argv: list[str],
            content: str,
            *,
            log_label: str,
            cwd: str | None = None,
            timeout: float | None = None,
    ) -> subprocess.CompletedProcess:
        if self.dry_run:
            console.info(f"[dry-run] {log_label}")
            return _completed(argv)
        return self._exec(argv, cwd=cwd, timeout=timeout, content=content)

    def _exec(
            self,
            argv: list[str],
            *,
            cwd: str | None,
            timeout: float | None,
            content: str | None = None,
    ) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                argv,
                cwd=cwd,
                input=content,
                text=True,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
        except FileNotFoundError:
            return _completed(argv, 127, "", f"{argv[0]}: command not found")
        except subprocess.TimeoutExpired:
            return _completed(argv, 124, "", f"{argv[0]}: timed out after {timeout}s")

    def write_file(self, path: str | Path, content: str, *, mode: int = 0o644, log_label: str | None = None) -> None:
        target = Path(path)
        if self.dry_run:
            console.info(f"[dry-run] write {log_label or target} (mode {mode:o})")
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.chmod(target, mode)

    def append_file(self, path: str | Path, line: str, *, mode: int = 0o644) -> None:
        target = Path(path)
        if self.dry_run:
            console.info(f"[dry-run] append to {target}")
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "a", encoding="utf-8") as fh:
            fh.write(line.rstrip("\n") + "\n")
        os.chmod(target, mode)

    def make_dirs(self, path: str | Path, *, mode: int = 0o755) -> None:
        if self.dry_run:
            console.info(f"[dry-run] mkdir -p {path}")
            return
        Path(path).mkdir(parents=True, exist_ok=True)
        os.chmod(path, mode)

    def chmod(self, path: str | Path, mode: int) -> None:
        if self.dry_run:
            console.info(f"[dry-run] chmod {mode:o} {path}")
            return
        os.chmod(path, mode)

    def chown(self, path: str | Path, *, user: str | None = None, group: str | None = None) -> None:
        if self.dry_run:
            console.info(f"[dry-run] chown {user or ''}:{group or ''} {path}")
            return
        shutil.chown(path, user=user, group=group)

    def copy_tree(self, src: str | Path, dst: str | Path) -> None:
        if self.dry_run:
            console.info(f"[dry-run] copy {src} -> {dst}")
            return
        shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)

    def move(self, src: str | Path, dst: str | Path) -> None:
        if self.dry_run:
            console.info(f"[dry-run] move {src} -> {dst}")
            return
        shutil.move(str(src), str(dst))

    def symlink(self, target: str | Path, link: str | Path) -> None:
        if self.dry_run:
            console.info(f"[dry-run] ln -sf {target} {link}")
            return
        link = Path(link)
        if link.is_symlink() or link.exists():
            link.unlink()
        link.parent.mkdir(parents=True, exist_ok=True)
        link.symlink_to(target)

    def remove_file(self, path: str | Path) -> bool:
        target = Path(path)
        if not (target.exists() or target.is_symlink()):
            return False
        if self.dry_run:
            console.info(f"[dry-run] rm -f {target}")
            return True
        target.unlink()
        return True

    def remove_tree(self, path: str | Path) -> bool:
        target = Path(path)
        if not (target.exists() or target.is_symlink()):
            return False
        if self.dry_run:
            console.info(f"[dry-run] rm -rf {target}")
            return True
        if target.is_symlink() or not target.is_dir():
            target.unlink()
        else:
            shutil.rmtree(target)
        return True

    def secure_erase(self, path: str | Path) -> bool:
        """Overwrite a secret file several times, then unlink it."""
        target = Path(path)
        if not (target.exists() or target.is_symlink()):
            return False
        if self.dry_run:
            console.info(f"[dry-run] secure erase {target}")
            return True
        if target.is_symlink():
            target.unlink()
            return True
        shredded = False
        if shutil.which("shred"):
            res = self._exec(["shred", "-fz", "-n", str(ERASE_PASSES), str(target)], cwd=None, timeout=60)
            shredded = res.returncode == 0
        if not shredded:
            overwrite_random(target)
        target.unlink(missing_ok=True)
        return True


def overwrite_random(path: Path, passes: int = ERASE_PASSES) -> None:
    size = path.stat().st_size
    with open(path, "r+b") as fh:
        for _ in range(passes):
            fh.seek(0)
            remaining = size
            while remaining > 0:
                chunk = min(remaining, _CHUNK)
                fh.write(os.urandom(chunk))
                remaining -= chunk
            fh.flush()
            os.fsync(fh.fileno())


def _display(argv: list[str], cwd: str | None) -> str:
    line = shlex.join(argv)
    if not cwd:
        return line
    return f"(cd {shlex.quote(cwd)}) {line}"


def as_user(user: str, argv: list[str]) -> list[str]:
    return ["sudo", "-u", user, *argv]
