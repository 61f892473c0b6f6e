import gzip
import hashlib
import io
import tarfile

import httpx
import pytest

from pdev_cli.provision import fetcher, phases
from pdev_cli.provision.fetcher import extract, fetch, parse_checksum
from pdev_cli.provision.orchestrator import execute
from pdev_core.errors import ConnectivityError, IntegrityError

from conftest import snapshot

_real_fetch_package = phases._fetch_package

DIGEST = "a" * 64


def _tarball(path, *, files=(), links=()):
    with tarfile.open(path, "w:gz") as tar:
        for name, text in files:
            data = text.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        for name, target in links:
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    return path


def _app_files(prefix: str = "") -> list[tuple[str, str]]:
    return [(f"{prefix}server.js", "require('./app');\n"), (f"{prefix}package.json", "{}\n")]


def _symlinks(root) -> list:
    return [p for p in root.rglob("*") if p.is_symlink()]


@pytest.mark.parametrize(
    "text",
    [
        DIGEST,
        f"{DIGEST}\n",
        f"{DIGEST}  pdev-source-v1.0.0.tar.gz\n",
        DIGEST.upper(),
    ],
)
def test_checksum_accepts_single_digest(text) -> None:
    assert parse_checksum(text) == DIGEST


@pytest.mark.parametrize(
    "text",
    [
        "",
        "not-a-digest",
        "a" * 63,
        "g" * 64,
        f"{DIGEST} {DIGEST}",
        f"{DIGEST} file.tar.gz extra",
        "<html>404</html>",
    ],
)
def test_checksum_rejects_everything_else(text) -> None:
    with pytest.raises(IntegrityError):
        parse_checksum(text)


def test_traversal_entry_is_rejected(tmp_path) -> None:
    archive = _tarball(tmp_path / "pkg.tar.gz", files=[*_app_files(), ("../evil.txt", "owned")])

    with pytest.raises(IntegrityError, match="escapes"):
        extract(archive, ("server.js",))

    assert not (tmp_path / "evil.txt").exists()


def test_absolute_symlink_is_rejected(tmp_path) -> None:
    archive = _tarball(tmp_path / "pkg.tar.gz", files=_app_files(), links=[("passwd", "/etc/passwd")])

    with pytest.raises(IntegrityError, match="outside"):
        extract(archive, ("server.js",))


def test_flat_package_is_used_as_is(tmp_path) -> None:
    archive = _tarball(tmp_path / "pkg.tar.gz", files=_app_files())

    package = extract(archive, ("server.js", "package.json"))
    try:
        assert package.app_root == package.root
        assert not package.flattened
    finally:
        package.cleanup()
    assert not package.root.exists()


def test_nested_package_with_only_shims_is_flattened(tmp_path) -> None:
    archive = _tarball(
        tmp_path / "pkg.tar.gz",
        files=[*_app_files("pdev-source/"), ("pdev-source/node_modules/foo/cli.js", "#!/usr/bin/env node\n")],
        links=[("pdev-source/node_modules/.bin/foo", "../foo/cli.js")],
    )

    package = extract(archive, ("server.js", "package.json"))
    try:
        assert package.flattened
        assert package.app_root == package.root
        assert (package.root / "server.js").is_file()
        assert (package.root / "node_modules/foo/cli.js").is_file()
        assert not (package.root / "pdev-source").exists()
        assert _symlinks(package.root) == []
    finally:
        package.cleanup()


def test_disallowed_symlink_keeps_nested_layout(tmp_path) -> None:
    archive = _tarball(
        tmp_path / "pkg.tar.gz",
        files=_app_files("pdev-source/"),
        links=[("pdev-source/lib/current", "../server.js")],
    )

    package = extract(archive, ("server.js", "package.json"))
    try:
        assert not package.flattened
        assert package.app_root == package.root / "pdev-source"
        assert (package.app_root / "lib/current").is_symlink()
    finally:
        package.cleanup()


def test_nested_layout_rejects_link_into_archive_root(tmp_path) -> None:
    archive = _tarball(
        tmp_path / "pkg.tar.gz",
        files=_app_files("pdev-source/"),
        links=[("pdev-source/data", "../shared")],
    )

    with pytest.raises(IntegrityError, match="resolves outside the package: data"):
        extract(archive, ("server.js", "package.json"))


def test_missing_entry_files_is_integrity_error(tmp_path) -> None:
    archive = _tarball(tmp_path / "pkg.tar.gz", files=[("README.md", "hi\n")])

    with pytest.raises(IntegrityError, match="missing required files"):
        extract(archive, ("server.js",))


def test_traversal_package_leaves_install_dir_untouched(host, monkeypatch, tmp_path) -> None:
    archive = _tarball(tmp_path / "evil.tar.gz", files=[*_app_files(), ("../../etc/cron.d/x", "* * * * * root id\n")])
    monkeypatch.setattr(phases, "_fetch_package", _real_fetch_package)
    monkeypatch.setattr(fetcher, "fetch", lambda url, checksum_url, dest_dir: archive)
    before = snapshot(host.root, exclude=(host.migration_marker,))

    result = execute(host.context())

    assert not result.success
    assert isinstance(result.error, IntegrityError)
    assert result.failed_phase == "files"
    assert snapshot(host.root, exclude=(host.migration_marker,)) == before
    assert not host.install_dir.exists()


def test_link_leaving_nested_app_root_is_never_installed(host, monkeypatch, tmp_path) -> None:
    archive = _tarball(
        tmp_path / "nested.tar.gz",
        files=_app_files("pdev-source/"),
        links=[("pdev-source/data", "../shared")],
    )
    monkeypatch.setattr(phases, "_fetch_package", _real_fetch_package)
    monkeypatch.setattr(fetcher, "fetch", lambda url, checksum_url, dest_dir: archive)

    result = execute(host.context())

    assert not result.success
    assert isinstance(result.error, IntegrityError)
    assert result.failed_phase == "files"
    assert not host.install_dir.exists()


class _Server:
    """Serves an archive and checksum, failing the first `failures` archive requests."""

    def __init__(self, archive: bytes, checksum: str, *, failures: int = 0) -> None:
        self.archive = archive
        self.checksum = checksum
        self.failures = failures
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        if request.url.path.endswith(".sha256"):
            return httpx.Response(200, text=self.checksum)
        if self.failures:
            self.failures -= 1
            return httpx.Response(503)
        return httpx.Response(200, content=self.archive)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


URL = "https://vyxenai.com/pdev/install/pdev-source-v1.0.0.tar.gz"


@pytest.fixture
def no_wait(monkeypatch) -> list[float]:
    delays: list[float] = []
    monkeypatch.setattr(fetcher.time, "sleep", delays.append)
    monkeypatch.setattr(fetcher, "check_free_space", lambda path, required=fetcher.MIN_FREE_BYTES: None)
    return delays


def test_fetch_retries_with_backoff_then_verifies(tmp_path, no_wait) -> None:
    payload = gzip.compress(b"tar bytes")
    server = _Server(payload, f"{hashlib.sha256(payload).hexdigest()}  pdev-source-v1.0.0.tar.gz\n", failures=2)

    archive = fetch(URL, f"{URL}.sha256", tmp_path, client=server.client())

    assert archive.read_bytes() == payload
    assert len(no_wait) == 2
    assert 5 <= no_wait[0] <= 8
    assert 10 <= no_wait[1] <= 13
    assert sorted(p.name for p in tmp_path.iterdir()) == [archive.name]


def test_fetch_gives_up_after_three_attempts(tmp_path, no_wait) -> None:
    server = _Server(b"", DIGEST, failures=3)

    with pytest.raises(ConnectivityError):
        fetch(URL, f"{URL}.sha256", tmp_path, client=server.client())

    assert len(server.requests) == 3
    assert list(tmp_path.iterdir()) == []


def test_fetch_rejects_non_gzip_payload(tmp_path, no_wait) -> None:
    html = b"<html>maintenance</html>"
    server = _Server(html, hashlib.sha256(html).hexdigest())

    with pytest.raises(IntegrityError, match="not a gzip"):
        fetch(URL, f"{URL}.sha256", tmp_path, client=server.client())

    assert list(tmp_path.iterdir()) == []


def test_fetch_rejects_checksum_mismatch(tmp_path, no_wait) -> None:
    server = _Server(gzip.compress(b"tampered"), DIGEST)

    with pytest.raises(IntegrityError, match="Checksum mismatch"):
        fetch(URL, f"{URL}.sha256", tmp_path, client=server.client())

    assert list(tmp_path.iterdir()) == []
