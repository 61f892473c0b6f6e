from typer.testing import CliRunner

from pdev_cli import main
from pdev_cli.commands import install_cmd


def _wire(monkeypatch, host) -> None:
    monkeypatch.setattr(install_cmd, "load_config", lambda: host.config)

    def _runner(dry_run: bool = False):
        host.runner.dry_run = dry_run
        return host.runner

    monkeypatch.setattr(install_cmd, "HostRunner", _runner)


def test_proxy_failure_rolls_everything_back_and_exits_1(host, monkeypatch, tmp_path) -> None:
    _wire(monkeypatch, host)
    host.runner.fail_when(lambda argv: argv == ["nginx", "-t"])
    app = main._build_app()
    runner = CliRunner()

    result = runner.invoke(
        app,
        ["install", "--domain", "example.com", "--non-interactive", "--log-file", str(tmp_path / "install.log")],
    )

    assert result.exit_code == 1
    assert "phase 'proxy'" in result.output
    layout_dir = host.install_dir
    assert not (layout_dir / ".env").exists()
    assert not layout_dir.exists()
    assert not (host.root / "nginx/sites-available/pdev-live").exists()
    assert not (host.root / "nginx/sites-enabled/pdev-live").exists()
    assert not (host.root / "nginx/.htpasswd").exists()
    assert host.runner.databases == set()
    assert host.runner.online == set()
    assert host.runner.executed("DROP DATABASE IF EXISTS pdev_live")


def test_successful_install_prints_credentials_but_never_logs_them(host, monkeypatch, tmp_path) -> None:
    _wire(monkeypatch, host)
    log_file = tmp_path / "install.log"
    app = main._build_app()
    runner = CliRunner()

    result = runner.invoke(
        app,
        [
            "install",
            "--domain",
            "example.com",
            "--non-interactive",
            "--http-password",
            "Correct-Horse-Battery",
            "--log-file",
            str(log_file),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Correct-Horse-Battery" in result.output
    assert log_file.stat().st_mode & 0o777 == 0o600
    assert "Correct-Horse-Battery" not in log_file.read_text(encoding="utf-8")


def test_install_reads_flags_from_environment(host, monkeypatch, tmp_path) -> None:
    _wire(monkeypatch, host)
    monkeypatch.setenv("PDEV_SOURCE_URL", "https://pdev.example.com")
    monkeypatch.setenv("PDEV_NON_INTERACTIVE", "1")
    monkeypatch.setenv("PDEV_LOG_FILE", str(tmp_path / "install.log"))
    app = main._build_app()
    runner = CliRunner()

    result = runner.invoke(app, ["install"])

    assert result.exit_code == 0, result.output
    assert (host.root / "bin/pdev-live").exists()


def test_both_targets_is_a_usage_error(monkeypatch, tmp_path) -> None:
    app = main._build_app()
    runner = CliRunner()

    result = runner.invoke(
        app,
        [
            "install",
            "--domain",
            "example.com",
            "--source-url",
            "https://pdev.example.com",
            "--non-interactive",
            "--log-file",
            str(tmp_path / "install.log"),
        ],
    )

    assert result.exit_code == 2
    assert "not both" in result.output


def test_missing_target_without_prompting_is_a_usage_error(tmp_path) -> None:
    app = main._build_app()
    runner = CliRunner()

    result = runner.invoke(app, ["install", "--non-interactive", "--log-file", str(tmp_path / "install.log")])

    assert result.exit_code == 2
    assert "Missing target" in result.output


def test_unsafe_supplied_password_is_rejected(tmp_path) -> None:
    app = main._build_app()
    runner = CliRunner()

    result = runner.invoke(
        app,
        [
            "install",
            "--domain",
            "example.com",
            "--non-interactive",
            "--db-password",
            "abc'; DROP TABLE x;--",
            "--log-file",
            str(tmp_path / "install.log"),
        ],
    )

    assert result.exit_code == 2
    assert "not allowed" in result.output
