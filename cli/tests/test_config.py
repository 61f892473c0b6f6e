import tomllib

from typer.testing import CliRunner

from pdev_cli import config, main


def test_load_config_defaults_when_file_missing(tmp_path) -> None:
    cfg = config.load_config(str(tmp_path / "absent.toml"))

    assert cfg == config.default_config()
    assert cfg.install_dir == "/opt/pdev-live"
    assert cfg.app_port == 3016


def test_load_config_reads_toml_and_ignores_unknown_keys(tmp_path) -> None:
    path = tmp_path / "installer.toml"
    path.write_text('install_dir = "/srv/pdev"\napp_port = 4000\nfavourite_colour = "blue"\n', encoding="utf-8")

    cfg = config.load_config(str(path))

    assert cfg.install_dir == "/srv/pdev"
    assert cfg.app_port == 4000
    assert not hasattr(cfg, "favourite_colour")


def test_environment_overrides_file(tmp_path, monkeypatch) -> None:
    path = tmp_path / "installer.toml"
    path.write_text('package_version = "1.0.0"\n', encoding="utf-8")
    monkeypatch.setenv("PDEV_PACKAGE_VERSION", "1.2.3")
    monkeypatch.setenv("PDEV_APP_PORT", "not-a-port")

    cfg = config.load_config(str(path))

    assert cfg.package_version == "1.2.3"
    assert cfg.app_port == 3016


def test_invalid_toml_falls_back_to_defaults(tmp_path) -> None:
    path = tmp_path / "installer.toml"
    path.write_text("install_dir = [unterminated\n", encoding="utf-8")

    assert config.load_config(str(path)) == config.default_config()


def test_config_path_honours_override(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv(config.ENV_CONFIG_PATH, str(tmp_path / "custom.toml"))

    assert config.config_path() == str(tmp_path / "custom.toml")


def test_package_urls_follow_versioned_layout() -> None:
    cfg = config.default_config()
    cfg.package_version = "2.0.1"

    assert cfg.package_url("client") == "https://vyxenai.com/pdev/install/pdev-client-v2.0.1.tar.gz"
    assert cfg.checksum_url("source").endswith("pdev-source-v2.0.1.tar.gz.sha256")


def test_save_config_round_trips_through_load(tmp_path) -> None:
    cfg = config.default_config()
    cfg.install_dir = "/srv/pdev"

    path = config.save_config(cfg, str(tmp_path / "nested" / "installer.toml"))

    assert config.load_config(path) == cfg


def test_config_init_writes_defaults_once(tmp_path) -> None:
    target = tmp_path / "installer.toml"
    app = main._build_app()
    runner = CliRunner()

    first = runner.invoke(app, ["config", "init", "--path", str(target)])
    second = runner.invoke(app, ["config", "init", "--path", str(target)])

    assert first.exit_code == 0, first.output
    assert tomllib.loads(target.read_text(encoding="utf-8"))["db_name"] == "pdev_live"
    assert second.exit_code == 1
    assert "already exists" in second.output


def test_config_show_reflects_environment(monkeypatch) -> None:
    monkeypatch.setenv("PDEV_INSTALL_DIR", "/srv/elsewhere")
    app = main._build_app()
    runner = CliRunner()

    result = runner.invoke(app, ["config", "show"])

    assert result.exit_code == 0
    assert "install_dir = /srv/elsewhere" in result.output
