from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from spectrabox.config import (
    DEFAULT_CONFIG,
    SERVER_DIR,
    documented_default_config,
    load_config,
)


def _write_config(path: Path, payload: dict) -> None:
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "SPECTRABOX_ENV",
        "GITHUB_TOKEN",
        "SPECTRABOX_UPDATE_SCRIPT",
        "SPECTRABOX_VERSION_FILE",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_file(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "absent.yaml")
    assert cfg.server.port == 3000
    assert cfg.update.profile == "production"
    assert cfg.update.sandboxed is False
    assert cfg.update.overall_timeout_s == 900
    assert cfg.update.stall_timeout_s == 300
    assert cfg.github.repository_url == "https://github.com/mattstegner/SpectraBox"
    assert cfg.github.api_host == "api.github.com"


def test_relative_paths_resolve_against_config_dir(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    _write_config(
        config_path,
        {"version": {"file_path": "VERSION"}, "update": {"script_path": "bin/update.sh"}},
    )
    cfg = load_config(config_path)
    assert cfg.version.file_path == tmp_path / "VERSION"
    assert cfg.update.script_path == tmp_path / "bin" / "update.sh"


def test_partial_override_keeps_sibling_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    _write_config(config_path, {"github": {"owner": "someone"}})
    cfg = load_config(config_path)
    assert cfg.github.owner == "someone"
    assert cfg.github.repository == "SpectraBox"


def test_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SPECTRABOX_ENV", "Development")
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_env")
    monkeypatch.setenv("SPECTRABOX_UPDATE_SCRIPT", "/opt/update.sh")
    cfg = load_config(tmp_path / "config.yaml")
    assert cfg.update.profile == "development"
    assert cfg.update.sandboxed is True
    assert cfg.github.token == "ghp_env"
    assert cfg.update.script_path == Path("/opt/update.sh")


def test_invalid_profile_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    _write_config(config_path, {"update": {"profile": "staging"}})
    with pytest.raises(ValueError, match="update.profile"):
        load_config(config_path)


def test_non_https_api_url_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    _write_config(config_path, {"github": {"api_url": "http://api.github.com"}})
    with pytest.raises(ValueError, match="https"):
        load_config(config_path)


def test_invalid_port_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    _write_config(config_path, {"server": {"port": 70000}})
    with pytest.raises(ValueError, match="port"):
        load_config(config_path)


def test_non_positive_timeout_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    _write_config(config_path, {"update": {"stall_timeout_s": 0}})
    with pytest.raises(ValueError, match="stall_timeout_s"):
        load_config(config_path)


def test_top_level_must_be_mapping(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError, match="YAML object"):
        load_config(config_path)


def test_example_config_matches_defaults() -> None:
    example = yaml.safe_load((SERVER_DIR / "config.example.yaml").read_text(encoding="utf-8"))
    assert example == documented_default_config()
    assert documented_default_config() is not DEFAULT_CONFIG
