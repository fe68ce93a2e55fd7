"""Smoke tests for the termport CLI."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from termport import __version__
from termport.cli import cli
from termport.config.parser import HELPER_ENV_VAR


def test_help() -> None:
    result = CliRunner().invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "termport" in result.output
    for command in ("init", "probe", "demo"):
        assert command in result.output


def test_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert f"termport, version {__version__}" in result.output


def test_init_runs() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["init"])
        assert result.exit_code == 0
        assert "Created termport.yaml" in result.output


def test_probe_flags() -> None:
    result = CliRunner().invoke(cli, ["probe", "--help"])
    assert result.exit_code == 0
    assert "--config" in result.output
    assert "--helper" in result.output


def test_demo_flags() -> None:
    result = CliRunner().invoke(cli, ["demo", "--help"])
    assert result.exit_code == 0
    assert "--timeout" in result.output


def test_demo_rejects_non_positive_timeout() -> None:
    result = CliRunner().invoke(cli, ["demo", "--helper", "/x", "--timeout", "0"])
    assert result.exit_code == 2


def test_probe_missing_config_errors(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["probe", "--config", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_probe_missing_helper_errors(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["probe", "--helper", str(tmp_path / "missing")])
        assert result.exit_code == 1
        assert "Helper executable not found" in result.output


def test_probe_without_any_helper(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(HELPER_ENV_VAR, raising=False)
    monkeypatch.setenv("PATH", str(tmp_path))
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["probe"])
        assert result.exit_code == 1
        assert "termbox_port" in result.output


def test_log_file_option(tmp_path: Path) -> None:
    log_file = tmp_path / "termport.log"
    try:
        result = CliRunner().invoke(
            cli,
            ["--log-file", str(log_file), "--log-level", "debug", "probe", "--helper", str(tmp_path / "missing")],
        )
        assert result.exit_code == 1
        assert log_file.exists()
        assert logging.getLogger().level == logging.DEBUG
    finally:
        root = logging.getLogger()
        for handler in list(root.handlers):
            if isinstance(handler, logging.FileHandler):
                root.removeHandler(handler)
                handler.close()
        root.setLevel(logging.WARNING)
