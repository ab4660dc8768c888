"""Command line entry point."""

import json
import tomllib
from pathlib import Path

import pytest

import guestsh
from conftest import needs_bash


def run_main(monkeypatch, *argv):
    monkeypatch.setattr("sys.argv", ["guestsh", *argv])
    guestsh.main()


def test_unknown_command(monkeypatch):
    with pytest.raises(SystemExit) as exc:
        run_main(monkeypatch, "--local", "frobnicate")
    assert exc.value.code == 1


def test_run_needs_a_command(monkeypatch):
    with pytest.raises(SystemExit):
        run_main(monkeypatch, "--local", "run")


def test_no_machine(monkeypatch):
    with pytest.raises(SystemExit):
        run_main(monkeypatch, "run", "true")


def test_serial_only_config(monkeypatch):
    captured = {}
    monkeypatch.setattr(guestsh.anyio, "run", lambda func, args: captured.update(args=args))
    run_main(monkeypatch, "--local", "--serial-only", "--network", "run", "x")
    config = guestsh.build_config(captured["args"])
    assert not config.use_filesystem
    assert config.network


@needs_bash
def test_run_local(monkeypatch, tmp_path, capsys):
    run_main(monkeypatch, "--local", "--share", str(tmp_path), "--json", "run", "echo hi")
    result = json.loads(capsys.readouterr().out)
    assert result["output"] == "hi"
    assert result["exit_code"] == 0
    assert result["timed_out"] is False


def test_packaging_metadata():
    pyproject = tomllib.loads((Path(__file__).parents[1] / "pyproject.toml").read_text())
    project = pyproject["project"]
    assert "readme" not in project
    assert set(project["dependencies"]) >= {"anyio>=4.0", "rich>=13.0"}
