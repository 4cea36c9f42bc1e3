"""Tests for the command line entry point."""

import json

import pytest

from floorplan3d.__main__ import build_parser, main


@pytest.fixture
def cli_config_dir(tmp_config_dir):
    """Config dir whose settings keep the CLI from writing log files."""
    (tmp_config_dir / "floorplan3d_config.json").write_text(
        json.dumps({"logging": {"log_to_file": False, "log_console_output": False}}),
        encoding="utf-8",
    )
    return tmp_config_dir


def test_generate_arguments():
    args = build_parser().parse_args(
        ["generate", "plan.png", "--engine", "trellis", "--texture-size", "2048", "--stylize"]
    )
    assert args.engine == "trellis"
    assert args.texture_size == 2048
    assert args.stylize == ""
    assert not args.enhance


def test_invalid_polycount():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["generate", "plan.png", "--polycount", "12345"])


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out


def test_presets(cli_config_dir, capsys):
    assert main(["--config-dir", str(cli_config_dir), "presets"]) == 0
    out = capsys.readouterr().out
    assert "Industrial Loft" in out
    assert "Biophilic Oasis" in out


def test_config_listing(cli_config_dir, capsys):
    assert main(["--config-dir", str(cli_config_dir), "config"]) == 0
    out = capsys.readouterr().out
    assert "[polling] Job Polling" in out
    assert "log_to_file = false" in out


def test_generate_missing_image(cli_config_dir, tmp_path, capsys):
    code = main(["--config-dir", str(cli_config_dir), "generate", str(tmp_path / "none.png")])
    assert code == 2
    assert "Image not found" in capsys.readouterr().err
