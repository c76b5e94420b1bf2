"""Tests for the CLI commands."""

from __future__ import annotations

import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from shiftsync.cli import cli
from shiftsync.schedule.models import ExtractionError, ShiftRecord

pytestmark = pytest.mark.unit

PDF_NAME = "Weekplanning (01-06-2024-07-06-2024).pdf"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch("shiftsync.cli.configure_logging") as configure:
        yield configure


@pytest.fixture
def pdf_file(tmp_path):
    path = tmp_path / PDF_NAME
    path.write_bytes(b"%PDF-1.4")
    return path


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_commands_registered(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "watch" in result.output
        assert "extract" in result.output


class TestExtract:
    def test_prints_shifts_as_json(self, runner, pdf_file):
        shift = ShiftRecord(
            type="Bezorger",
            start=datetime(2024, 6, 3, 17, 0),
            end=datetime(2024, 6, 3, 21, 0),
        )
        with patch("shiftsync.cli.extract_from_pdf", return_value=[shift]) as extract:
            result = runner.invoke(cli, ["extract", str(pdf_file), "--name", "Jan Jansen"])

        assert result.exit_code == 0, result.output
        extract.assert_called_once_with(b"%PDF-1.4", PDF_NAME, "Jan Jansen")
        assert json.loads(result.output) == [
            {"type": "Bezorger", "start": "2024-06-03T17:00:00", "end": "2024-06-03T21:00:00"}
        ]

    def test_filename_override(self, runner, tmp_path):
        path = tmp_path / "rooster.pdf"
        path.write_bytes(b"%PDF-1.4")
        with patch("shiftsync.cli.extract_from_pdf", return_value=[]) as extract:
            result = runner.invoke(
                cli, ["extract", str(path), "--name", "Jan", "--filename", PDF_NAME]
            )
        assert result.exit_code == 0
        assert extract.call_args.args[1] == PDF_NAME

    def test_extraction_error_exits_non_zero(self, runner, pdf_file):
        with patch(
            "shiftsync.cli.extract_from_pdf", side_effect=ExtractionError("no schedule page")
        ):
            result = runner.invoke(cli, ["extract", str(pdf_file), "--name", "Jan"])
        assert result.exit_code == 1
        assert "Extraction failed: no schedule page" in result.output

    def test_name_required(self, runner, pdf_file):
        result = runner.invoke(cli, ["extract", str(pdf_file)], env={"TARGET_NAME": None})
        assert result.exit_code != 0
        assert "--name" in result.output

    def test_name_from_env_file(self, runner, pdf_file, tmp_path):
        env_file = tmp_path / "shiftsync.env"
        env_file.write_text("TARGET_NAME=Piet Pietersen\n")
        with patch("shiftsync.cli.extract_from_pdf", return_value=[]) as extract:
            result = runner.invoke(
                cli,
                ["--env-file", str(env_file), "extract", str(pdf_file)],
                env={"TARGET_NAME": None},
            )
        assert result.exit_code == 0, result.output
        assert extract.call_args.args[2] == "Piet Pietersen"


class TestWatch:
    def test_configuration_error(self, runner):
        with patch(
            "shiftsync.cli.ShiftSyncConfig.from_env",
            side_effect=ValueError("EMAIL_HOST is required"),
        ):
            result = runner.invoke(cli, ["watch"])
        assert result.exit_code == 1
        assert "Configuration error: EMAIL_HOST is required" in result.output

    def test_runs_watcher_with_config(self, runner, no_logging_setup):
        config = MagicMock()
        config.log_level = "DEBUG"
        config.log_format = "json"
        config.email_username = "me"
        config.email_host = "imap.example.com"
        with (
            patch("shiftsync.cli.ShiftSyncConfig.from_env", return_value=config),
            patch("shiftsync.cli.run_watcher", new_callable=AsyncMock) as run_watcher,
        ):
            result = runner.invoke(cli, ["watch"])

        assert result.exit_code == 0, result.output
        run_watcher.assert_awaited_once_with(config)
        no_logging_setup.assert_called_once_with(
            level="DEBUG", fmt="json", mailbox="me@imap.example.com"
        )
