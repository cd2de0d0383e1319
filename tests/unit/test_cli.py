"""Tests for the billing-engine command line."""

from unittest.mock import patch

import pytest

from billing_engine.__main__ import build_parser, main
from billing_engine.models import GraceEnforcementReport


@pytest.fixture(autouse=True)
def cli_environment(monkeypatch, config_file):
    """``main`` writes these variables; monkeypatch restores them afterwards."""
    monkeypatch.setenv("LOG_LEVEL", "INFO")
    monkeypatch.setenv("LOG_FORMAT", "json")
    monkeypatch.setenv("BILLING_CONFIG_PATH", str(config_file))


class TestParser:
    def test_serve_defaults(self):
        args = build_parser().parse_args(["serve"])
        assert args.command == "serve"
        assert args.port == 8080
        assert args.log_format == "json"

    def test_enforce_options(self, config_file):
        args = build_parser().parse_args(["enforce-grace-periods", "--no-auto-cancel"])
        assert args.no_auto_cancel is True
        assert args.config == str(config_file)

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestServe:
    def test_runs_uvicorn(self):
        with patch("billing_engine.__main__.uvicorn.run") as run:
            exit_code = main(["serve", "--host", "127.0.0.1", "--port", "9000"])

        assert exit_code == 0
        run.assert_called_once()
        assert run.call_args.args == ("billing_engine.main:app",)
        assert run.call_args.kwargs["host"] == "127.0.0.1"
        assert run.call_args.kwargs["port"] == 9000
        assert run.call_args.kwargs["log_level"] == "info"


class TestEnforceGracePeriods:
    def test_prints_report(self, capsys):
        exit_code = main(["enforce-grace-periods"])

        assert exit_code == 0
        assert '"processed": 0' in capsys.readouterr().out

    def test_no_auto_cancel_override(self):
        with patch(
            "billing_engine.services.grace_period.GracePeriodEnforcer.enforce_grace_periods",
            return_value=GraceEnforcementReport(),
        ) as enforce:
            main(["enforce-grace-periods", "--no-auto-cancel"])

        config = enforce.call_args.args[0]
        assert config.enable_auto_cancel is False
        assert config.warning_days == [3, 1]

    def test_errors_give_nonzero_exit(self):
        report = GraceEnforcementReport(processed=1, errors=["sub_1: boom"])
        with patch(
            "billing_engine.services.grace_period.GracePeriodEnforcer.enforce_grace_periods",
            return_value=report,
        ):
            assert main(["enforce-grace-periods"]) == 1

    def test_failure_reported_on_stderr(self, capsys):
        with patch(
            "billing_engine.services.grace_period.GracePeriodEnforcer.enforce_grace_periods",
            side_effect=RuntimeError("config broken"),
        ):
            assert main(["enforce-grace-periods"]) == 1
        assert "config broken" in capsys.readouterr().err
