"""Tests for the certflow CLI entry point (certflow.cli.main).

``main()`` imports config, logging and command modules inside the
function body, so patches target the source modules.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from certflow.cli.main import _build_parser, main


@pytest.fixture
def parser():
    return _build_parser()


def _mock_config():
    cfg = MagicMock()
    cfg.settings.server.bind = "127.0.0.1"
    cfg.settings.server.port = 8080
    cfg.settings.server.workers = 2
    cfg.settings.database.user = "certflow"
    cfg.settings.database.host = "localhost"
    cfg.settings.database.port = 5432
    cfg.settings.database.database = "certflow"
    cfg.settings.acme.path = "/root/.acme.sh/acme.sh"
    cfg.settings.acme.export_path = "/etc/certflow/certs"
    cfg.settings.order.max_retries = 3
    cfg.settings.order.failed_ttl_minutes = 0
    cfg.settings.worker.enabled = True
    cfg.settings.worker.poll_seconds = 30
    return cfg


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class TestParser:
    def test_config_required(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args([])

    def test_serve_flags(self, parser):
        args = parser.parse_args(["-c", "x.yaml", "serve", "--dev", "--no-worker"])
        assert args.command == "serve"
        assert args.dev is True
        assert args.no_worker is True

    def test_inspect_order(self, parser):
        args = parser.parse_args(["-c", "x.yaml", "inspect", "order", "42"])
        assert args.inspect_command == "order"
        assert args.order_id == 42

    def test_quota_add(self, parser):
        args = parser.parse_args(["-c", "x.yaml", "quota", "add", "123456", "5"])
        assert (args.external_id, args.amount) == ("123456", 5)

    def test_quota_amount_must_be_int(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args(["-c", "x.yaml", "quota", "add", "123456", "five"])

    def test_version(self, parser, capsys):
        with pytest.raises(SystemExit) as exc_info:
            parser.parse_args(["-c", "x.yaml", "--version"])
        assert exc_info.value.code == 0
        assert "certflow" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


class TestMain:
    def test_missing_config_file(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(tmp_path / "missing.yaml")])
        assert exc_info.value.code == 1
        assert "configuration file not found" in capsys.readouterr().err

    def test_invalid_config(self, tmp_path, capsys):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("order:\n  max_retries: 0\n", encoding="utf-8")
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(cfg)])
        assert exc_info.value.code == 1
        assert capsys.readouterr().err.startswith("error:")

    @patch("certflow.logging.configure_logging")
    def test_validate_only(self, mock_logging, tmp_config_file, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(tmp_config_file), "--validate-only"])
        assert exc_info.value.code == 0
        out = capsys.readouterr().out
        assert "database: testuser@localhost:5432/certflow_test" in out
        mock_logging.assert_called_once()

    @pytest.mark.parametrize(
        ("argv", "target"),
        [
            (["db", "status"], "certflow.cli.commands.db.run_db"),
            (["inspect", "order", "1"], "certflow.cli.commands.inspect.run_inspect"),
            (["quota", "add", "42", "1"], "certflow.cli.commands.quota.run_quota"),
            (["worker"], "certflow.cli.commands.worker.run_worker"),
            (["sweep"], "certflow.cli.commands.worker.run_sweep"),
            (["serve"], "certflow.cli.commands.serve.run_serve"),
            ([], "certflow.cli.commands.serve.run_serve"),
        ],
    )
    @patch("certflow.logging.configure_logging")
    @patch("certflow.config.CertflowConfig")
    def test_dispatch(self, mock_config_cls, mock_logging, tmp_config_file, argv, target):
        config = _mock_config()
        mock_config_cls.return_value = config
        with patch(target) as handler:
            main(["-c", str(tmp_config_file), *argv])
        handler.assert_called_once()
        assert handler.call_args.args[0] is config

    @patch("certflow.logging.configure_logging")
    @patch("certflow.config.CertflowConfig")
    def test_command_error_exits(self, mock_config_cls, mock_logging, tmp_config_file, capsys):
        mock_config_cls.return_value = _mock_config()
        with patch("certflow.cli.commands.worker.run_sweep", side_effect=RuntimeError("db down")):
            with pytest.raises(SystemExit) as exc_info:
                main(["-c", str(tmp_config_file), "sweep"])
        assert exc_info.value.code == 1
        assert "error: db down" in capsys.readouterr().err

    @patch("certflow.logging.configure_logging")
    @patch("certflow.config.CertflowConfig")
    def test_debug_reraises(self, mock_config_cls, mock_logging, tmp_config_file):
        mock_config_cls.return_value = _mock_config()
        with patch("certflow.cli.commands.worker.run_sweep", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError, match="db down"):
                main(["-c", str(tmp_config_file), "--debug", "sweep"])
