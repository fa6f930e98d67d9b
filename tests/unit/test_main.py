"""
Unit tests for main.py
"""

import json
import signal
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from main import main, parse_args
from quant_backtest.backtest.strategies import Strategy
from quant_backtest.data.sources import write_bars_csv


class TestParseArgs:
    """Tests for argument parsing."""

    def test_parse_backtest_command(self):
        """Test parsing backtest command."""
        args = parse_args(["backtest", "--config", "configs/backtest.yaml"])
        assert args.command == "backtest"
        assert args.config == Path("configs/backtest.yaml")
        assert args.strategy == "ma_crossover"
        assert args.fast_period == 10
        assert args.slow_period == 30
        assert args.csv is None

    def test_parse_backtest_with_options(self):
        """Test parsing backtest command with a CSV source and output."""
        args = parse_args(
            [
                "backtest",
                "--config", "bt.yaml",
                "--csv", "bars.csv",
                "--fast-period", "5",
                "--slow-period", "20",
                "--output", "out/result.json",
            ]
        )
        assert args.csv == Path("bars.csv")
        assert args.fast_period == 5
        assert args.output == Path("out/result.json")

    def test_parse_fetch_command(self):
        """Test parsing fetch command."""
        args = parse_args(
            [
                "fetch",
                "--symbol", "BTC_USDT",
                "--start-date", "2024-01-01",
                "--end-date", "2024-02-01",
                "--output", "data/btc.csv",
            ]
        )
        assert args.command == "fetch"
        assert args.symbol == "BTC_USDT"
        assert args.interval is None

    def test_parse_common_options(self):
        """Test parsing global options."""
        args = parse_args(["--log-level", "TRACE", "--log-format", "text", "backtest", "--config", "bt.yaml"])
        assert args.log_level == "TRACE"
        assert args.log_format == "text"
        assert args.settings is None

    def test_command_required(self):
        """Test a command is required."""
        with pytest.raises(SystemExit):
            parse_args([])

    def test_backtest_requires_config(self):
        """Test the backtest command needs a config file."""
        with pytest.raises(SystemExit):
            parse_args(["backtest"])


class TestMain:
    """Tests for the main entry point."""

    @pytest.fixture
    def run_files(self, tmp_path, sine_bars, config_data):
        """Backtest config and CSV cache for the sine series."""
        config_data["strategies"] = ["ma_crossover"]
        config_path = tmp_path / "backtest.yaml"
        config_path.write_text(yaml.safe_dump({"backtest": config_data}))
        csv_path = write_bars_csv(sine_bars, tmp_path / "bars.csv")
        return config_path, csv_path

    @patch("main.setup_logging")
    def test_backtest_from_csv(self, mock_setup_logging, run_files, tmp_path, capsys):
        """Test a CSV backtest finalizes and writes the JSON result."""
        config_path, csv_path = run_files
        output = tmp_path / "out" / "result.json"

        with pytest.raises(SystemExit) as exc_info:
            main(
                [
                    "backtest",
                    "--config", str(config_path),
                    "--csv", str(csv_path),
                    "--fast-period", "3",
                    "--slow-period", "12",
                    "--output", str(output),
                ]
            )

        assert exc_info.value.code == 0
        mock_setup_logging.assert_called_once()
        data = json.loads(output.read_text())
        assert data["state"] == "FINALIZED"
        assert data["config"]["symbol"] == "BTC_USDT"
        assert "Performance Summary" in capsys.readouterr().out

    @patch("main.log_system")
    @patch("main.setup_logging")
    def test_missing_config_exits_with_error(self, mock_setup_logging, mock_log_system, tmp_path):
        """Test configuration errors give exit code 1."""
        with pytest.raises(SystemExit) as exc_info:
            main(["backtest", "--config", str(tmp_path / "missing.yaml"), "--csv", str(tmp_path / "x.csv")])
        assert exc_info.value.code == 1
        mock_log_system.assert_called_once()
        assert mock_log_system.call_args.kwargs["command"] == "backtest"

    @patch("main.setup_logging")
    def test_failed_run_exits_with_error(self, mock_setup_logging, run_files, tmp_path):
        """Test a FAILED result gives exit code 1."""
        config_path, _ = run_files
        empty_csv = tmp_path / "empty.csv"
        empty_csv.write_text("timestamp,open,high,low,close,volume\n")

        with pytest.raises(SystemExit) as exc_info:
            main(["backtest", "--config", str(config_path), "--csv", str(empty_csv)])
        assert exc_info.value.code == 1

    @patch("main.setup_logging")
    def test_interrupt_cancels_run(self, mock_setup_logging, run_files, tmp_path):
        """Test SIGINT during a short run cancels it with exit code 130."""
        config_path, csv_path = run_files

        class InterruptingStrategy(Strategy):
            name = "ma_crossover"

            def __init__(self):
                self.calls = 0

            def generate_signals(self, window):
                self.calls += 1
                if self.calls == 3:
                    signal.raise_signal(signal.SIGINT)
                return []

        strategy = InterruptingStrategy()
        previous = signal.getsignal(signal.SIGINT)
        output = tmp_path / "cancelled.json"

        with patch("main.create_strategy", return_value=strategy):
            with pytest.raises(SystemExit) as exc_info:
                main(["backtest", "--config", str(config_path), "--csv", str(csv_path), "--output", str(output)])

        assert exc_info.value.code == 130
        assert strategy.calls == 3
        assert signal.getsignal(signal.SIGINT) is previous
        data = json.loads(output.read_text())
        assert data["state"] == "FAILED"
