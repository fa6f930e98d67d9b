"""
Unit tests for config/settings.py and config/backtest_config.py
"""

import tempfile
from datetime import timezone
from pathlib import Path

import pytest
import yaml

from quant_backtest.config.backtest_config import (
    BacktestConfig,
    DataValidationConfig,
    ExecutionConfig,
    FeeSchedule,
    RiskManagementConfig,
    load_backtest_config,
)
from quant_backtest.config.settings import (
    DataSourceSettings,
    EngineSettings,
    LoggingSettings,
    Settings,
    get_settings,
)
from quant_backtest.core.exceptions import ConfigurationError


# ============================================================================
# Application Settings
# ============================================================================


class TestEngineSettings:
    """Tests for EngineSettings model."""

    def test_default_values(self):
        """Test default engine settings."""
        settings = EngineSettings()
        assert settings.yield_every_bars == 250
        assert settings.progress_every_bars == 100
        assert settings.risk_free_rate == 0.05
        assert settings.periods_per_year is None

    def test_yield_interval_positive(self):
        """Test yield interval must be at least one bar."""
        with pytest.raises(ValueError):
            EngineSettings(yield_every_bars=0)


class TestDataSourceSettings:
    """Tests for DataSourceSettings model."""

    def test_default_values(self):
        """Test Gate.io defaults."""
        settings = DataSourceSettings()
        assert settings.gateio_base_url == "https://api.gateio.ws/api/v4"
        assert settings.batch_size == 1000

    def test_batch_size_capped(self):
        """Test Gate.io batch limit."""
        with pytest.raises(ValueError):
            DataSourceSettings(batch_size=5000)


class TestLoggingSettings:
    """Tests for LoggingSettings model."""

    def test_level_normalized(self):
        """Test log level is upper-cased."""
        assert LoggingSettings(level="debug").level == "DEBUG"

    def test_invalid_level(self):
        """Test unknown levels are rejected."""
        with pytest.raises(ValueError):
            LoggingSettings(level="LOUD")


class TestSettings:
    """Tests for main Settings class."""

    def test_default_settings(self):
        """Test default settings creation."""
        settings = Settings()
        assert settings.app_name == "Quant Backtest"
        assert isinstance(settings.engine, EngineSettings)
        assert settings.sweep.max_workers == 4

    def test_load_yaml_config(self):
        """Test loading YAML config file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "settings.yaml"
            with open(path, "w") as f:
                yaml.dump({"engine": {"risk_free_rate": 0.01}}, f)
            assert Settings.load_yaml_config(path) == {"engine": {"risk_free_rate": 0.01}}

    def test_load_missing_yaml(self):
        """Test a missing file yields an empty mapping."""
        assert Settings.load_yaml_config(Path("/nonexistent/settings.yaml")) == {}

    def test_apply_overrides(self):
        """Test section overrides keep unspecified defaults."""
        settings = Settings().apply_overrides(
            {"engine": {"risk_free_rate": 0.01}, "sweep": {"max_workers": 2}, "unknown": {"x": 1}}
        )
        assert settings.engine.risk_free_rate == 0.01
        assert settings.engine.yield_every_bars == 250
        assert settings.sweep.max_workers == 2

    def test_env_override(self, monkeypatch):
        """Test nested environment variables."""
        monkeypatch.setenv("ENGINE__PROGRESS_EVERY_BARS", "7")
        assert Settings().engine.progress_every_bars == 7

    def test_get_settings_cached(self):
        """Test settings are cached."""
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()

    def test_get_settings_from_file(self):
        """Test the settings section of a YAML file is applied."""
        get_settings.cache_clear()
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "app.yaml"
            with open(path, "w") as f:
                yaml.dump({"settings": {"engine": {"yield_every_bars": 5}}}, f)
            try:
                assert get_settings(path).engine.yield_every_bars == 5
            finally:
                get_settings.cache_clear()


# ============================================================================
# Backtest Configuration
# ============================================================================


class TestBacktestConfig:
    """Tests for BacktestConfig."""

    def test_from_mapping(self, config_data):
        """Test a valid mapping."""
        config = BacktestConfig.from_mapping(config_data)
        assert config.symbol == "BTC_USDT"
        assert config.strategies == ("scheduled",)
        assert config.fees == FeeSchedule(maker=0.001, taker=0.002)
        assert config.start_date.tzinfo == timezone.utc
        assert config.execution.reject_probability == 0.0

    def test_defaults(self, config_data):
        """Test omitted sections use defaults."""
        for key in ("fees", "risk_management", "execution", "slippage"):
            config_data.pop(key)
        config = BacktestConfig.from_mapping(config_data)
        assert config.slippage == 0.001
        assert config.risk_management == RiskManagementConfig()
        assert config.execution == ExecutionConfig()
        assert config.data_validation == DataValidationConfig()
        assert config.seed is None

    @pytest.mark.parametrize(
        "field,value",
        [
            ("symbol", "  "),
            ("initial_balance", 0),
            ("initial_balance", -100),
            ("strategies", []),
            ("strategies", ["ok", " "]),
            ("slippage", -0.1),
        ],
    )
    def test_invalid_fields(self, config_data, field, value):
        """Test invalid fields raise ConfigurationError."""
        config_data[field] = value
        with pytest.raises(ConfigurationError):
            BacktestConfig.from_mapping(config_data)

    def test_start_after_end(self, config_data):
        """Test the date range must be increasing."""
        config_data["start_date"], config_data["end_date"] = config_data["end_date"], config_data["start_date"]
        with pytest.raises(ConfigurationError) as exc_info:
            BacktestConfig.from_mapping(config_data)
        assert "Start date must be before end date" in exc_info.value.message

    def test_missing_field_named(self, config_data):
        """Test the offending field is named."""
        del config_data["symbol"]
        with pytest.raises(ConfigurationError) as exc_info:
            BacktestConfig.from_mapping(config_data)
        assert exc_info.value.field_name == "symbol"

    def test_reject_probability_bounded(self, config_data):
        """Test rejection probability may not exceed 10%."""
        config_data["execution"] = {"reject_probability": 0.2}
        with pytest.raises(ConfigurationError):
            BacktestConfig.from_mapping(config_data)

    def test_frozen(self, backtest_config):
        """Test configs are immutable."""
        with pytest.raises(ValueError):
            backtest_config.symbol = "ETH_USDT"

    def test_to_dict_json_compatible(self, backtest_config):
        """Test serialization."""
        data = backtest_config.to_dict()
        assert data["strategies"] == ["scheduled"]
        assert data["start_date"].startswith("2024-01-01T00:00:00")

    def test_duration_days(self, backtest_config):
        """Test duration of the 100 hour range."""
        assert backtest_config.duration_days == pytest.approx(99 / 24)

    def test_trusted_sources_normalized(self):
        """Test provenance tags are upper-cased."""
        config = DataValidationConfig(trusted_sources=("gate_io",))
        assert config.trusted_sources == ("GATE_IO",)


class TestLoadBacktestConfig:
    """Tests for load_backtest_config."""

    def test_load_nested(self, config_data):
        """Test configs under a backtest key."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "run.yaml"
            with open(path, "w") as f:
                yaml.dump({"backtest": config_data}, f)
            config = load_backtest_config(path)
        assert config.initial_balance == 10000.0

    def test_load_flat(self, config_data):
        """Test configs at the top level."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "run.yaml"
            with open(path, "w") as f:
                yaml.dump(config_data, f)
            assert load_backtest_config(path).symbol == "BTC_USDT"

    def test_missing_file(self):
        """Test missing files raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            load_backtest_config(Path("/nonexistent/run.yaml"))

    def test_not_a_mapping(self):
        """Test non-mapping documents are rejected."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "run.yaml"
            path.write_text("- a\n- b\n")
            with pytest.raises(ConfigurationError):
                load_backtest_config(path)
