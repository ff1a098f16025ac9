"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for gateway configs.
"""

import os
import tempfile
from datetime import timedelta
from decimal import Decimal

import pytest
import yaml

from ai_budget_gateway.config.loader import (
    BreakerConfig,
    BudgetConfig,
    CacheConfig,
    GatewayConfig,
    load_gateway_config,
)
from ai_budget_gateway.core.errors import ConfigurationError


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a full configuration loads correctly."""
        config_data = {
            "budget": {
                "daily_units": 1000,
                "weekly_units": 5000,
                "monthly_units": 20000,
                "daily_cost": 5.5,
                "weekly_cost": 30,
                "monthly_cost": "100.25",
                "alert_threshold_percent": 75,
                "enable_fallback": False,
                "week_start": 6
            },
            "breaker": {
                "probe_interval_seconds": 120,
                "rate_limit_cooldown_seconds": 30
            },
            "cache": {"ttl_seconds": 0},
            "estimator": {"safety_margin": 1.25},
            "pricing": {
                "default_model": "model-a",
                "models": {
                    "model-a": {"input_cost_per_1k": 0.03, "output_cost_per_1k": 0.06, "max_units": 8192},
                    "model-b": {"input_cost_per_1k": 0.001, "output_cost_per_1k": 0.002}
                }
            }
        }

        config = load_gateway_config(self._write_config(config_data))

        assert config.budget.daily_units == 1000
        assert config.budget.daily_cost == Decimal("5.5")
        assert config.budget.monthly_cost == Decimal("100.25")
        assert config.budget.alert_threshold_percent == 75.0
        assert config.budget.enable_fallback is False
        assert config.budget.week_start == 6
        assert config.breaker.probe_interval == timedelta(minutes=2)
        assert config.breaker.rate_limit_cooldown == timedelta(seconds=30)
        assert config.breaker.daily_cooldown == timedelta(hours=1)
        assert config.cache.ttl_seconds == 0
        assert config.safety_margin == 1.25
        assert config.cost_table.default_model == "model-a"
        assert config.cost_table.get_pricing("model-b").completion_cost_per_1k == Decimal("0.002")
        assert config.cost_table.get_pricing("model-b").max_units == 4096

    def test_sections_are_optional(self):
        config = load_gateway_config(self._write_config({"cache": {"ttl_seconds": 10}}))
        assert config.budget == BudgetConfig()
        assert config.breaker == BreakerConfig()
        assert "gpt-4" in config.cost_table

    def test_missing_file_raises_error(self):
        with pytest.raises(FileNotFoundError, match="Gateway config file not found"):
            load_gateway_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_config_raises_error(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("")
        with pytest.raises(ConfigurationError, match="Configuration file is empty"):
            load_gateway_config(path)

    def test_invalid_yaml_raises_error(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("budget: [unclosed")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_gateway_config(path)

    def test_unknown_top_level_keys_raise_error(self):
        with pytest.raises(ConfigurationError, match="Unknown configuration keys"):
            load_gateway_config(self._write_config({"budget": {}, "features": {}}))

    def test_unknown_budget_keys_raise_error(self):
        with pytest.raises(ConfigurationError, match="Unknown budget keys"):
            load_gateway_config(self._write_config({"budget": {"hourly_units": 10}}))

    def test_unknown_breaker_keys_raise_error(self):
        with pytest.raises(ConfigurationError, match="Unknown keys in breaker"):
            load_gateway_config(self._write_config({"breaker": {"probe_interval": 10}}))

    def test_invalid_section_type_raises_error(self):
        with pytest.raises(ConfigurationError, match="'budget' must be a dictionary"):
            load_gateway_config(self._write_config({"budget": [1, 2]}))

    def test_negative_quota_raises_error(self):
        with pytest.raises(ConfigurationError, match="daily_units must be a positive integer"):
            load_gateway_config(self._write_config({"budget": {"daily_units": -1}}))

    def test_zero_cost_limit_raises_error(self):
        with pytest.raises(ConfigurationError, match="weekly_cost must be a positive Decimal"):
            load_gateway_config(self._write_config({"budget": {"weekly_cost": 0}}))

    def test_non_numeric_cost_raises_error(self):
        with pytest.raises(ConfigurationError, match="must be a number"):
            load_gateway_config(self._write_config({"budget": {"daily_cost": "lots"}}))

    def test_fallback_requires_model(self):
        with pytest.raises(ConfigurationError, match="fallback_model is required"):
            load_gateway_config(self._write_config({"budget": {"fallback_model": None}}))

    def test_threshold_out_of_range(self):
        with pytest.raises(ConfigurationError, match="alert_threshold_percent"):
            load_gateway_config(self._write_config({"budget": {"alert_threshold_percent": 150}}))

    def test_non_positive_probe_interval(self):
        with pytest.raises(ConfigurationError, match="probe_interval must be positive"):
            load_gateway_config(self._write_config({"breaker": {"probe_interval_seconds": 0}}))

    def test_negative_ttl(self):
        with pytest.raises(ConfigurationError, match="ttl_seconds cannot be negative"):
            load_gateway_config(self._write_config({"cache": {"ttl_seconds": -1}}))

    def test_safety_margin_below_one(self):
        with pytest.raises(ConfigurationError, match="safety_margin"):
            load_gateway_config(self._write_config({"estimator": {"safety_margin": 0.5}}))

    def test_pricing_default_model_must_be_listed(self):
        config_data = {
            "pricing": {
                "default_model": "model-z",
                "models": {"model-a": {"input_cost_per_1k": 0.03, "output_cost_per_1k": 0.06}}
            }
        }
        with pytest.raises(ConfigurationError, match="default_model 'model-z'"):
            load_gateway_config(self._write_config(config_data))

    def test_pricing_entry_missing_rate(self):
        config_data = {
            "pricing": {
                "default_model": "model-a",
                "models": {"model-a": {"input_cost_per_1k": 0.03}}
            }
        }
        with pytest.raises(ConfigurationError, match="Missing required 'output_cost_per_1k' in pricing.models.model-a"):
            load_gateway_config(self._write_config(config_data))

    def test_pricing_unknown_entry_key(self):
        config_data = {
            "pricing": {
                "default_model": "model-a",
                "models": {"model-a": {"input_cost_per_1k": 0.03, "output_cost_per_1k": 0.06, "tier": 2}}
            }
        }
        with pytest.raises(ConfigurationError, match="Unknown keys in pricing.models.model-a"):
            load_gateway_config(self._write_config(config_data))

    @pytest.mark.parametrize("config_data", [
        {"budget": {"daily_cost": float("nan")}},
        {"budget": {"alert_threshold_percent": "abc"}},
        {"cache": {"ttl_seconds": "abc"}},
        {"estimator": {"safety_margin": "abc"}},
        {"estimator": {"safety_margin": float("nan")}},
        {"breaker": {"probe_interval_seconds": float("inf")}},
        {"breaker": {"daily_cooldown_seconds": 1e300}},
        {"pricing": {
            "default_model": "model-a",
            "models": {"model-a": {"input_cost_per_1k": 0.03, "output_cost_per_1k": 0.06, "max_units": "x"}}
        }},
    ])
    def test_malformed_numbers_raise_configuration_error(self, config_data):
        with pytest.raises(ConfigurationError):
            load_gateway_config(self._write_config(config_data))

    def test_nan_cost_limit_rejected_directly(self):
        with pytest.raises(ConfigurationError, match="daily_cost must be a positive Decimal"):
            BudgetConfig(daily_cost=Decimal("NaN"))


class TestGatewayConfigUpdates:
    """Test runtime budget updates."""

    def test_partial_update(self):
        config = GatewayConfig()
        updated = config.with_budget_updates({"daily_units": 42, "daily_cost": "1.5"})

        assert updated.budget.daily_units == 42
        assert updated.budget.daily_cost == Decimal("1.5")
        assert updated.budget.weekly_units == config.budget.weekly_units
        assert config.budget.daily_units == BudgetConfig().daily_units

    def test_update_is_validated(self):
        with pytest.raises(ConfigurationError, match="fallback_model is required"):
            GatewayConfig().with_budget_updates({"fallback_model": ""})

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            CacheConfig(ttl_seconds=-5)
