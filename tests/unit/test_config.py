"""
test_config.py - Unit tests for LendingConfig
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from loan_ledger import DEFAULT_CONFIG, LendingConfig, RiskBands


class TestDefaults:

    def test_defaults(self):
        config = LendingConfig()
        assert config.default_target_ltv_percent == Decimal("80")
        assert config.max_ltv_percent == Decimal("100")
        assert config.liquidation_threshold_percent == Decimal("85")
        assert config.automation_lead_time == timedelta(hours=1)
        assert config.automation_enabled is True
        assert config.risk_bands == RiskBands()
        assert "USDC" in config.stable_assets

    def test_default_instance(self):
        assert DEFAULT_CONFIG == LendingConfig()

    def test_interest_table_not_shared(self):
        a = LendingConfig()
        b = LendingConfig()
        assert a.interest_rates is not b.interest_rates


class TestCoercion:

    def test_numbers_become_decimal(self):
        config = LendingConfig(default_target_ltv_percent=75, liquidation_threshold_percent=90.5)
        assert config.default_target_ltv_percent == Decimal("75")
        assert config.liquidation_threshold_percent == Decimal("90.5")

    def test_asset_symbols_uppercased(self):
        config = LendingConfig(interest_rates={"wbtc": 8}, stable_assets={"usdc"})
        assert config.interest_rates == {"WBTC": Decimal("8")}
        assert config.stable_assets == frozenset({"USDC"})

    def test_lead_time_from_seconds(self):
        assert LendingConfig(automation_lead_time=1800).automation_lead_time == timedelta(minutes=30)

    def test_risk_bands_from_mapping(self):
        config = LendingConfig(risk_bands={"safe_max": 30, "moderate_max": 50, "high_max": 65})
        assert config.risk_bands.safe_max == Decimal("30")


class TestValidation:

    @pytest.mark.parametrize("kwargs", [
        {"max_ltv_percent": 0},
        {"max_ltv_percent": 120},
        {"default_target_ltv_percent": 0},
        {"default_target_ltv_percent": 90, "max_ltv_percent": 85},
        {"liquidation_threshold_percent": 101},
        {"automation_lead_time": timedelta(seconds=-1)},
        {"collaborator_timeout_seconds": 0},
        {"interest_rates": {"ETH": -1}},
        {"default_volatile_rate": -0.5},
    ])
    def test_rejected(self, kwargs):
        with pytest.raises(ValueError):
            LendingConfig(**kwargs)


class TestFromDict:

    def test_from_dict(self):
        config = LendingConfig.from_dict({"max_ltv_percent": 90, "automation_enabled": False})
        assert config.max_ltv_percent == Decimal("90")
        assert config.automation_enabled is False

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError, match="Unknown config keys"):
            LendingConfig.from_dict({"max_ltv": 90})
