"""Pre-trade guardrails."""

from decimal import Decimal

import pytest

from lp_hedger.services.calculator import ACTION_CLOSE, Adjustment
from lp_hedger.services.safety_validator import (
    EXCESSIVE_DRIFT,
    MISSING_ASSET,
    TOTAL_TOO_LARGE,
    TRADE_TOO_LARGE,
    SafetyValidationError,
    SafetyValidator,
)

PRICES = {"ETH": Decimal("2000"), "BTC": Decimal("50000")}


def _adj(asset, current, target, **kwargs):
    current, target = Decimal(str(current)), Decimal(str(target))
    return Adjustment(asset=asset, current_size=current, target_size=target, delta=target - current, **kwargs)


class TestTradeSize:
    def test_exactly_at_ceiling_passes(self):
        validator = SafetyValidator()
        # 50 ETH * 2000 = 100,000
        assert validator.validate_adjustment(_adj("ETH", 0, -50), PRICES)

    def test_one_cent_over_fails(self):
        validator = SafetyValidator()
        with pytest.raises(SafetyValidationError) as exc:
            validator.validate_trade_size(Decimal("100000.01"), "ETH")
        assert exc.value.code == TRADE_TOO_LARGE

    def test_unpriced_asset_skips_size_check(self):
        assert SafetyValidator().validate_adjustment(_adj("XYZ", 0, -10_000_000), PRICES)

    def test_configurable_limit(self):
        validator = SafetyValidator(max_trade_size_usd=1000)
        with pytest.raises(SafetyValidationError):
            validator.validate_adjustment(_adj("ETH", 0, -1), PRICES)


class TestDrift:
    def test_uses_larger_side_as_denominator(self):
        # |delta| / max(|current|, |target|) = 5 / 6 < 5
        assert SafetyValidator().validate_drift(_adj("ETH", -1, -6))

    def test_excessive_drift(self):
        validator = SafetyValidator(max_reasonable_drift="0.5")
        with pytest.raises(SafetyValidationError) as exc:
            validator.validate_drift(_adj("ETH", -1, -6))
        assert exc.value.code == EXCESSIVE_DRIFT

    def test_zero_side_passes(self):
        validator = SafetyValidator(max_reasonable_drift="0.1")
        assert validator.validate_drift(_adj("ETH", 0, -6))
        assert validator.validate_drift(_adj("ETH", -6, 0, action=ACTION_CLOSE))


class TestBatch:
    def test_missing_asset(self):
        with pytest.raises(SafetyValidationError) as exc:
            SafetyValidator().validate_adjustments([_adj("", 0, -1)], PRICES)
        assert exc.value.code == MISSING_ASSET

    def test_total_limit(self):
        validator = SafetyValidator()
        adjustments = [_adj("ETH", 0, -50), _adj("BTC", 0, -2), _adj("ETH", -50, "-50.5")]
        # 100,000 + 100,000 + 1,000
        with pytest.raises(SafetyValidationError) as exc:
            validator.validate_adjustments(adjustments, PRICES)
        assert exc.value.code == TOTAL_TOO_LARGE

    def test_valid_batch(self):
        assert SafetyValidator().validate_adjustments([_adj("ETH", -4, -5), _adj("BTC", 0, "-0.1")], PRICES)


class TestHelpers:
    def test_should_skip_hedge(self):
        validator = SafetyValidator()
        assert validator.should_skip_hedge(Decimal("9.99"))
        assert not validator.should_skip_hedge(10)

    def test_warnings(self):
        validator = SafetyValidator(large_trade_warning_usd=1000)
        warnings = validator.warnings_for([_adj("ETH", 0, -1)], PRICES)
        assert warnings == ["Large trade: ETH ~$2000", "New position: ETH"]

    def test_from_settings(self):
        validator = SafetyValidator.from_settings()
        assert validator.max_trade_size_usd == Decimal("100000")
        assert validator.min_hedge_value_usd == Decimal("10")
