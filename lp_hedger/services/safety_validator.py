"""Pre-trade guardrails applied right before execution.

Independent of the drift analyzer: the analyzer decides whether to act, the
validator decides whether the size of the action is sane. Its drift check
uses max(|current|, |target|) as the denominator so that stale or corrupt
size data is caught without second-guessing the rebalance decision.
"""

from decimal import Decimal

from lp_hedger.config import settings
from lp_hedger.services.calculator import Adjustment

MISSING_ASSET = "missing_asset"
TRADE_TOO_LARGE = "trade_too_large"
EXCESSIVE_DRIFT = "excessive_drift"
TOTAL_TOO_LARGE = "total_too_large"


class SafetyValidationError(Exception):
    """An adjustment was rejected; ``code`` is machine readable."""

    def __init__(self, message: str, code: str = "unknown"):
        super().__init__(message)
        self.code = code


class SafetyValidator:
    MAX_TRADE_SIZE_USD = Decimal("100000")
    MAX_REASONABLE_DRIFT = Decimal("5")
    MIN_HEDGE_VALUE_USD = Decimal("10")
    LARGE_TRADE_WARNING_USD = Decimal("50000")

    def __init__(
        self,
        max_trade_size_usd=None,
        max_reasonable_drift=None,
        min_hedge_value_usd=None,
        large_trade_warning_usd=None,
    ):
        self.max_trade_size_usd = _dec_or(max_trade_size_usd, self.MAX_TRADE_SIZE_USD)
        self.max_reasonable_drift = _dec_or(max_reasonable_drift, self.MAX_REASONABLE_DRIFT)
        self.min_hedge_value_usd = _dec_or(min_hedge_value_usd, self.MIN_HEDGE_VALUE_USD)
        self.large_trade_warning_usd = _dec_or(large_trade_warning_usd, self.LARGE_TRADE_WARNING_USD)

    @classmethod
    def from_settings(cls) -> "SafetyValidator":
        return cls(
            max_trade_size_usd=settings.max_trade_size_usd,
            max_reasonable_drift=settings.max_reasonable_drift,
            min_hedge_value_usd=settings.min_hedge_value_usd,
            large_trade_warning_usd=settings.large_trade_warning_usd,
        )

    def validate_adjustments(self, adjustments: list[Adjustment], prices: dict[str, Decimal]) -> bool:
        """Raise SafetyValidationError on the first violation."""
        for adj in adjustments:
            self.validate_adjustment(adj, prices)
        self.validate_total_value(adjustments, prices)
        return True

    def validate_adjustment(self, adjustment: Adjustment, prices: dict[str, Decimal]) -> bool:
        if not adjustment.asset:
            raise SafetyValidationError("Asset symbol is required", code=MISSING_ASSET)

        price = _price(prices, adjustment.asset)
        if price > 0:
            self.validate_trade_size(abs(adjustment.delta) * price, adjustment.asset)

        self.validate_drift(adjustment)
        return True

    def validate_trade_size(self, value_usd: Decimal, asset: str) -> bool:
        if value_usd <= self.max_trade_size_usd:
            return True
        raise SafetyValidationError(
            f"Trade size ${value_usd:.2f} for {asset} exceeds maximum ${self.max_trade_size_usd}",
            code=TRADE_TOO_LARGE,
        )

    def validate_drift(self, adjustment: Adjustment) -> bool:
        current = abs(adjustment.current_size)
        target = abs(adjustment.target_size)
        if current == 0 or target == 0:
            return True

        drift = abs(adjustment.delta) / max(current, target)
        if drift <= self.max_reasonable_drift:
            return True
        raise SafetyValidationError(
            f"Drift of {float(drift) * 100:.1f}% for {adjustment.asset} is suspiciously large",
            code=EXCESSIVE_DRIFT,
        )

    def validate_total_value(self, adjustments: list[Adjustment], prices: dict[str, Decimal]) -> bool:
        total = self.total_value(adjustments, prices)
        if total <= self.max_trade_size_usd * 2:
            return True
        raise SafetyValidationError(
            f"Total trade value ${total:.2f} exceeds safety limits",
            code=TOTAL_TOO_LARGE,
        )

    @staticmethod
    def total_value(adjustments: list[Adjustment], prices: dict[str, Decimal]) -> Decimal:
        return sum(
            (abs(adj.delta) * _price(prices, adj.asset) for adj in adjustments),
            Decimal("0"),
        )

    def should_skip_hedge(self, value_usd) -> bool:
        """True when a notional is too small to be worth hedging."""
        return Decimal(str(value_usd)) < self.min_hedge_value_usd

    def warnings_for(self, adjustments: list[Adjustment], prices: dict[str, Decimal]) -> list[str]:
        warnings = []
        for adj in adjustments:
            value = abs(adj.delta) * _price(prices, adj.asset)
            if value > self.large_trade_warning_usd:
                warnings.append(f"Large trade: {adj.asset} ~${value:.0f}")
            if adj.current_size == 0 and adj.target_size != 0:
                warnings.append(f"New position: {adj.asset}")
        return warnings


def _price(prices: dict[str, Decimal], asset: str | None) -> Decimal:
    return Decimal(str(prices.get(asset) or 0))


def _dec_or(value, default: Decimal) -> Decimal:
    return default if value is None else Decimal(str(value))
