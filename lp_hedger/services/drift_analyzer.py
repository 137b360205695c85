"""Drift analysis: one needs-rebalance decision per position."""

from dataclasses import dataclass, field
from decimal import Decimal

from lp_hedger.services.calculator import Adjustment, HedgeCalculator


@dataclass
class AnalysisResult:
    needs_rebalance: bool
    drift: Decimal
    reason: str
    adjustments: list[Adjustment] = field(default_factory=list)


def format_percent(value) -> str:
    return f"{float(value) * 100:.2f}%"


def drift_for(adjustment: Adjustment) -> Decimal:
    """Relative deviation of one asset.

    0 when nothing is held and nothing is wanted, 1.0 when exactly one side
    is zero, otherwise |delta| / |target|.
    """
    current = abs(adjustment.current_size)
    target = abs(adjustment.target_size)
    if current == 0 and target == 0:
        return Decimal("0")
    if current == 0 or target == 0:
        return Decimal("1")
    return abs(adjustment.delta) / target


class DriftAnalyzer:
    def __init__(self, threshold):
        self.threshold = Decimal(str(threshold))

    @classmethod
    def for_hedge(cls, hedge) -> "DriftAnalyzer":
        return cls(threshold=hedge.tolerance)

    def max_drift(self, adjustments: list[Adjustment]) -> Decimal:
        return max((drift_for(adj) for adj in adjustments), default=Decimal("0"))

    def analyze(self, adjustments: list[Adjustment]) -> AnalysisResult:
        if not adjustments:
            return AnalysisResult(
                needs_rebalance=False,
                drift=Decimal("0"),
                reason="No adjustments calculated",
            )

        max_drift = self.max_drift(adjustments)
        drift_str = format_percent(max_drift)
        threshold_str = format_percent(self.threshold)

        if max_drift >= self.threshold:
            return AnalysisResult(
                needs_rebalance=True,
                drift=max_drift,
                reason=f"Drift {drift_str} exceeds threshold {threshold_str}",
                adjustments=adjustments,
            )
        return AnalysisResult(
            needs_rebalance=False,
            drift=max_drift,
            reason=f"Drift {drift_str} within threshold {threshold_str}",
            adjustments=adjustments,
        )

    def analyze_position(self, position, calculator: HedgeCalculator, current_hedges: dict[str, Decimal]) -> AnalysisResult:
        tokens = HedgeCalculator.position_tokens(position)
        return self.analyze(calculator.calculate_adjustments(tokens, current_hedges))


def analyze_hedge(hedge, position, current_hedges: dict[str, Decimal]) -> AnalysisResult:
    """Analyze a position using its hedge's target as ratio and tolerance as threshold."""
    if hedge is None:
        return AnalysisResult(needs_rebalance=False, drift=Decimal("0"), reason="No hedge configuration")
    return DriftAnalyzer.for_hedge(hedge).analyze_position(
        position, HedgeCalculator.for_hedge(hedge), current_hedges
    )


def positions_needing_rebalance(items) -> list:
    """Filter (hedge, position, current_hedges) triples down to the ones needing a rebalance."""
    return [
        (hedge, position, current)
        for hedge, position, current in items
        if analyze_hedge(hedge, position, current).needs_rebalance
    ]


def any_exceeds_threshold(items) -> bool:
    return any(
        analyze_hedge(hedge, position, current).needs_rebalance
        for hedge, position, current in items
    )
