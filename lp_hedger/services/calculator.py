"""Target hedge calculation for one LP position.

Maps each pool token to the exchange symbol it is hedged with, sizes the
target short as ``-(amount) * hedge_ratio`` and diffs it against what the
exchange currently holds. Two pool tokens that map to the same exchange
symbol are combined into one target, since one exchange position cannot be
split between them.
"""

from dataclasses import dataclass, asdict
from decimal import Decimal

from lp_hedger.utils.constants import map_token

ACTION_ADJUST = "adjust"
ACTION_CLOSE = "close"


@dataclass
class HedgeTarget:
    asset: str
    target_size: Decimal  # negative = short
    source_token: str
    source_amount: Decimal


@dataclass
class Adjustment:
    asset: str
    current_size: Decimal
    target_size: Decimal
    delta: Decimal
    source_token: str | None = None
    source_amount: Decimal = Decimal("0")
    action: str = ACTION_ADJUST

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("current_size", "target_size", "delta", "source_amount"):
            data[key] = float(data[key])
        return data


class HedgeCalculator:
    """Computes per-asset targets and adjustments for a position."""

    def __init__(self, hedge_ratio, token_mappings: dict[str, str | None] | None = None):
        self.hedge_ratio = Decimal(str(hedge_ratio))
        self.token_mappings = token_mappings or {}

    @classmethod
    def for_hedge(cls, hedge) -> "HedgeCalculator":
        return cls(hedge_ratio=hedge.target, token_mappings=hedge.token_mappings)

    @staticmethod
    def position_tokens(position) -> list[tuple[str, Decimal]]:
        return [
            (position.asset0, position.asset0_amount),
            (position.asset1, position.asset1_amount),
        ]

    def mapping_for(self, token_symbol: str | None) -> str | None:
        return map_token(token_symbol, self.token_mappings)

    def calculate_targets(self, tokens: list[tuple[str, Decimal]]) -> dict[str, HedgeTarget]:
        targets: dict[str, HedgeTarget] = {}
        for symbol, amount in tokens:
            asset = self.mapping_for(symbol)
            if not asset:
                continue
            amount = Decimal(str(amount or 0))
            target_size = -amount * self.hedge_ratio

            existing = targets.get(asset)
            if existing:
                existing.target_size += target_size
                existing.source_token = f"{existing.source_token}, {symbol}"
                existing.source_amount += amount
            else:
                targets[asset] = HedgeTarget(
                    asset=asset,
                    target_size=target_size,
                    source_token=symbol,
                    source_amount=amount,
                )
        return targets

    def calculate_adjustments(
        self,
        tokens: list[tuple[str, Decimal]],
        current_hedges: dict[str, Decimal],
    ) -> list[Adjustment]:
        """Diff targets against current signed sizes.

        Targets come first in token order; currently held assets that are no
        longer targeted follow as ``close`` adjustments.
        """
        targets = self.calculate_targets(tokens)
        adjustments = []

        for asset, target in targets.items():
            current_size = Decimal(str(current_hedges.get(asset, 0)))
            adjustments.append(Adjustment(
                asset=asset,
                current_size=current_size,
                target_size=target.target_size,
                delta=target.target_size - current_size,
                source_token=target.source_token,
                source_amount=target.source_amount,
            ))

        for asset, size in current_hedges.items():
            size = Decimal(str(size))
            if asset in targets or size == 0:
                continue
            adjustments.append(Adjustment(
                asset=asset,
                current_size=size,
                target_size=Decimal("0"),
                delta=-size,
                action=ACTION_CLOSE,
            ))

        return adjustments

    def calculate_notional_value(
        self,
        tokens: list[tuple[str, Decimal]],
        prices: dict[str, Decimal],
    ) -> Decimal:
        total = Decimal("0")
        for asset, target in self.calculate_targets(tokens).items():
            total += abs(target.target_size) * Decimal(str(prices.get(asset, 0)))
        return total
