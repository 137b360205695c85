"""Per-asset results of one hedge sync cycle.

Every evaluated (hedge, asset slot) yields exactly one of these; consumers
branch on the concrete type.
"""

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class NoChange:
    hedge_id: int
    asset: str
    current_short: Decimal
    target_short: Decimal


@dataclass(frozen=True)
class Rebalanced:
    hedge_id: int
    asset: str
    old_short: Decimal
    new_short: Decimal
    realized_pnl: Decimal
    account: str | None = None


@dataclass(frozen=True)
class Closed:
    """Short fully closed because the pool side went to zero."""

    hedge_id: int
    asset: str
    old_short: Decimal
    realized_pnl: Decimal
    account: str | None = None


@dataclass(frozen=True)
class Skipped:
    hedge_id: int
    asset: str | None
    reason: str


@dataclass(frozen=True)
class Suppressed:
    """Recent attempts for this asset all failed; not retried this cycle."""

    hedge_id: int
    asset: str
    reason: str


@dataclass(frozen=True)
class Blocked:
    """The user's circuit breaker is open."""

    hedge_id: int
    asset: str
    reason: str


@dataclass(frozen=True)
class Failed:
    hedge_id: int
    asset: str
    error: str


AssetOutcome = NoChange | Rebalanced | Closed | Skipped | Suppressed | Blocked | Failed


@dataclass
class HedgeSyncResult:
    hedge_id: int
    outcomes: list = field(default_factory=list)
    error: str | None = None
    skipped: str | None = None

    def to_dict(self) -> dict:
        return {
            "hedge_id": self.hedge_id,
            "error": self.error,
            "skipped": self.skipped,
            "outcomes": [describe(o) for o in self.outcomes],
        }


def describe(outcome) -> dict:
    """JSON-friendly view of an outcome for the API and notifications."""
    data = {"type": type(outcome).__name__.lower()}
    for key, value in vars(outcome).items():
        data[key] = str(value) if isinstance(value, Decimal) else value
    return data
