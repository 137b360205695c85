"""Database models."""

from lp_hedger.models.user import User
from lp_hedger.models.credential import Credential
from lp_hedger.models.wallet import Wallet
from lp_hedger.models.position import Position
from lp_hedger.models.hedge import Hedge
from lp_hedger.models.short_rebalance import ShortRebalance
from lp_hedger.models.pnl_snapshot import PnlSnapshot
from lp_hedger.models.rebalance_event import RebalanceEvent
from lp_hedger.models.realized_pnl import RealizedPnl

__all__ = [
    "User",
    "Credential",
    "Wallet",
    "Position",
    "Hedge",
    "ShortRebalance",
    "PnlSnapshot",
    "RebalanceEvent",
    "RealizedPnl",
]
