"""Per-position rebalance: one audited unit covering every asset of a position.

Used for manual triggers from the API and for threshold-triggered auto
rebalances. Each run produces one RebalanceEvent that moves through
pending → executing → completed | failed.
"""

import logging
from decimal import Decimal

from sqlmodel import Session, select

from lp_hedger.database import engine
from lp_hedger.engine.account_allocator import AccountAllocator
from lp_hedger.engine.hedge_sync import get_hedge_lock
from lp_hedger.models.hedge import Hedge
from lp_hedger.models.position import Position
from lp_hedger.models.realized_pnl import RealizedPnl
from lp_hedger.models.rebalance_event import RebalanceEvent
from lp_hedger.models.user import User
from lp_hedger.services.calculator import HedgeCalculator
from lp_hedger.services.circuit_breaker import CircuitBreaker, CircuitOpenError
from lp_hedger.services.hyperliquid_client import client_for_user
from lp_hedger.services.order_executor import ExecutionError, OrderExecutor
from lp_hedger.services.safety_validator import SafetyValidationError, SafetyValidator
from lp_hedger.services.telegram_bot import notify
from lp_hedger.utils.constants import TRIGGER_MANUAL

logger = logging.getLogger(__name__)

CIRCUIT_OPEN = "circuit_open"
EXECUTION_ERROR = "execution_error"


def active_hedge_for(session: Session, position_id: int) -> Hedge | None:
    return session.exec(
        select(Hedge)
        .where(Hedge.position_id == position_id)
        .where(Hedge.active == True)
    ).first()


def hedge_accounts(hedge: Hedge, position: Position) -> dict[str, str | None]:
    """Account per exchange asset for the hedge's resolved slots.

    Unresolved slots are absent: until the allocator assigns one, the hedge
    owns no short on any account.
    """
    accounts: dict[str, str | None] = {}
    for slot in (0, 1):
        asset = hedge.exchange_asset_for(position.asset_for(slot))
        if asset is not None and hedge.account_assigned(slot):
            accounts[asset] = hedge.hl_account_for(slot)
    return accounts


async def current_hedge_sizes(client, hedge: Hedge, position: Position) -> tuple[dict[str, Decimal], dict[str, Decimal]]:
    """Signed exchange sizes and entry prices for the hedge's own assets."""
    sizes: dict[str, Decimal] = {}
    entry_prices: dict[str, Decimal] = {}
    for asset, account in hedge_accounts(hedge, position).items():
        held = await client.get_position(asset, account)
        if held is not None and held.size != 0:
            sizes[asset] = held.size
            entry_prices[asset] = held.entry_price
    return sizes, entry_prices


def _position_state(position: Position, hedge_sizes: dict[str, Decimal]) -> dict:
    return {
        "asset0": position.asset0,
        "asset1": position.asset1,
        "asset0_amount": float(position.asset0_amount),
        "asset1_amount": float(position.asset1_amount),
        "asset0_price_usd": float(position.asset0_price_usd),
        "asset1_price_usd": float(position.asset1_price_usd),
        "hedges": {asset: float(size) for asset, size in hedge_sizes.items()},
    }


def _save(event: RebalanceEvent) -> RebalanceEvent:
    with Session(engine) as session:
        event = session.merge(event)
        session.commit()
        session.refresh(event)
        return event


class RebalanceExecution:
    def __init__(
        self,
        client_factory=client_for_user,
        breaker_store=None,
        validator: SafetyValidator | None = None,
        notifier=notify,
    ):
        self.client_factory = client_factory
        self.breaker_store = breaker_store
        self.validator = validator or SafetyValidator.from_settings()
        self.notifier = notifier

    async def run(self, position_id: int, trigger_type: str = TRIGGER_MANUAL) -> RebalanceEvent | None:
        """Rebalance every asset of a position. Returns the audit event, or None if nothing ran."""
        with Session(engine) as session:
            position = session.get(Position, position_id)
            hedge = active_hedge_for(session, position_id) if position else None
            user = session.get(User, position.user_id) if position else None

        if position is None or hedge is None or user is None:
            logger.info(f"[position_{position_id}] No active hedge, nothing to rebalance")
            return None

        label = f"hedge_{hedge.id}"
        # Same lock as hedge sync: one run per hedge at a time
        lock = await get_hedge_lock(hedge.id)
        if lock.locked():
            logger.warning(f"[{label}] Rebalance already in progress, skipping")
            return None

        async with lock:
            client = self.client_factory(user.id)
            if client is None:
                logger.error(f"[{label}] No active credential for user {user.id}")
                return None

            try:
                return await self._run(position, hedge, user, client, trigger_type, label)
            finally:
                await client.close()

    async def _run(self, position: Position, hedge: Hedge, user: User, client, trigger_type: str, label: str) -> RebalanceEvent:
        breaker = CircuitBreaker.for_user(user.id, store=self.breaker_store)
        calculator = HedgeCalculator.for_hedge(hedge)
        tokens = HedgeCalculator.position_tokens(position)

        current, entry_prices = await current_hedge_sizes(client, hedge, position)
        adjustments = calculator.calculate_adjustments(tokens, current)

        event = _save(RebalanceEvent(
            position_id=position.id,
            hedge_id=hedge.id,
            trigger_type=trigger_type,
            paper_trade=user.paper_trading,
            pre_state=_position_state(position, current),
            intended_actions=[adj.to_dict() for adj in adjustments],
        ))

        if await breaker.is_open():
            logger.warning(f"[{label}] Circuit open, rebalance blocked")
            event.mark_failed("Circuit breaker is open due to consecutive failures", CIRCUIT_OPEN)
            return _save(event)

        event.mark_executing()
        event = _save(event)

        try:
            prices = await client.market_prices([adj.asset for adj in adjustments])
            self.validator.validate_adjustments(adjustments, prices)
            event.warnings = self.validator.warnings_for(adjustments, prices)
            event = _save(event)
            accounts = await self._accounts_for(hedge, position, user, client, adjustments)
        except SafetyValidationError as e:
            logger.warning(f"[{label}] Rebalance rejected ({e.code}): {e}")
            event.mark_failed(str(e), e.code)
            self.notifier(f"Hedge {hedge.id} rebalance rejected: {e}")
            return _save(event)
        except Exception as e:
            logger.error(f"[{label}] Rebalance preparation failed: {e}")
            event.mark_failed(str(e), EXECUTION_ERROR)
            _save(event)
            raise

        executor = OrderExecutor(
            client, paper_trading=user.paper_trading, validator=self.validator, accounts=accounts
        )

        async def _execute():
            result = await executor.execute(adjustments, prices, entry_prices)
            if not result.success:
                raise ExecutionError("; ".join(result.errors))
            return result

        try:
            result = await breaker.call(_execute)
        except CircuitOpenError as e:
            event.mark_failed(str(e), CIRCUIT_OPEN)
            return _save(event)
        except Exception as e:
            logger.error(f"[{label}] Rebalance failed: {e}")
            event.mark_failed(str(e), EXECUTION_ERROR)
            _save(event)
            self.notifier(f"Hedge {hedge.id} rebalance FAILED: {e}")
            raise

        if not user.paper_trading:
            await self._release_closed(hedge, position, user, client, adjustments)

        realized = self._record_realized(position.id, event.id, result.actions)
        post = {adj.asset: adj.target_size for adj in adjustments if adj.target_size != 0}
        event.mark_completed(result.actions, _position_state(position, post))
        event = _save(event)

        mode = "PAPER " if user.paper_trading else ""
        self.notifier(
            f"{mode}Hedge {hedge.id} rebalanced ({trigger_type}): "
            f"{len(result.actions)} adjustments, realized ${realized:.2f}"
        )
        logger.info(f"[{label}] Rebalance event {event.id} completed")
        return event

    async def _accounts_for(self, hedge: Hedge, position: Position, user: User, client, adjustments) -> dict[str, str | None]:
        """Resolve and fund the account for every asset that ends up with a short."""
        accounts = hedge_accounts(hedge, position)
        if user.paper_trading:
            return accounts

        allocator = AccountAllocator(
            client, user.id, leverage=user.hyperliquid_leverage, cross_margin=user.cross_margin
        )
        for adj in adjustments:
            if adj.target_size == 0:
                continue
            slot = self._slot_for(hedge, position, adj.asset)
            if slot is None:
                continue
            account = await allocator.resolve_account(hedge.id, slot, adj.asset)
            await allocator.prepare_for_open(account, adj.asset, abs(adj.target_size))
            accounts[adj.asset] = account
        return accounts

    async def _release_closed(self, hedge: Hedge, position: Position, user: User, client, adjustments):
        allocator = AccountAllocator(client, user.id)
        for adj in adjustments:
            if adj.target_size != 0:
                continue
            slot = self._slot_for(hedge, position, adj.asset)
            if slot is not None and hedge.hl_account_for(slot) is not None:
                await allocator.release_account(hedge.id, slot)

    @staticmethod
    def _slot_for(hedge: Hedge, position: Position, asset: str) -> int | None:
        for slot in (0, 1):
            if hedge.exchange_asset_for(position.asset_for(slot)) == asset:
                return slot
        return None

    @staticmethod
    def _record_realized(position_id: int, event_id: int, actions: list[dict]) -> Decimal:
        total = Decimal("0")
        with Session(engine) as session:
            for action in actions:
                if "realized_pnl" not in action:
                    continue
                entry = Decimal(str(action["entry_price"]))
                exit_price = Decimal(str(action["price"]))
                size = Decimal(str(action["size_closed"]))
                pnl = RealizedPnl.short_pnl(entry, exit_price, size)
                session.add(RealizedPnl(
                    position_id=position_id,
                    rebalance_event_id=event_id,
                    asset=action["asset"],
                    size_closed=size,
                    entry_price=entry,
                    exit_price=exit_price,
                    realized_pnl=pnl,
                ))
                total += pnl
            session.commit()
        return total
