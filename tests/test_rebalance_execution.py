"""Per-position rebalance runs and their audit events."""

import asyncio
from decimal import Decimal

import pytest
from sqlmodel import Session, select

from lp_hedger.database import engine
from lp_hedger.engine.hedge_sync import HedgeSyncer, get_hedge_lock, record_rebalance
from lp_hedger.engine.rebalance_execution import (
    CIRCUIT_OPEN,
    EXECUTION_ERROR,
    RebalanceExecution,
    current_hedge_sizes,
    hedge_accounts,
)
from lp_hedger.models.hedge import Hedge
from lp_hedger.models.position import Position
from lp_hedger.models.realized_pnl import RealizedPnl
from lp_hedger.models.rebalance_event import RebalanceEvent
from lp_hedger.services.circuit_breaker import CircuitBreaker
from lp_hedger.services.order_executor import ExecutionError
from lp_hedger.services.safety_validator import TRADE_TOO_LARGE, SafetyValidator
from lp_hedger.utils.constants import EVENT_COMPLETED, EVENT_FAILED, TRIGGER_THRESHOLD


def _events() -> list[RebalanceEvent]:
    with Session(engine) as session:
        return list(session.exec(select(RebalanceEvent).order_by(RebalanceEvent.id)).all())


def _load(ids) -> tuple[Hedge, Position]:
    with Session(engine) as session:
        return session.get(Hedge, ids.hedge_id), session.get(Position, ids.position_id)


@pytest.fixture
def execution(exchange, breaker_store, notifier):
    return RebalanceExecution(
        client_factory=lambda user_id: exchange,
        breaker_store=breaker_store,
        validator=SafetyValidator(),
        notifier=notifier,
    )


class TestRun:
    @pytest.mark.asyncio
    async def test_paper_run_completes_without_orders(self, seed, exchange, execution, notifier):
        ids = seed(paper_trading=True)

        event = await execution.run(ids.position_id)

        assert event.status == EVENT_COMPLETED
        assert event.paper_trade
        assert event.hedge_id == ids.hedge_id
        assert event.started_at is not None and event.completed_at is not None
        assert event.intended_actions[0]["asset"] == "ETH"
        assert event.executed_actions[0]["status"] == "filled"
        assert event.executed_actions[0]["paper"] is True
        assert event.warnings == ["New position: ETH"]
        assert event.post_state["hedges"] == {"ETH": -5.0}
        assert exchange.orders == []
        assert exchange.closed
        assert notifier.call_args.args[0].startswith("PAPER Hedge")

    @pytest.mark.asyncio
    async def test_live_cover_records_realized_pnl(self, seed, exchange, execution):
        ids = seed(asset0_account_assigned=True)
        exchange.set_short("ETH", "6", entry_price="2100")

        event = await execution.run(ids.position_id, trigger_type=TRIGGER_THRESHOLD)

        assert event.status == EVENT_COMPLETED
        assert event.trigger_type == TRIGGER_THRESHOLD
        assert event.pre_state["hedges"] == {"ETH": -6.0}
        assert exchange.short_size("ETH") == Decimal("5")
        assert exchange.orders[0]["reduce_only"] is False

        with Session(engine) as session:
            (pnl,) = session.exec(select(RealizedPnl)).all()
        assert pnl.rebalance_event_id == event.id
        assert float(pnl.size_closed) == pytest.approx(1)
        assert float(pnl.realized_pnl) == pytest.approx(100)

    @pytest.mark.asyncio
    async def test_live_first_open_resolves_account(self, seed, exchange, execution):
        ids = seed()

        event = await execution.run(ids.position_id)

        assert event.status == EVENT_COMPLETED
        assert exchange.short_size("ETH") == Decimal("5")
        hedge, _ = _load(ids)
        assert hedge.asset0_account_assigned
        assert exchange.leverage_updates

    @pytest.mark.asyncio
    async def test_validation_failure_marks_event(self, seed, exchange, breaker_store, notifier):
        ids = seed(asset0_account_assigned=True)
        execution = RebalanceExecution(
            lambda user_id: exchange, breaker_store, SafetyValidator(max_trade_size_usd=1000), notifier
        )

        event = await execution.run(ids.position_id)

        assert event.status == EVENT_FAILED
        assert event.error_code == TRADE_TOO_LARGE
        assert exchange.orders == []
        assert "rejected" in notifier.call_args.args[0]

    @pytest.mark.asyncio
    async def test_open_circuit_fails_event(self, seed, exchange, execution, breaker_store):
        ids = seed(asset0_account_assigned=True)
        breaker = CircuitBreaker.for_user(ids.user_id, store=breaker_store)
        for _ in range(3):
            await breaker.record_failure()

        event = await execution.run(ids.position_id)

        assert event.status == EVENT_FAILED
        assert event.error_code == CIRCUIT_OPEN
        assert event.started_at is None
        assert exchange.orders == []

    @pytest.mark.asyncio
    async def test_execution_failure_raises_and_records(self, seed, exchange, execution, breaker_store, rejected):
        ids = seed(asset0_account_assigned=True)
        exchange.errors["place_order"] = [rejected]

        with pytest.raises(ExecutionError):
            await execution.run(ids.position_id)

        (event,) = _events()
        assert event.status == EVENT_FAILED
        assert event.error_code == EXECUTION_ERROR
        assert "minimum value" in event.error_message
        assert await CircuitBreaker.for_user(ids.user_id, store=breaker_store).failures() == 1

    @pytest.mark.asyncio
    async def test_no_active_hedge(self, seed, execution):
        ids = seed(active=False)
        assert await execution.run(ids.position_id) is None
        assert _events() == []

    @pytest.mark.asyncio
    async def test_no_credential(self, seed, breaker_store, notifier):
        ids = seed()
        execution = RebalanceExecution(lambda user_id: None, breaker_store, SafetyValidator(), notifier)
        assert await execution.run(ids.position_id) is None


class TestOverlap:
    @pytest.mark.asyncio
    async def test_skips_while_hedge_is_locked(self, seed, exchange, execution):
        ids = seed(asset0_account_assigned=True)
        exchange.set_short("ETH", "4.7")

        lock = await get_hedge_lock(ids.hedge_id)
        async with lock:
            assert await execution.run(ids.position_id) is None

        assert exchange.orders == []
        assert _events() == []

    @pytest.mark.asyncio
    async def test_concurrent_hedge_sync_is_skipped(self, seed, exchange, execution, breaker_store, notifier):
        ids = seed(asset0_account_assigned=True)
        exchange.set_short("ETH", "4.7")
        place_order = exchange.place_order

        async def yielding_place_order(*args, **kwargs):
            await asyncio.sleep(0)
            return await place_order(*args, **kwargs)

        exchange.place_order = yielding_place_order
        syncer = HedgeSyncer(
            client_factory=lambda user_id: exchange, breaker_store=breaker_store, notifier=notifier
        )

        event, result = await asyncio.gather(
            execution.run(ids.position_id), syncer.sync_hedge(ids.hedge_id)
        )

        assert event.status == EVENT_COMPLETED
        assert result.skipped == "Previous sync still in progress"
        assert exchange.short_size("ETH") == Decimal("5")


class TestHedgeAccounts:
    def test_unassigned_slots_are_absent(self, seed):
        hedge, position = _load(seed())
        assert hedge_accounts(hedge, position) == {}

    def test_resolved_slots_only(self, seed):
        ids = seed(asset0="WETH", asset1="WBTC", asset1_hl_account="0xsub2", asset1_account_assigned=True)
        hedge, position = _load(ids)
        assert hedge_accounts(hedge, position) == {"BTC": "0xsub2"}

    def test_past_trades_do_not_claim_an_account(self, seed):
        # A reactivated hedge traded ETH on main before; another hedge may own it now
        ids = seed()
        record_rebalance(ids.hedge_id, "WETH", "ETH", None, Decimal("1"), Decimal("0"), Decimal("0"))
        hedge, position = _load(ids)
        assert hedge_accounts(hedge, position) == {}

    @pytest.mark.asyncio
    async def test_current_sizes_ignore_other_hedges(self, seed, exchange):
        ids = seed(asset0_account_assigned=True)
        exchange.set_short("ETH", "5", entry_price="1999")
        exchange.set_short("ETH", "3", account="0xother")
        exchange.set_short("BTC", "1")
        hedge, position = _load(ids)

        sizes, entries = await current_hedge_sizes(exchange, hedge, position)

        assert sizes == {"ETH": Decimal("-5")}
        assert entries == {"ETH": Decimal("1999")}
