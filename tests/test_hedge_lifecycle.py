"""Hedge creation, updates, destruction and emergency stop."""

from decimal import Decimal

import pytest
from sqlmodel import Session, select

from lp_hedger.database import engine
from lp_hedger.engine import hedge_sync
from lp_hedger.engine.account_allocator import AccountAllocator, claimed_accounts
from lp_hedger.engine.hedge_sync import record_rebalance
from lp_hedger.models.hedge import Hedge
from lp_hedger.models.rebalance_event import RebalanceEvent
from lp_hedger.models.short_rebalance import ShortRebalance
from lp_hedger.services.hedge_lifecycle import create_hedge, destroy_hedge, run_emergency_stop, update_hedge


def _no_client(user_id):
    raise AssertionError("exchange must not be touched")


class TestCreateHedge:
    def test_creates_for_unhedged_position(self, seed):
        ids = seed(active=False)
        hedge = create_hedge(ids.position_id, target=Decimal("0.8"), token_mappings={"WETH": "ETH"})
        assert hedge.id != ids.hedge_id
        assert hedge.active
        assert hedge.token_mappings == {"WETH": "ETH"}

    def test_rejects_second_active_hedge(self, seed):
        ids = seed()
        with pytest.raises(ValueError, match="already has an active hedge"):
            create_hedge(ids.position_id)

    def test_unknown_position(self):
        with pytest.raises(ValueError, match="not found"):
            create_hedge(999)


class TestDestroyHedge:
    @pytest.mark.asyncio
    async def test_closes_shorts_and_deletes(self, seed, exchange):
        ids = seed(asset0_hl_account="0xsub1", asset0_account_assigned=True)
        exchange.set_short("ETH", "5", account="0xsub1")
        exchange.balances["0xsub1"] = Decimal("3000")
        record_rebalance(ids.hedge_id, "WETH", "ETH", "0xsub1", Decimal("0"), Decimal("5"), Decimal("0"))
        with Session(engine) as session:
            session.add(RebalanceEvent(position_id=ids.position_id, hedge_id=ids.hedge_id, trigger_type="manual"))
            session.commit()

        closed = await destroy_hedge(ids.hedge_id, client_factory=lambda user_id: exchange)

        assert closed == 1
        assert exchange.short_size("ETH", "0xsub1") == 0
        assert ("withdraw", "0xsub1", Decimal("3000")) in exchange.transfers
        assert exchange.closed
        with Session(engine) as session:
            assert session.get(Hedge, ids.hedge_id) is None
            assert session.exec(select(ShortRebalance)).all() == []
            (event,) = session.exec(select(RebalanceEvent)).all()
            assert event.hedge_id is None
            assert event.position_id == ids.position_id

    @pytest.mark.asyncio
    async def test_paper_user_skips_exchange(self, seed):
        ids = seed(paper_trading=True)
        assert await destroy_hedge(ids.hedge_id, client_factory=_no_client) == 0
        with Session(engine) as session:
            assert session.get(Hedge, ids.hedge_id) is None

    @pytest.mark.asyncio
    async def test_live_user_without_credential(self, seed):
        ids = seed()
        with pytest.raises(ValueError, match="No active credential"):
            await destroy_hedge(ids.hedge_id, client_factory=lambda user_id: None)
        with Session(engine) as session:
            assert session.get(Hedge, ids.hedge_id) is not None

    @pytest.mark.asyncio
    async def test_unknown_hedge(self):
        with pytest.raises(ValueError, match="not found"):
            await destroy_hedge(999)

    @pytest.mark.asyncio
    async def test_inactive_hedge_leaves_exchange_alone(self, seed):
        # Its stale main-account slot may belong to another hedge by now
        ids = seed(active=False, asset0_account_assigned=True)
        assert await destroy_hedge(ids.hedge_id, client_factory=_no_client) == 0
        with Session(engine) as session:
            assert session.get(Hedge, ids.hedge_id) is None


class TestUpdateHedge:
    @pytest.mark.asyncio
    async def test_deactivation_closes_shorts_and_frees_slots(self, seed, exchange):
        ids = seed(asset0_account_assigned=True)
        exchange.set_short("ETH", "5")

        hedge = await update_hedge(ids.hedge_id, {"active": False}, client_factory=lambda user_id: exchange)

        assert not hedge.active
        assert not hedge.asset0_account_assigned
        assert exchange.short_size("ETH") == 0
        with Session(engine) as session:
            (row,) = session.exec(select(ShortRebalance)).all()
        assert row.message == "hedge deactivated"
        assert (row.asset, row.exchange_asset) == ("WETH", "ETH")
        assert float(row.old_short_size) == pytest.approx(5)

    @pytest.mark.asyncio
    async def test_remapping_closes_sub_account_short(self, seed, exchange):
        ids = seed(asset0_hl_account="0xsub1", asset0_account_assigned=True)
        exchange.set_short("ETH", "5", account="0xsub1")
        exchange.balances["0xsub1"] = Decimal("3000")

        hedge = await update_hedge(
            ids.hedge_id, {"token_mappings": {"WETH": None}}, client_factory=lambda user_id: exchange
        )

        assert hedge.active
        assert hedge.token_mappings == {"WETH": None}
        assert hedge.asset0_hl_account is None
        assert not hedge.asset0_account_assigned
        assert exchange.short_size("ETH", "0xsub1") == 0
        assert exchange.transfers == [("withdraw", "0xsub1", Decimal("3000"))]

    @pytest.mark.asyncio
    async def test_reactivated_hedge_resolves_again(self, seed, exchange):
        first = seed()
        second = seed(user_id=first.user_id)
        allocator = AccountAllocator(exchange, first.user_id)

        assert await allocator.resolve_account(first.hedge_id, 0, "ETH") is None
        await update_hedge(first.hedge_id, {"active": False}, client_factory=lambda user_id: exchange)
        assert await allocator.resolve_account(second.hedge_id, 0, "ETH") is None

        hedge = await update_hedge(first.hedge_id, {"active": True}, client_factory=_no_client)
        assert hedge.active
        assert not hedge.asset0_account_assigned

        assert await allocator.resolve_account(first.hedge_id, 0, "ETH") == "0xsub1"
        with Session(engine) as session:
            assert claimed_accounts(session, first.user_id, "ETH") == {None, "0xsub1"}

    @pytest.mark.asyncio
    async def test_plain_field_change_keeps_slots(self, seed):
        ids = seed(asset0_account_assigned=True)
        hedge = await update_hedge(ids.hedge_id, {"tolerance": Decimal("0.1")}, client_factory=_no_client)
        assert hedge.asset0_account_assigned
        assert float(hedge.tolerance) == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_remapping_inactive_hedge_only_clears_slots(self, seed):
        ids = seed(active=False, asset0_account_assigned=True)
        hedge = await update_hedge(
            ids.hedge_id, {"token_mappings": {"WETH": "BTC"}}, client_factory=_no_client
        )
        assert not hedge.asset0_account_assigned

    @pytest.mark.asyncio
    async def test_reactivation_conflict(self, seed):
        ids = seed(active=False)
        with Session(engine) as session:
            session.add(Hedge(position_id=ids.position_id))
            session.commit()
        with pytest.raises(ValueError, match="already has an active hedge"):
            await update_hedge(ids.hedge_id, {"active": True}, client_factory=_no_client)

    @pytest.mark.asyncio
    async def test_refused_while_rebalancing(self, seed):
        ids = seed(asset0_account_assigned=True)
        lock = await hedge_sync.get_hedge_lock(ids.hedge_id)
        async with lock:
            with pytest.raises(ValueError, match="rebalancing"):
                await update_hedge(ids.hedge_id, {"active": False}, client_factory=_no_client)
        with Session(engine) as session:
            assert session.get(Hedge, ids.hedge_id).active


class TestEmergencyStop:
    @pytest.mark.asyncio
    async def test_closes_and_deactivates(self, seed, exchange):
        live = seed(asset0_account_assigned=True)
        paper = seed(paper_trading=True)
        exchange.set_short("ETH", "5")

        result = await run_emergency_stop(client_factory=lambda user_id: exchange)

        assert result == {"shorts_closed": 1, "errors": [], "hedges_deactivated": 2}
        assert exchange.short_size("ETH") == 0
        with Session(engine) as session:
            assert not session.get(Hedge, live.hedge_id).active
            assert not session.get(Hedge, paper.hedge_id).active
            (row,) = session.exec(select(ShortRebalance)).all()
            assert row.message == "emergency stop"
            assert float(row.new_short_size) == 0

    @pytest.mark.asyncio
    async def test_keep_hedges_active(self, seed, exchange):
        ids = seed(asset0_account_assigned=True)
        exchange.set_short("ETH", "5")

        result = await run_emergency_stop(deactivate_hedges=False, client_factory=lambda user_id: exchange)

        assert result["shorts_closed"] == 1
        assert result["hedges_deactivated"] == 0
        with Session(engine) as session:
            assert session.get(Hedge, ids.hedge_id).active

    @pytest.mark.asyncio
    async def test_deactivate_only(self, seed):
        seed()
        result = await run_emergency_stop(close_shorts=False, client_factory=_no_client)
        assert result["hedges_deactivated"] == 1

    @pytest.mark.asyncio
    async def test_missing_credential_is_reported(self, seed):
        ids = seed()
        result = await run_emergency_stop(client_factory=lambda user_id: None)
        assert result["errors"] == [f"Hedge {ids.hedge_id}: no active credential for user {ids.user_id}"]
        assert result["hedges_deactivated"] == 1
