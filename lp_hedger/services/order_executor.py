"""Executes a batch of hedge adjustments, live or paper."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from lp_hedger.services.calculator import ACTION_CLOSE, Adjustment
from lp_hedger.services.hyperliquid_client import ExchangeError
from lp_hedger.services.safety_validator import SafetyValidator

logger = logging.getLogger(__name__)

MIN_DELTA = Decimal("0.0001")


class ExecutionError(Exception):
    """At least one adjustment in a batch failed."""


@dataclass
class ExecutionResult:
    success: bool
    actions: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class OrderExecutor:
    def __init__(
        self,
        client,
        paper_trading: bool = True,
        validator: SafetyValidator | None = None,
        accounts: dict[str, str | None] | None = None,
    ):
        self.client = client
        self.paper_trading = paper_trading
        self.validator = validator or SafetyValidator.from_settings()
        self.accounts = accounts or {}

    async def execute(
        self,
        adjustments: list[Adjustment],
        prices: dict[str, Decimal],
        entry_prices: dict[str, Decimal] | None = None,
    ) -> ExecutionResult:
        entry_prices = entry_prices or {}
        actions, errors = [], []
        for adj in adjustments:
            try:
                action = await self.execute_adjustment(
                    adj, prices.get(adj.asset, Decimal("0")), entry_prices.get(adj.asset)
                )
            except ExchangeError as e:
                logger.error(f"Adjustment failed for {adj.asset}: {e}")
                errors.append(f"{adj.asset}: {e}")
                action = {"asset": adj.asset, "status": "failed", "error": str(e)}
            actions.append(action)
        return ExecutionResult(success=not errors, actions=actions, errors=errors)

    async def execute_adjustment(
        self,
        adj: Adjustment,
        price: Decimal,
        entry_price: Decimal | None = None,
    ) -> dict:
        delta = adj.delta
        side = "short" if delta < 0 else "cover"
        base = {
            "asset": adj.asset,
            "action": side,
            "size": float(abs(delta)),
            "paper": self.paper_trading,
            "account": self.accounts.get(adj.asset),
        }

        if abs(delta) < MIN_DELTA:
            return {**base, "status": "noop"}

        if adj.action != ACTION_CLOSE and self.validator.should_skip_hedge(abs(delta) * price):
            logger.info(f"Skipping {adj.asset} adjustment worth ${abs(delta) * price:.2f}")
            return {**base, "status": "skipped", "reason": "below minimum hedge value"}

        if self.paper_trading:
            fill_price, order_id = price, None
            logger.info(f"PAPER {side} {abs(delta)} {adj.asset} @ {price}")
        else:
            result = await self.client.place_order(
                adj.asset,
                -abs(delta) if delta < 0 else abs(delta),
                reduce_only=adj.action == ACTION_CLOSE or adj.target_size == 0,
                account=self.accounts.get(adj.asset),
            )
            if not result.success:
                raise ExchangeError(result.error or "order failed")
            fill_price, order_id = result.filled_price or price, result.order_id

        action = {**base, "status": "filled", "price": float(fill_price), "order_id": order_id}

        # Buying back part of an existing short realizes P&L on that part
        size_closed = min(delta, abs(adj.current_size)) if delta > 0 and adj.current_size < 0 else Decimal("0")
        if size_closed > 0 and entry_price:
            action["size_closed"] = float(size_closed)
            action["entry_price"] = float(entry_price)
            action["realized_pnl"] = float((entry_price - fill_price) * size_closed)
        return action
