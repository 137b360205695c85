"""Token amounts held by a concentrated-liquidity position.

Below the range the position is all token0, above it all token1, and in
range it is split by the usual sqrt-price deltas:

    amount0 = L * (1/sqrt(P) - 1/sqrt(Pb))
    amount1 = L * (sqrt(P) - sqrt(Pa))
"""

from decimal import Decimal, localcontext

from lp_hedger.services.tick_math import PRECISION, Q96, get_sqrt_ratio_at_tick


def _sqrt_price(sqrt_price_x96: int) -> Decimal:
    return Decimal(sqrt_price_x96) / Q96


def get_token0_amount(
    liquidity,
    sqrt_price_current: int,
    sqrt_price_lower: int,
    sqrt_price_upper: int,
    decimals: int = 18,
) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = PRECISION
        liquidity = Decimal(str(liquidity))
        sqrt_pc = _sqrt_price(sqrt_price_current)
        sqrt_pa = _sqrt_price(sqrt_price_lower)
        sqrt_pb = _sqrt_price(sqrt_price_upper)

        if sqrt_pc <= sqrt_pa:
            amount = liquidity * (1 / sqrt_pa - 1 / sqrt_pb)
        elif sqrt_pc >= sqrt_pb:
            amount = Decimal(0)
        else:
            amount = liquidity * (1 / sqrt_pc - 1 / sqrt_pb)

        return amount / Decimal(10) ** decimals


def get_token1_amount(
    liquidity,
    sqrt_price_current: int,
    sqrt_price_lower: int,
    sqrt_price_upper: int,
    decimals: int = 18,
) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = PRECISION
        liquidity = Decimal(str(liquidity))
        sqrt_pc = _sqrt_price(sqrt_price_current)
        sqrt_pa = _sqrt_price(sqrt_price_lower)
        sqrt_pb = _sqrt_price(sqrt_price_upper)

        if sqrt_pc <= sqrt_pa:
            amount = Decimal(0)
        elif sqrt_pc >= sqrt_pb:
            amount = liquidity * (sqrt_pb - sqrt_pa)
        else:
            amount = liquidity * (sqrt_pc - sqrt_pa)

        return amount / Decimal(10) ** decimals


def get_amounts(
    liquidity,
    current_tick: int,
    tick_lower: int,
    tick_upper: int,
    token0_decimals: int = 18,
    token1_decimals: int = 18,
    sqrt_price_x96: int | None = None,
) -> tuple[Decimal, Decimal]:
    """Return (token0, token1) holdings in human units.

    ``sqrt_price_x96`` is the pool's exact current price when known; the
    price at ``current_tick`` is used otherwise.
    """
    if tick_lower >= tick_upper:
        raise ValueError(f"tick_lower {tick_lower} must be below tick_upper {tick_upper}")

    sqrt_price_current = sqrt_price_x96 or get_sqrt_ratio_at_tick(current_tick)
    sqrt_price_lower = get_sqrt_ratio_at_tick(tick_lower)
    sqrt_price_upper = get_sqrt_ratio_at_tick(tick_upper)

    amount0 = get_token0_amount(
        liquidity, sqrt_price_current, sqrt_price_lower, sqrt_price_upper, token0_decimals
    )
    amount1 = get_token1_amount(
        liquidity, sqrt_price_current, sqrt_price_lower, sqrt_price_upper, token1_decimals
    )
    return amount0, amount1


def amounts_from_position_data(data: dict) -> tuple[Decimal, Decimal]:
    """Compute holdings from a normalized position record (see services.subgraph)."""
    return get_amounts(
        liquidity=data["liquidity"],
        current_tick=data["current_tick"],
        tick_lower=data["tick_lower"],
        tick_upper=data["tick_upper"],
        token0_decimals=data["token0_decimals"],
        token1_decimals=data["token1_decimals"],
        sqrt_price_x96=data.get("sqrt_price_x96"),
    )
