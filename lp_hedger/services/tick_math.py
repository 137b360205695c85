"""Uniswap V3 tick <-> sqrt-price <-> price conversions.

Everything is computed with ``decimal.Decimal`` at a fixed high precision so
that hedge sizing never goes through binary floating point. Sqrt prices use
the pool's Q64.96 fixed-point encoding.
"""

from decimal import Decimal, ROUND_FLOOR, localcontext

MIN_TICK = -887272
MAX_TICK = 887272
MIN_SQRT_RATIO = 4295128739  # sqrt(1.0001^-887272) * 2^96
MAX_SQRT_RATIO = 1461446703485210103287273052203988822378723970342  # sqrt(1.0001^887272) * 2^96

Q96 = 2 ** 96
PRECISION = 80

_TICK_BASE = Decimal("1.0001")
# Snap to the nearest integer tick when a log lands this close to it
_TICK_EPSILON = Decimal("1e-40")


class TickOutOfRange(ValueError):
    """Tick outside [MIN_TICK, MAX_TICK]."""


def _check_tick(tick: int):
    if tick < MIN_TICK or tick > MAX_TICK:
        raise TickOutOfRange(f"Tick {tick} out of bounds [{MIN_TICK}, {MAX_TICK}]")


def _decimal_adjustment(token0_decimals: int, token1_decimals: int) -> Decimal:
    return Decimal(10) ** (token0_decimals - token1_decimals)


def _floor_tick(raw: Decimal) -> int:
    nearest = raw.to_integral_value()
    if abs(raw - nearest) < _TICK_EPSILON:
        return int(nearest)
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


def get_sqrt_ratio_at_tick(tick: int) -> int:
    """Q64.96 sqrt price for a tick: floor(sqrt(1.0001^tick) * 2^96)."""
    _check_tick(tick)
    with localcontext() as ctx:
        ctx.prec = PRECISION
        sqrt_price = (_TICK_BASE.ln() * tick / 2).exp()
        return int((sqrt_price * Q96).to_integral_value(rounding=ROUND_FLOOR))


def get_tick_at_sqrt_ratio(sqrt_price_x96: int) -> int:
    """Greatest tick whose sqrt ratio is <= ``sqrt_price_x96``."""
    if sqrt_price_x96 < MIN_SQRT_RATIO or sqrt_price_x96 > MAX_SQRT_RATIO:
        raise ValueError(f"sqrt_price_x96 {sqrt_price_x96} out of bounds")

    with localcontext() as ctx:
        ctx.prec = PRECISION
        sqrt_price = Decimal(sqrt_price_x96) / Q96
        tick = _floor_tick(2 * sqrt_price.ln() / _TICK_BASE.ln())

    tick = max(MIN_TICK, min(MAX_TICK, tick))
    # The log estimate can land one tick off either side of the exact answer
    if tick < MAX_TICK and get_sqrt_ratio_at_tick(tick + 1) <= sqrt_price_x96:
        tick += 1
    elif tick > MIN_TICK and get_sqrt_ratio_at_tick(tick) > sqrt_price_x96:
        tick -= 1
    return tick


def tick_to_price(tick: int, token0_decimals: int = 18, token1_decimals: int = 18) -> Decimal:
    """Human-readable price of token0 in token1 at ``tick``."""
    _check_tick(tick)
    with localcontext() as ctx:
        ctx.prec = PRECISION
        raw_price = (_TICK_BASE.ln() * tick).exp()
        return raw_price * _decimal_adjustment(token0_decimals, token1_decimals)


def price_to_tick(price, token0_decimals: int = 18, token1_decimals: int = 18) -> int:
    """Tick at or just below a human-readable token0/token1 price."""
    price = Decimal(str(price))
    if price <= 0:
        raise ValueError(f"Price must be positive, got {price}")
    with localcontext() as ctx:
        ctx.prec = PRECISION
        adjusted = price / _decimal_adjustment(token0_decimals, token1_decimals)
        tick = _floor_tick(adjusted.ln() / _TICK_BASE.ln())
    _check_tick(tick)
    return tick


def price_to_sqrt_price_x96(price, token0_decimals: int = 18, token1_decimals: int = 18) -> int:
    price = Decimal(str(price))
    if price <= 0:
        raise ValueError(f"Price must be positive, got {price}")
    with localcontext() as ctx:
        ctx.prec = PRECISION
        adjusted = price / _decimal_adjustment(token0_decimals, token1_decimals)
        return int((adjusted.sqrt() * Q96).to_integral_value(rounding=ROUND_FLOOR))


def sqrt_price_x96_to_price(sqrt_price_x96: int, token0_decimals: int = 18, token1_decimals: int = 18) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = PRECISION
        sqrt_price = Decimal(sqrt_price_x96) / Q96
        return sqrt_price * sqrt_price * _decimal_adjustment(token0_decimals, token1_decimals)
