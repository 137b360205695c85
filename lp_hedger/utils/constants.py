"""Shared constants and defaults."""

# Interval to hours mapping for APScheduler
INTERVAL_HOURS: dict[str, float] = {
    "1m": 1 / 60,
    "5m": 5 / 60,
    "15m": 0.25,
    "30m": 0.5,
    "1h": 1.0,
    "2h": 2.0,
    "4h": 4.0,
    "8h": 8.0,
    "1d": 24.0,
}

# Pool token symbol -> Hyperliquid perp symbol. None means "do not hedge".
DEFAULT_TOKEN_MAPPINGS: dict[str, str | None] = {
    "WETH": "ETH",
    "ETH": "ETH",
    "WBTC": "BTC",
    "BTC": "BTC",
    "ARB": "ARB",
    "LINK": "LINK",
    "UNI": "UNI",
    "AAVE": "AAVE",
    "CRV": "CRV",
    "LDO": "LDO",
    "GMX": "GMX",
    "PENDLE": "PENDLE",
    "USDC": None,
    "USDC.E": None,
    "USDT": None,
    "DAI": None,
    "FRAX": None,
}

# ShortRebalance statuses
REBALANCE_SUCCESS = "success"
REBALANCE_FAILED = "failed"

# RebalanceEvent lifecycle
EVENT_PENDING = "pending"
EVENT_EXECUTING = "executing"
EVENT_COMPLETED = "completed"
EVENT_FAILED = "failed"

TRIGGER_MANUAL = "manual"
TRIGGER_SCHEDULED = "scheduled"
TRIGGER_THRESHOLD = "threshold"

SUPPORTED_NETWORKS = ("ethereum", "arbitrum", "base")

# Uniswap V3 NonfungiblePositionManager (same address on all supported networks except base)
POSITION_MANAGER_ADDRESSES: dict[str, str] = {
    "ethereum": "0xC36442b4a4522E871399CD717aBDD847Ab11FE88",
    "arbitrum": "0xC36442b4a4522E871399CD717aBDD847Ab11FE88",
    "base": "0x03a520b32C04BF3bEEf7BEb72E919cf822Ed34f1",
}


def map_token(symbol: str | None, overrides: dict[str, str | None] | None = None) -> str | None:
    """Resolve a pool token symbol to the exchange symbol it is hedged with."""
    if not symbol:
        return None
    key = symbol.upper()
    if overrides:
        normalized = {k.upper(): v for k, v in overrides.items()}
        if key in normalized:
            return normalized[key]
    return DEFAULT_TOKEN_MAPPINGS.get(key, key)

