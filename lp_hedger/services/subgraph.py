"""Uniswap V3 subgraph reads: positions, positions by owner, pool prices.

"Not found" is reported as PositionNotFound, distinct from transport or
GraphQL failures, because the former deactivates a position and the latter
is retried by the job layer.
"""

import logging
from decimal import Decimal

import httpx

from lp_hedger.config import settings

logger = logging.getLogger(__name__)

GATEWAY_URL = "https://gateway.thegraph.com/api/{api_key}/subgraphs/id/{subgraph_id}"

POSITION_FIELDS = """
    id
    owner
    liquidity
    collectedFeesToken0
    collectedFeesToken1
    tickLower { tickIdx }
    tickUpper { tickIdx }
    pool { id tick sqrtPrice feeTier }
    token0 { id symbol decimals }
    token1 { id symbol decimals }
"""

POSITION_BY_ID = f"""
query getPosition($id: ID!) {{
  position(id: $id) {{ {POSITION_FIELDS} }}
}}
"""

POSITIONS_BY_OWNER = f"""
query getPositionsByOwner($owner: String!, $first: Int = 100) {{
  positions(
    where: {{ owner: $owner, liquidity_gt: "0" }}
    first: $first
    orderBy: id
    orderDirection: desc
  ) {{ {POSITION_FIELDS} }}
}}
"""

POOL_DATA = """
query getPool($id: ID!) {
  pool(id: $id) {
    id
    tick
    sqrtPrice
    feeTier
    liquidity
    token0 { id symbol decimals derivedETH }
    token1 { id symbol decimals derivedETH }
  }
  bundle(id: "1") { ethPriceUSD }
}
"""


class SubgraphError(Exception):
    pass


class SubgraphNetworkError(SubgraphError):
    """Transport failure or non-200 response; retryable."""


class SubgraphQueryError(SubgraphError):
    """GraphQL-level errors in an otherwise successful response."""


class PositionNotFound(SubgraphError):
    """The index has no such position."""


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value not in (None, "") else Decimal("0")


class SubgraphClient:
    def __init__(self, url: str, timeout: float | None = None):
        self.url = url
        self.timeout = timeout or settings.subgraph_timeout_seconds

    @classmethod
    def for_network(cls, network: str) -> "SubgraphClient":
        subgraph_id = settings.subgraph_ids.get(network)
        if not subgraph_id:
            raise ValueError(f"No subgraph configured for network {network}")
        return cls(GATEWAY_URL.format(api_key=settings.graph_api_key, subgraph_id=subgraph_id))

    async def query(self, query: str, variables: dict | None = None) -> dict:
        # Short-lived client so nothing is shared across event loops
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.url,
                    json={"query": query, "variables": variables or {}},
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise SubgraphNetworkError(f"Network error: {e}") from e

        if response.status_code != 200:
            raise SubgraphNetworkError(f"HTTP {response.status_code}: {response.text[:200]}")

        data = response.json()
        if data.get("errors"):
            messages = ", ".join(err.get("message", "") for err in data["errors"])
            raise SubgraphQueryError(f"GraphQL errors: {messages}")
        return data.get("data") or {}


class PositionFetcher:
    def __init__(self, network: str = "arbitrum", client: SubgraphClient | None = None):
        self.network = network
        self.client = client or SubgraphClient.for_network(network)

    async def fetch(self, nft_id: str) -> dict:
        result = await self.client.query(POSITION_BY_ID, {"id": str(nft_id)})
        data = result.get("position")
        if not data:
            raise PositionNotFound(f"Position {nft_id} not found on {self.network}")
        return normalize_position(data)

    async def fetch_by_owner(self, owner_address: str) -> list[dict]:
        result = await self.client.query(POSITIONS_BY_OWNER, {"owner": owner_address.lower()})
        return [normalize_position(p) for p in result.get("positions") or []]

    async def fetch_pool(self, pool_address: str) -> dict | None:
        result = await self.client.query(POOL_DATA, {"id": pool_address.lower()})
        pool = result.get("pool")
        if not pool:
            return None

        eth_price_usd = _dec((result.get("bundle") or {}).get("ethPriceUSD"))
        return {
            "id": pool["id"],
            "tick": int(pool["tick"]) if pool.get("tick") is not None else None,
            "sqrt_price_x96": int(pool["sqrtPrice"]) if pool.get("sqrtPrice") else None,
            "fee_tier": int(pool.get("feeTier") or 0),
            "liquidity": pool.get("liquidity"),
            "eth_price_usd": eth_price_usd,
            "token0": _normalize_token(pool["token0"], eth_price_usd),
            "token1": _normalize_token(pool["token1"], eth_price_usd),
        }


def _normalize_token(token: dict, eth_price_usd: Decimal) -> dict:
    derived_eth = _dec(token.get("derivedETH"))
    return {
        "address": token.get("id"),
        "symbol": token.get("symbol"),
        "decimals": int(token.get("decimals") or 0),
        "price_usd": derived_eth * eth_price_usd,
    }


def normalize_position(data: dict) -> dict:
    """Flatten a subgraph position into the fields the liquidity math needs."""
    pool = data.get("pool") or {}
    token0 = data.get("token0") or {}
    token1 = data.get("token1") or {}
    return {
        "id": str(data["id"]),
        "owner": data.get("owner"),
        "liquidity": data.get("liquidity") or "0",
        "tick_lower": int(data["tickLower"]["tickIdx"]),
        "tick_upper": int(data["tickUpper"]["tickIdx"]),
        "current_tick": int(pool["tick"]) if pool.get("tick") is not None else None,
        "sqrt_price_x96": int(pool["sqrtPrice"]) if pool.get("sqrtPrice") else None,
        "pool_address": pool.get("id"),
        "token0_symbol": token0.get("symbol"),
        "token1_symbol": token1.get("symbol"),
        "token0_decimals": int(token0.get("decimals") or 18),
        "token1_decimals": int(token1.get("decimals") or 18),
        "collected_fees0": _dec(data.get("collectedFeesToken0")),
        "collected_fees1": _dec(data.get("collectedFeesToken1")),
    }
