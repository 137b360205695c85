"""On-chain read of uncollected Uniswap V3 fees.

Simulates ``NonfungiblePositionManager.collect`` with max amounts through
``eth_call``; the returned (amount0, amount1) is what the owner could
collect right now.
"""

import logging
from decimal import Decimal

import httpx

from lp_hedger.config import settings
from lp_hedger.utils.constants import POSITION_MANAGER_ADDRESSES

logger = logging.getLogger(__name__)

COLLECT_SELECTOR = "0xfc6f7865"  # collect((uint256,address,uint128,uint128))
MAX_UINT128 = 2 ** 128 - 1


class FeeReaderError(Exception):
    pass


def encode_collect_call(token_id: int, recipient: str | None = None) -> str:
    recipient_hex = (recipient or "0x0").lower().removeprefix("0x").rjust(64, "0")
    return (
        COLLECT_SELECTOR
        + format(token_id, "064x")
        + recipient_hex
        + format(MAX_UINT128, "064x")
        + format(MAX_UINT128, "064x")
    )


def decode_collect_result(result: str, token0_decimals: int = 18, token1_decimals: int = 18) -> tuple[Decimal, Decimal]:
    raw = result.removeprefix("0x")
    if len(raw) < 128:
        raise FeeReaderError(f"Unexpected collect() result: {result!r}")
    amount0 = Decimal(int(raw[0:64], 16))
    amount1 = Decimal(int(raw[64:128], 16))
    return (
        amount0 / Decimal(10) ** token0_decimals,
        amount1 / Decimal(10) ** token1_decimals,
    )


class FeeReader:
    def __init__(self, network: str = "arbitrum", rpc_url: str | None = None, timeout: float = 15.0):
        if network not in POSITION_MANAGER_ADDRESSES:
            raise ValueError(f"Unknown network: {network}. Supported: {', '.join(POSITION_MANAGER_ADDRESSES)}")
        self.network = network
        self.rpc_url = rpc_url or settings.rpc_urls.get(network)
        self.position_manager = POSITION_MANAGER_ADDRESSES[network]
        self.timeout = timeout

    async def _eth_call(self, data: str, sender: str | None = None) -> str:
        call = {"to": self.position_manager, "data": data}
        if sender:
            # collect() only simulates for the owner or an approved operator
            call["from"] = sender
        payload = {"jsonrpc": "2.0", "method": "eth_call", "params": [call, "latest"], "id": 1}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.rpc_url, json=payload)
        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            raise FeeReaderError(f"RPC error: {body['error'].get('message')}")
        return body["result"]

    async def fetch_uncollected_fees(
        self,
        token_id: int | str,
        token0_decimals: int = 18,
        token1_decimals: int = 18,
        owner: str | None = None,
    ) -> tuple[Decimal, Decimal]:
        """Pending fees per token; zeros (with a warning) when the read fails."""
        try:
            data = encode_collect_call(int(token_id), recipient=owner)
            result = await self._eth_call(data, sender=owner)
            return decode_collect_result(result, token0_decimals, token1_decimals)
        except (httpx.HTTPError, FeeReaderError, ValueError, KeyError) as e:
            logger.warning(f"[fees] Uncollected fee read failed for token {token_id} on {self.network}: {e}")
            return Decimal("0"), Decimal("0")
