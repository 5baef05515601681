# eth_rpc.py
"""
NEBULA: minimal Ethereum JSON-RPC client (httpx).
Only the three calls the lock verifier needs.
"""

from __future__ import annotations
from typing import Any, Optional

import httpx

from utils import is_record


class EthRpcError(Exception):
    pass


class EthRpcClient:
    """Async JSON-RPC client; use as `async with EthRpcClient(url) as rpc:`."""

    def __init__(self, rpc_url: str, timeout: float = 15.0, client: Optional[httpx.AsyncClient] = None):
        self.rpc_url = rpc_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self):
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_value, tb):
        await self._client.__aexit__(exc_type, exc_value, tb)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(self, method: str, params: list) -> Any:
        """POST one JSON-RPC call and return `result` (None when absent)."""
        try:
            r = await self._client.post(
                self.rpc_url,
                json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
            )
        except httpx.HTTPError as e:
            raise EthRpcError(f"ETH RPC request failed for {method}: {e}") from e

        if r.status_code >= 400:
            raise EthRpcError(f"ETH RPC request failed ({r.status_code}) for {method}.")

        try:
            payload = r.json()
        except ValueError:
            payload = None
        if not is_record(payload):
            raise EthRpcError(f"Invalid ETH RPC response for {method}.")

        if payload.get("error"):
            err = payload["error"]
            message = err.get("message") if is_record(err) and isinstance(err.get("message"), str) else "unknown RPC error"
            raise EthRpcError(f"ETH RPC {method} failed: {message}")

        return payload.get("result")

    async def get_transaction(self, tx_hash: str) -> Any:
        return await self.request("eth_getTransactionByHash", [tx_hash])

    async def get_receipt(self, tx_hash: str) -> Any:
        return await self.request("eth_getTransactionReceipt", [tx_hash])

    async def block_number(self) -> Any:
        return await self.request("eth_blockNumber", [])
