import httpx
import pytest

from eth_rpc import EthRpcClient, EthRpcError

RPC_URL = "https://rpc.test"
HASH = "0x" + "ab" * 32


def _call(method, params):
    return {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}


@pytest.mark.asyncio
async def test_block_number(httpx_mock):
    httpx_mock.add_response(
        url=RPC_URL,
        method="POST",
        match_json=_call("eth_blockNumber", []),
        json={"jsonrpc": "2.0", "id": 1, "result": "0x12d687"},
    )
    async with EthRpcClient(RPC_URL) as rpc:
        assert await rpc.block_number() == "0x12d687"


@pytest.mark.asyncio
async def test_transaction_and_receipt(httpx_mock):
    httpx_mock.add_response(
        url=RPC_URL,
        match_json=_call("eth_getTransactionByHash", [HASH]),
        json={"jsonrpc": "2.0", "id": 1, "result": {"hash": HASH, "value": "0x1"}},
    )
    httpx_mock.add_response(
        url=RPC_URL,
        match_json=_call("eth_getTransactionReceipt", [HASH]),
        json={"jsonrpc": "2.0", "id": 1, "result": None},
    )
    async with EthRpcClient(RPC_URL) as rpc:
        assert (await rpc.get_transaction(HASH))["value"] == "0x1"
        assert await rpc.get_receipt(HASH) is None


@pytest.mark.asyncio
async def test_json_rpc_error(httpx_mock):
    httpx_mock.add_response(
        url=RPC_URL,
        json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "header not found"}},
    )
    async with EthRpcClient(RPC_URL) as rpc:
        with pytest.raises(EthRpcError, match="eth_blockNumber failed: header not found"):
            await rpc.block_number()


@pytest.mark.asyncio
async def test_http_status_error(httpx_mock):
    httpx_mock.add_response(url=RPC_URL, status_code=503, text="upstream down")
    async with EthRpcClient(RPC_URL) as rpc:
        with pytest.raises(EthRpcError, match=r"\(503\)"):
            await rpc.get_receipt(HASH)


@pytest.mark.asyncio
async def test_non_object_payload(httpx_mock):
    httpx_mock.add_response(url=RPC_URL, json=["not", "an", "object"])
    async with EthRpcClient(RPC_URL) as rpc:
        with pytest.raises(EthRpcError, match="Invalid ETH RPC response"):
            await rpc.block_number()


@pytest.mark.asyncio
async def test_transport_error(httpx_mock):
    httpx_mock.add_exception(httpx.ConnectError("connection refused"), url=RPC_URL)
    async with EthRpcClient(RPC_URL) as rpc:
        with pytest.raises(EthRpcError, match="connection refused"):
            await rpc.block_number()
