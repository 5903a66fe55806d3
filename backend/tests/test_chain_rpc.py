import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from app.services.chain_rpc import ChainRpcClient, RpcReverted, RpcUnavailable, rpc_client_for_chain

RPC_URL = "https://rpc.example.org"
WALLET = "0x742d35Cc6634C0532925a3b844Bc9e7595f2bD18"


def _response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


def _mock_client(post):
    mock_client = AsyncMock()
    mock_client.post = post
    mock_client.aclose = AsyncMock()
    return mock_client


@pytest.mark.asyncio
async def test_get_code_decodes_hex():
    with patch("app.services.chain_rpc.httpx.AsyncClient") as MockClient:
        mock_client = _mock_client(AsyncMock(return_value=_response(payload={"jsonrpc": "2.0", "id": 1, "result": "0x6080"})))
        MockClient.return_value = mock_client

        code = await ChainRpcClient(RPC_URL, timeout=1.0, retries=1).get_code(WALLET)
        assert code == b"\x60\x80"

        method = mock_client.post.call_args.kwargs["json"]["method"]
        params = mock_client.post.call_args.kwargs["json"]["params"]
        assert method == "eth_getCode"
        assert params == [WALLET, "latest"]
        mock_client.aclose.assert_awaited()


@pytest.mark.asyncio
async def test_get_code_empty_account():
    with patch("app.services.chain_rpc.httpx.AsyncClient") as MockClient:
        MockClient.return_value = _mock_client(AsyncMock(return_value=_response(payload={"result": "0x"})))
        assert await ChainRpcClient(RPC_URL, retries=0).get_code(WALLET) == b""


@pytest.mark.asyncio
async def test_call_sends_hex_data():
    with patch("app.services.chain_rpc.httpx.AsyncClient") as MockClient:
        mock_client = _mock_client(AsyncMock(return_value=_response(payload={"result": "0x1626ba7e" + "00" * 28})))
        MockClient.return_value = mock_client

        result = await ChainRpcClient(RPC_URL, retries=0).call(WALLET, b"\x16\x26\xba\x7e")
        assert result[:4] == bytes.fromhex("1626ba7e")
        params = mock_client.post.call_args.kwargs["json"]["params"]
        assert params[0] == {"to": WALLET, "data": "0x1626ba7e"}


@pytest.mark.asyncio
async def test_retries_once_on_transport_error():
    with patch("app.services.chain_rpc.httpx.AsyncClient") as MockClient:
        mock_client = _mock_client(AsyncMock(side_effect=[
            httpx.ConnectError("connection refused"),
            _response(payload={"result": "0x"}),
        ]))
        MockClient.return_value = mock_client

        assert await ChainRpcClient(RPC_URL, retries=1).get_code(WALLET) == b""
        assert mock_client.post.await_count == 2


@pytest.mark.asyncio
async def test_gives_up_after_retry():
    with patch("app.services.chain_rpc.httpx.AsyncClient") as MockClient:
        mock_client = _mock_client(AsyncMock(side_effect=httpx.ReadTimeout("timed out")))
        MockClient.return_value = mock_client

        with pytest.raises(RpcUnavailable):
            await ChainRpcClient(RPC_URL, retries=1).get_code(WALLET)
        assert mock_client.post.await_count == 2


@pytest.mark.asyncio
async def test_server_error_is_unavailable():
    with patch("app.services.chain_rpc.httpx.AsyncClient") as MockClient:
        mock_client = _mock_client(AsyncMock(return_value=_response(status_code=502)))
        MockClient.return_value = mock_client

        with pytest.raises(RpcUnavailable):
            await ChainRpcClient(RPC_URL, retries=1).get_code(WALLET)
        assert mock_client.post.await_count == 2


@pytest.mark.asyncio
async def test_revert_is_reported_separately():
    payload = {"error": {"code": 3, "message": "execution reverted", "data": "0x"}}
    with patch("app.services.chain_rpc.httpx.AsyncClient") as MockClient:
        MockClient.return_value = _mock_client(AsyncMock(return_value=_response(payload=payload)))
        with pytest.raises(RpcReverted):
            await ChainRpcClient(RPC_URL, retries=0).call(WALLET, b"\x00")


@pytest.mark.asyncio
async def test_node_error_is_unavailable():
    payload = {"error": {"code": -32601, "message": "the method eth_call does not exist"}}
    with patch("app.services.chain_rpc.httpx.AsyncClient") as MockClient:
        MockClient.return_value = _mock_client(AsyncMock(return_value=_response(payload=payload)))
        with pytest.raises(RpcUnavailable):
            await ChainRpcClient(RPC_URL, retries=0).call(WALLET, b"\x00")


@pytest.mark.asyncio
async def test_deployless_call_omits_to():
    with patch("app.services.chain_rpc.httpx.AsyncClient") as MockClient:
        mock_client = _mock_client(AsyncMock(return_value=_response(payload={"result": "0x01"})))
        MockClient.return_value = mock_client

        assert await ChainRpcClient(RPC_URL, retries=0).call(None, b"\x60\x80") == b"\x01"
        assert mock_client.post.call_args.kwargs["json"]["params"] == [{"data": "0x6080"}, "latest"]


@pytest.mark.asyncio
@pytest.mark.parametrize("result", [{"calls": []}, "0xzz", 12])
async def test_unexpected_result_shape_is_unavailable(result):
    with patch("app.services.chain_rpc.httpx.AsyncClient") as MockClient:
        MockClient.return_value = _mock_client(AsyncMock(return_value=_response(payload={"result": result})))
        with pytest.raises(RpcUnavailable):
            await ChainRpcClient(RPC_URL, retries=0).get_code(WALLET)


def test_rpc_client_for_chain_uses_settings():
    assert rpc_client_for_chain(8453).url == "https://mainnet.base.org"
    assert rpc_client_for_chain(999999) is None
