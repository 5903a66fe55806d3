"""
chain_rpc.py
Minimal JSON-RPC client for the read calls signature verification needs:
eth_getCode and eth_call. Transport failures are retried
and then raised as RpcUnavailable; reverts are raised as RpcReverted so the
caller can treat them as a negative verdict.
"""
import itertools
import logging
from typing import Optional
import httpx
from app.config import settings

logger = logging.getLogger(__name__)

# JSON-RPC error code 3 is "execution reverted" on geth-compatible nodes.
REVERT_ERROR_CODE = 3

_ids = itertools.count(1)


class RpcError(Exception):
    pass


class RpcUnavailable(RpcError):
    """Network failure, timeout, HTTP 5xx or a node-side error."""


class RpcReverted(RpcError):
    """The call executed and reverted."""


def _is_revert(error: dict) -> bool:
    return error.get("code") == REVERT_ERROR_CODE or "revert" in str(error.get("message", "")).lower()


def _hex_bytes(method: str, result) -> bytes:
    if result is None:
        return b""
    if not isinstance(result, str):
        raise RpcUnavailable(f"{method}: unexpected result {result!r}")
    try:
        return bytes.fromhex(result.removeprefix("0x"))
    except ValueError as e:
        raise RpcUnavailable(f"{method}: result is not hex") from e


class ChainRpcClient:
    def __init__(self, url: str, timeout: float = None, retries: int = None):
        self.url = url
        self.timeout = timeout if timeout is not None else settings.RPC_REQUEST_TIMEOUT_SECONDS
        self.retries = retries if retries is not None else settings.VERIFY_RPC_RETRIES

    async def request(self, method: str, params: list):
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(_ids)}
        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            client = httpx.AsyncClient(timeout=self.timeout)
            try:
                resp = await client.post(self.url, json=payload)
            except httpx.HTTPError as e:
                last_error = e
                logger.warning("RPC %s to %s failed (attempt %d): %s", method, self.url, attempt + 1, e)
                continue
            finally:
                await client.aclose()

            if resp.status_code >= 500 or resp.status_code == 429:
                last_error = RpcUnavailable(f"HTTP {resp.status_code}")
                logger.warning("RPC %s returned HTTP %d (attempt %d)", method, resp.status_code, attempt + 1)
                continue
            if resp.status_code != 200:
                raise RpcUnavailable(f"{method}: HTTP {resp.status_code}")

            try:
                data = resp.json()
            except ValueError as e:
                raise RpcUnavailable(f"{method}: invalid JSON response") from e

            error = data.get("error")
            if error:
                if _is_revert(error):
                    raise RpcReverted(f"{method}: {error.get('message', 'execution reverted')}")
                raise RpcUnavailable(f"{method}: {error.get('message', error)}")
            return data.get("result")

        raise RpcUnavailable(f"{method}: {last_error}")

    async def get_code(self, address: str) -> bytes:
        return _hex_bytes("eth_getCode", await self.request("eth_getCode", [address, "latest"]))

    async def call(self, to: Optional[str], data: bytes) -> bytes:
        """eth_call at latest. With ``to=None`` the data runs as init code (deployless call)."""
        tx = {"data": "0x" + data.hex()}
        if to is not None:
            tx["to"] = to
        return _hex_bytes("eth_call", await self.request("eth_call", [tx, "latest"]))


def rpc_client_for_chain(chain_id: int) -> Optional[ChainRpcClient]:
    url = settings.CHAIN_RPC_URLS.get(chain_id)
    if not url:
        return None
    return ChainRpcClient(url)
