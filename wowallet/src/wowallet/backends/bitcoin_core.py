"""
Bitcoin Core RPC chain source.
Uses RPC calls but NOT wallet functionality; scripts are looked up with
scantxoutset over raw() descriptors.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import httpx
from loguru import logger

from wocore.bitcoin import btc_to_sats
from wowallet.backends.base import ChainSource, ChainUTXO, ScriptActivity, confirmations_at
from wowallet.errors import BroadcastError, NetworkError

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0

# Timeout for scantxoutset calls - mainnet scans can take 90+ seconds
SCAN_RPC_TIMEOUT = 300.0

# sendrawtransaction error codes meaning the node refused the transaction
RPC_VERIFY_ERROR = -25
RPC_VERIFY_REJECTED = -26
RPC_VERIFY_ALREADY_IN_CHAIN = -27
REJECTION_CODES = (RPC_VERIFY_ERROR, RPC_VERIFY_REJECTED, RPC_VERIFY_ALREADY_IN_CHAIN)


class RPCError(Exception):
    """Error object returned by the node."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC error {code}: {message}")


class BitcoinCoreChainSource(ChainSource):
    """
    Chain source using Bitcoin Core RPC.

    scantxoutset only sees the current UTXO set, so a script counts as used
    when it currently holds an output. Spent-and-emptied addresses are not
    detected by this source.
    """

    name = "bitcoin_core"

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:8332",
        rpc_user: str = "",
        rpc_password: str = "",
        timeout: float = DEFAULT_RPC_TIMEOUT,
        scan_timeout: float = SCAN_RPC_TIMEOUT,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        auth = (rpc_user, rpc_password) if rpc_user else None
        self.client = httpx.AsyncClient(timeout=timeout, auth=auth)
        # Separate client for long-running scans
        self._scan_client = httpx.AsyncClient(timeout=scan_timeout, auth=auth)
        self._request_id = 0

    async def _rpc_call(
        self,
        method: str,
        params: list | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> Any:
        """
        Make an RPC call to Bitcoin Core.

        Raises:
            RPCError: If the node returned an error object
            NetworkError: On connection/timeout/HTTP errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        use_client = client or self.client

        try:
            response = await use_client.post(self.rpc_url, json=payload)
            # Core reports RPC errors with HTTP 500 and a JSON body
            if response.status_code not in (200, 500):
                response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise NetworkError(f"RPC call {method} failed: {e}") from e
        except ValueError as e:
            raise NetworkError(f"RPC call {method} returned invalid JSON") from e

        if data.get("error"):
            error_info = data["error"]
            raise RPCError(error_info.get("code", 0), error_info.get("message", str(error_info)))

        return data.get("result")

    async def fetch(self, scripts: Iterable[bytes]) -> dict[bytes, ScriptActivity]:
        script_list = list(dict.fromkeys(scripts))
        if not script_list:
            return {}

        descriptors = [f"raw({s.hex()})" for s in script_list]
        try:
            result = await self._rpc_call(
                "scantxoutset", ["start", descriptors], client=self._scan_client
            )
        except RPCError as e:
            raise NetworkError(f"scantxoutset failed: {e}") from e
        if not result or not result.get("success", False):
            raise NetworkError("scantxoutset did not complete")

        tip_height = int(result.get("height", 0))
        activity = {s: ScriptActivity() for s in script_list}
        for unspent in result.get("unspents", []):
            script = bytes.fromhex(unspent["scriptPubKey"])
            if script not in activity:
                continue
            height = unspent.get("height")
            activity[script].utxos.append(
                ChainUTXO(
                    txid=unspent["txid"],
                    vout=unspent["vout"],
                    value=btc_to_sats(unspent["amount"]),
                    height=height,
                    confirmations=confirmations_at(height, tip_height),
                )
            )
        for entry in activity.values():
            entry.tx_count = len({u.txid for u in entry.utxos})

        logger.debug(
            f"scantxoutset found {len(result.get('unspents', []))} UTXOs "
            f"across {len(script_list)} scripts"
        )
        return activity

    async def get_transaction_hex(self, txid: str) -> str:
        try:
            return str(await self._rpc_call("getrawtransaction", [txid, False]))
        except RPCError as e:
            raise NetworkError(f"getrawtransaction {txid} failed: {e}") from e

    async def submit(self, raw_tx_hex: str) -> str:
        try:
            txid = str(await self._rpc_call("sendrawtransaction", [raw_tx_hex]))
        except RPCError as e:
            raise BroadcastError(
                f"Transaction rejected: {e.message}", rejected=e.code in REJECTION_CODES
            ) from e
        except NetworkError as e:
            raise BroadcastError(f"Broadcast failed: {e}") from e
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def estimate_fee(self, target_blocks: int) -> float:
        try:
            result = await self._rpc_call("estimatesmartfee", [target_blocks])
        except RPCError as e:
            raise NetworkError(f"estimatesmartfee failed: {e}") from e
        if not result or "feerate" not in result:
            raise NetworkError(f"No fee estimate available: {result}")
        # BTC/kvB -> sat/vB
        return btc_to_sats(result["feerate"]) / 1000

    async def get_block_height(self) -> int:
        try:
            return int(await self._rpc_call("getblockcount"))
        except RPCError as e:
            raise NetworkError(f"getblockcount failed: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()
        await self._scan_client.aclose()
