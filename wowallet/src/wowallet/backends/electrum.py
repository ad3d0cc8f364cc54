"""
Electrum protocol chain source.

Speaks newline-delimited JSON-RPC over TCP or TLS to an Electrum server
(ElectrumX, electrs, Fulcrum). Requests are pipelined on one connection and
matched to responses by id.
"""

from __future__ import annotations

import asyncio
import json
import ssl
from collections.abc import Iterable
from typing import Any

from loguru import logger

from wocore.bitcoin import btc_to_sats
from wocore.tasks import gather_cancelling
from wocore.version import __version__
from wowallet.backends.base import (
    ChainSource,
    ChainUTXO,
    ScriptActivity,
    confirmations_at,
    electrum_script_hash,
)
from wowallet.errors import BroadcastError, NetworkError

PROTOCOL_VERSION = "1.4"
MAX_MESSAGE_SIZE = 16 * 1024 * 1024


class ElectrumRPCError(Exception):
    """Error object returned by the server."""

    def __init__(self, error: Any):
        if isinstance(error, dict):
            self.code = error.get("code", 0)
            self.message = str(error.get("message", error))
        else:
            self.code = 0
            self.message = str(error)
        super().__init__(f"Electrum error {self.code}: {self.message}")


class ElectrumChainSource(ChainSource):
    """
    Chain source using the Electrum protocol (scripthash subscriptions not used).
    """

    name = "electrum"

    def __init__(
        self,
        host: str,
        port: int,
        use_ssl: bool = True,
        timeout: float = 30.0,
        max_concurrent_requests: int = 8,
    ):
        self.host = host
        self.port = port
        self.use_ssl = use_ssl
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrent_requests)
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._request_id = 0
        self._connect_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def _ensure_connected(self) -> None:
        async with self._connect_lock:
            if self.is_connected:
                return
            ssl_ctx = ssl.create_default_context() if self.use_ssl else None
            try:
                self._reader, self._writer = await asyncio.wait_for(
                    asyncio.open_connection(
                        self.host, self.port, ssl=ssl_ctx, limit=MAX_MESSAGE_SIZE
                    ),
                    timeout=self.timeout,
                )
            except (OSError, asyncio.TimeoutError) as e:
                raise NetworkError(f"Cannot connect to {self.host}:{self.port}: {e}") from e

            self._reader_task = asyncio.create_task(self._read_loop())
            logger.debug(f"Connected to Electrum server {self.host}:{self.port}")

        version = await self._call(
            "server.version", [f"wo-wallet {__version__}", PROTOCOL_VERSION]
        )
        logger.debug(f"Electrum server version: {version}")

    async def _read_loop(self) -> None:
        assert self._reader is not None
        try:
            while True:
                line = await self._reader.readuntil(b"\n")
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Discarding malformed message from Electrum server")
                    continue
                request_id = message.get("id")
                future = self._pending.pop(request_id, None) if request_id is not None else None
                if future is None or future.done():
                    continue  # notification or late reply
                if message.get("error") is not None:
                    future.set_exception(ElectrumRPCError(message["error"]))
                else:
                    future.set_result(message.get("result"))
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, OSError) as e:
            self._fail_pending(NetworkError(f"Connection to Electrum server lost: {e}"))
        finally:
            if self._writer is not None:
                self._writer.close()
            self._writer = None

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _call(self, method: str, params: list | None = None) -> Any:
        """
        Send one request and await its response.

        Raises:
            ElectrumRPCError: If the server answered with an error
            NetworkError: On connection loss or timeout
        """
        if not self.is_connected:
            await self._ensure_connected()
        assert self._writer is not None

        self._request_id += 1
        request_id = self._request_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        payload = json.dumps(
            {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}
        )
        async with self._semaphore:
            try:
                async with self._send_lock:
                    self._writer.write(payload.encode() + b"\n")
                    await self._writer.drain()
                return await asyncio.wait_for(future, timeout=self.timeout)
            except (OSError, asyncio.TimeoutError) as e:
                raise NetworkError(f"Electrum call {method} failed: {e!r}") from e
            finally:
                self._pending.pop(request_id, None)

    async def _fetch_one(self, script: bytes, tip_height: int) -> ScriptActivity:
        script_hash = electrum_script_hash(script)
        try:
            history, unspent = await gather_cancelling(
                self._call("blockchain.scripthash.get_history", [script_hash]),
                self._call("blockchain.scripthash.listunspent", [script_hash]),
            )
        except ElectrumRPCError as e:
            raise NetworkError(f"Script lookup failed: {e}") from e

        utxos = []
        for item in unspent:
            # Electrum reports 0 (or -1 for unconfirmed parents) while in the mempool
            height = item["height"] if item.get("height", 0) > 0 else None
            utxos.append(
                ChainUTXO(
                    txid=item["tx_hash"],
                    vout=item["tx_pos"],
                    value=item["value"],
                    height=height,
                    confirmations=confirmations_at(height, tip_height),
                )
            )
        return ScriptActivity(utxos=utxos, tx_count=len(history))

    async def fetch(self, scripts: Iterable[bytes]) -> dict[bytes, ScriptActivity]:
        script_list = list(dict.fromkeys(scripts))
        if not script_list:
            return {}
        tip_height = await self.get_block_height()
        results = await gather_cancelling(*(self._fetch_one(s, tip_height) for s in script_list))
        logger.debug(f"Fetched activity for {len(script_list)} scripts from {self.host}")
        return dict(zip(script_list, results, strict=True))

    async def get_transaction_hex(self, txid: str) -> str:
        try:
            return str(await self._call("blockchain.transaction.get", [txid]))
        except ElectrumRPCError as e:
            raise NetworkError(f"Transaction lookup failed for {txid}: {e}") from e

    async def submit(self, raw_tx_hex: str) -> str:
        try:
            txid = str(await self._call("blockchain.transaction.broadcast", [raw_tx_hex]))
        except ElectrumRPCError as e:
            raise BroadcastError(f"Transaction rejected: {e.message}", rejected=True) from e
        except NetworkError as e:
            raise BroadcastError(f"Broadcast failed: {e}") from e
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def estimate_fee(self, target_blocks: int) -> float:
        try:
            btc_per_kb = await self._call("blockchain.estimatefee", [target_blocks])
        except ElectrumRPCError as e:
            raise NetworkError(f"Fee estimation failed: {e}") from e
        if btc_per_kb is None or btc_per_kb < 0:
            raise NetworkError("Server has no fee estimate")
        return btc_to_sats(btc_per_kb) / 1000

    async def get_block_height(self) -> int:
        try:
            header = await self._call("blockchain.headers.subscribe")
        except ElectrumRPCError as e:
            raise NetworkError(f"Header lookup failed: {e}") from e
        return int(header["height"])

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        self._fail_pending(NetworkError("Connection closed"))
