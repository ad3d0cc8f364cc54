"""
Ledger state stores.

The engine is stateless per invocation by default (MemoryStore). JsonFileStore
keeps the last committed snapshot on disk; each sync loads it first and logs
which outputs appeared or disappeared since the previous run.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger

from wocore.paths import get_ledger_state_path
from wowallet.wallet.models import LedgerSnapshot


class StateStore(ABC):
    """Persistence for committed ledger snapshots, keyed by wallet id."""

    @abstractmethod
    async def load(self, wallet_id: str) -> LedgerSnapshot | None:
        """Return the last committed snapshot, or None if nothing was stored."""

    @abstractmethod
    async def save(self, wallet_id: str, snapshot: LedgerSnapshot) -> None:
        """Commit ``snapshot`` as the latest state for ``wallet_id``."""


class MemoryStore(StateStore):
    """Process-local store; nothing outlives the invocation."""

    def __init__(self) -> None:
        self._snapshots: dict[str, LedgerSnapshot] = {}

    async def load(self, wallet_id: str) -> LedgerSnapshot | None:
        return self._snapshots.get(wallet_id)

    async def save(self, wallet_id: str, snapshot: LedgerSnapshot) -> None:
        self._snapshots[wallet_id] = snapshot


class JsonFileStore(StateStore):
    """
    One JSON file per wallet under ``<data_dir>/ledger/``.

    Writes are atomic (write to temp, then rename) so a crash mid-write
    leaves the previous snapshot intact.
    """

    def __init__(self, data_dir: Path | None = None):
        self.data_dir = data_dir

    def _path(self, wallet_id: str) -> Path:
        return get_ledger_state_path(wallet_id, self.data_dir)

    async def load(self, wallet_id: str) -> LedgerSnapshot | None:
        return await asyncio.to_thread(self._load_sync, wallet_id)

    async def save(self, wallet_id: str, snapshot: LedgerSnapshot) -> None:
        await asyncio.to_thread(self._save_sync, wallet_id, snapshot)

    def _load_sync(self, wallet_id: str) -> LedgerSnapshot | None:
        path = self._path(wallet_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return LedgerSnapshot.from_json_dict(data)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            # JSONDecodeError and pydantic ValidationError are both ValueErrors
            logger.warning(f"Ignoring corrupt ledger state at {path}: {e}")
            return None

    def _save_sync(self, wallet_id: str, snapshot: LedgerSnapshot) -> None:
        path = self._path(wallet_id)
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(snapshot.to_json_dict(), indent=2), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as e:
            logger.error(f"Failed to save ledger state: {e}")
            tmp_path.unlink(missing_ok=True)
            raise
        logger.debug(f"Saved ledger state to {path}")


def create_store(kind: str, data_dir: Path | None = None) -> StateStore:
    """
    Create a state store from its configured name.

    Raises:
        ValueError: If ``kind`` is unknown
    """
    if kind == "memory":
        return MemoryStore()
    if kind == "json":
        return JsonFileStore(data_dir)
    raise ValueError(f"Invalid store type: {kind}. Valid options: memory, json")
