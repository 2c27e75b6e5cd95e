"""
FileStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    credentials.json
    messages.json
    channels.json
    sent_counts.json

Features:
  - Survives process restarts (unlike InMemoryStore)
  - No external dependencies (no database server)
  - Flush on every mutation, write-to-temp then rename
  - A write whose flush fails is undone in memory too
  - Single-process only (no concurrent write safety across processes)

Best for: small deployments, demos, single-user installs.
"""
from __future__ import annotations

import copy
import json
import structlog
from collections import defaultdict
from pathlib import Path
from typing import Any, Awaitable, Optional

from database.store_base import StoreUnavailableError
from database.store_memory import InMemoryStore
from models.schemas import (
    ChannelRecord, CredentialRecord, MessageStatus, ScheduledMessage,
)

logger = structlog.get_logger()

_COLLECTIONS = ["credentials", "messages", "channels", "sent_counts"]
_ATTRS = {
    "credentials": "_credentials",
    "messages": "_messages",
    "channels": "_channels",
    "sent_counts": "_sent_counts",
}


class FileStore(InMemoryStore):
    """
    Extends InMemoryStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                self._set_collection(collection, data if isinstance(data, dict) else {})
                logger.debug("file_store_loaded", collection=collection, records=len(data))
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))

    def _set_collection(self, collection: str, data: dict[str, Any]):
        """Restore a collection from loaded JSON data."""
        if collection == "credentials":
            self._credentials = {k: CredentialRecord.model_validate(v) for k, v in data.items()}
        elif collection == "messages":
            self._messages = {k: ScheduledMessage.model_validate(v) for k, v in data.items()}
        elif collection == "channels":
            self._channels = {k: ChannelRecord.model_validate(v) for k, v in data.items()}
        elif collection == "sent_counts":
            self._sent_counts = defaultdict(int, {k: int(v) for k, v in data.items()})

    def _get_collection_data(self, collection: str) -> dict[str, Any]:
        """Get serializable data for a collection."""
        if collection == "sent_counts":
            return dict(self._sent_counts)
        records = getattr(self, _ATTRS[collection])
        return {k: v.model_dump(mode="json") for k, v in records.items()}

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(self._get_collection_data(collection), f, indent=2)
            tmp_path.replace(path)  # atomic on POSIX
        except OSError as e:
            logger.error("file_store_flush_failed", collection=collection, error=str(e))
            raise StoreUnavailableError(f"Could not write {path}: {e}") from e

    async def _persisted(self, collection: str, write: Awaitable[Any], changed=lambda result: True):
        """
        Apply an in-memory write, then flush its collection.

        Stored models are replaced rather than mutated, so a shallow copy of
        the collection is enough to undo the write when the flush fails.
        """
        attr = _ATTRS[collection]
        snapshot = copy.copy(getattr(self, attr))
        result = await write
        if changed(result):
            try:
                self._flush_collection(collection)
            except StoreUnavailableError:
                setattr(self, attr, snapshot)
                raise
        return result

    # ── Override write methods to trigger persistence ──────

    async def create_credential(self, record: CredentialRecord) -> CredentialRecord:
        return await self._persisted("credentials", super().create_credential(record))

    async def update_credential(self, workspace_id: str, user_id: str, **fields) -> Optional[CredentialRecord]:
        return await self._persisted(
            "credentials", super().update_credential(workspace_id, user_id, **fields),
            changed=lambda r: r is not None,
        )

    async def delete_credential(self, workspace_id: str, user_id: str) -> bool:
        return await self._persisted(
            "credentials", super().delete_credential(workspace_id, user_id),
            changed=bool,
        )

    async def create_message(self, message: ScheduledMessage) -> ScheduledMessage:
        return await self._persisted("messages", super().create_message(message))

    async def update_message(
        self, message_id: str, expected_status: Optional[MessageStatus] = None, **fields,
    ) -> Optional[ScheduledMessage]:
        return await self._persisted(
            "messages", super().update_message(message_id, expected_status, **fields),
            changed=lambda r: r is not None,
        )

    async def increment_sent_count(self, workspace_id: str, user_id: str) -> int:
        return await self._persisted("sent_counts", super().increment_sent_count(workspace_id, user_id))

    async def upsert_channel(self, record: ChannelRecord) -> ChannelRecord:
        return await self._persisted("channels", super().upsert_channel(record))

    async def touch_channel(self, channel_id: str, workspace_id: str) -> None:
        await self._persisted("channels", super().touch_channel(channel_id, workspace_id))
