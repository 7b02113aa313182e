"""Persistence for giveaways and warnings: JSON flat files or MongoDB."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Protocol

from pymongo import ASCENDING, AsyncMongoClient
from pymongo.errors import PyMongoError

from .config import StorageConfig
from .models import GiveawayRecord, WarningRecord

LOGGER = logging.getLogger(__name__)


class StoreFailure(RuntimeError):
    """Raised when a persistence read or write fails."""


class GiveawayStore(Protocol):
    async def put(self, record: GiveawayRecord) -> None: ...

    async def get(self, announcement_id: int) -> Optional[GiveawayRecord]: ...

    async def delete(self, announcement_id: int) -> bool: ...

    async def list_all(self) -> List[GiveawayRecord]: ...


class WarningStore(Protocol):
    async def add(self, record: WarningRecord) -> None: ...

    async def list_for(self, guild_id: int, user_id: int) -> List[WarningRecord]: ...


class JsonFile:
    """A single JSON object on disk, rewritten whole on every mutation."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()

    async def read(self) -> dict:
        async with self._lock:
            return await asyncio.to_thread(self._read)

    async def update(self, mutate) -> Any:
        """Apply ``mutate(data)`` under the lock and persist the result."""
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            result = mutate(data)
            await asyncio.to_thread(self._write, data)
            return result

    def _read(self) -> dict:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StoreFailure(f"Unable to read {self.path}: {exc}") from exc
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise StoreFailure(f"{self.path} does not contain valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreFailure(f"{self.path} must contain a JSON object.")
        return data

    def _write(self, data: dict) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as exc:
            raise StoreFailure(f"Unable to write {self.path}: {exc}") from exc


class JsonGiveawayStore:
    """Giveaways in ``giveaways.json`` as ``announcement_id -> record``."""

    def __init__(self, path: Path) -> None:
        self.file = JsonFile(path)

    async def put(self, record: GiveawayRecord) -> None:
        def mutate(data: dict) -> None:
            data[str(record.announcement_id)] = record.to_payload()

        await self.file.update(mutate)

    async def get(self, announcement_id: int) -> Optional[GiveawayRecord]:
        data = await self.file.read()
        payload = data.get(str(announcement_id))
        if payload is None:
            return None
        return self._decode(str(announcement_id), payload)

    async def delete(self, announcement_id: int) -> bool:
        def mutate(data: dict) -> bool:
            return data.pop(str(announcement_id), None) is not None

        return await self.file.update(mutate)

    async def list_all(self) -> List[GiveawayRecord]:
        data = await self.file.read()
        records: List[GiveawayRecord] = []
        for key, payload in data.items():
            try:
                records.append(self._decode(key, payload))
            except StoreFailure as exc:
                LOGGER.warning("Skipping unreadable giveaway entry %s: %s", key, exc)
        return records

    @staticmethod
    def _decode(key: str, payload: dict) -> GiveawayRecord:
        try:
            return GiveawayRecord.from_payload({**payload, "announcement_id": key})
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreFailure(f"Malformed giveaway entry {key}: {exc}") from exc


class JsonWarningStore:
    """Warnings in ``warnings.json`` as ``user_id -> [warning, ...]``."""

    def __init__(self, path: Path) -> None:
        self.file = JsonFile(path)

    async def add(self, record: WarningRecord) -> None:
        def mutate(data: dict) -> None:
            data.setdefault(str(record.user_id), []).append(record.to_payload())

        await self.file.update(mutate)

    async def list_for(self, guild_id: int, user_id: int) -> List[WarningRecord]:
        data = await self.file.read()
        warnings: List[WarningRecord] = []
        for payload in data.get(str(user_id), []):
            try:
                record = WarningRecord.from_payload(payload)
            except (KeyError, TypeError, ValueError):
                LOGGER.warning("Skipping malformed warning for user %s: %r", user_id, payload)
                continue
            if record.guild_id == guild_id:
                warnings.append(record)
        return warnings


def _giveaway_filter(announcement_id: int) -> dict:
    # documents written by the earlier bot keep the id as a camelCase string
    return {
        "$or": [
            {"announcement_id": announcement_id},
            {"messageId": str(announcement_id)},
        ]
    }


def _warning_filter(guild_id: int, user_id: int) -> dict:
    return {
        "$or": [
            {"guild_id": guild_id, "user_id": user_id},
            {"guildId": str(guild_id), "userId": str(user_id)},
        ]
    }


class MongoGiveawayStore:
    """Giveaways as documents in a MongoDB collection."""

    def __init__(self, collection) -> None:
        self.collection = collection

    async def ensure_indexes(self) -> None:
        try:
            await self.collection.create_index(
                [("announcement_id", ASCENDING)],
                unique=True,
                partialFilterExpression={"announcement_id": {"$exists": True}},
            )
        except PyMongoError as exc:
            raise StoreFailure(f"Unable to create giveaway index: {exc}") from exc

    async def put(self, record: GiveawayRecord) -> None:
        document = record.to_payload()
        document["ends_at"] = record.ends_at
        try:
            await self.collection.replace_one(
                {"announcement_id": record.announcement_id}, document, upsert=True
            )
        except PyMongoError as exc:
            raise StoreFailure(f"Unable to store giveaway {record.announcement_id}: {exc}") from exc

    async def get(self, announcement_id: int) -> Optional[GiveawayRecord]:
        try:
            document = await self.collection.find_one(_giveaway_filter(announcement_id))
        except PyMongoError as exc:
            raise StoreFailure(f"Unable to load giveaway {announcement_id}: {exc}") from exc
        if document is None:
            return None
        try:
            return GiveawayRecord.from_payload(document)
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreFailure(f"Malformed giveaway document {announcement_id}: {exc}") from exc

    async def delete(self, announcement_id: int) -> bool:
        try:
            result = await self.collection.delete_one(_giveaway_filter(announcement_id))
        except PyMongoError as exc:
            raise StoreFailure(f"Unable to delete giveaway {announcement_id}: {exc}") from exc
        return result.deleted_count > 0

    async def list_all(self) -> List[GiveawayRecord]:
        try:
            documents = await self.collection.find({}).to_list(None)
        except PyMongoError as exc:
            raise StoreFailure(f"Unable to list giveaways: {exc}") from exc
        records: List[GiveawayRecord] = []
        for document in documents:
            try:
                records.append(GiveawayRecord.from_payload(document))
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping malformed giveaway document %s: %s", document.get("_id"), exc)
        return records


class MongoWarningStore:
    def __init__(self, collection) -> None:
        self.collection = collection

    async def add(self, record: WarningRecord) -> None:
        document = record.to_payload()
        document["at"] = record.at
        try:
            await self.collection.insert_one(document)
        except PyMongoError as exc:
            raise StoreFailure(f"Unable to store warning for {record.user_id}: {exc}") from exc

    async def list_for(self, guild_id: int, user_id: int) -> List[WarningRecord]:
        try:
            documents = await self.collection.find(
                _warning_filter(guild_id, user_id)
            ).sort("at", ASCENDING).to_list(None)
        except PyMongoError as exc:
            raise StoreFailure(f"Unable to load warnings for {user_id}: {exc}") from exc
        warnings: List[WarningRecord] = []
        for document in documents:
            try:
                warnings.append(WarningRecord.from_payload(document))
            except (KeyError, TypeError, ValueError):
                LOGGER.warning(
                    "Skipping malformed warning document %s for user %s", document.get("_id"), user_id
                )
        return warnings


@dataclass(slots=True)
class Stores:
    """The giveaway and warning stores of one backend, plus its client."""
    giveaways: GiveawayStore
    warnings: WarningStore
    client: Optional[AsyncMongoClient] = None

    async def prepare(self) -> None:
        if isinstance(self.giveaways, MongoGiveawayStore):
            await self.giveaways.ensure_indexes()

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None


def open_stores(config: StorageConfig, *, client_factory=AsyncMongoClient) -> Stores:
    """Build the stores for the backend named in the configuration."""
    if config.backend == "mongo":
        client = client_factory(config.mongodb_uri, tz_aware=True)
        database = client[config.database]
        LOGGER.info("Using MongoDB storage (database %s).", config.database)
        return Stores(
            giveaways=MongoGiveawayStore(database["giveaways"]),
            warnings=MongoWarningStore(database["warnings"]),
            client=client,
        )

    LOGGER.info("Using JSON file storage in %s.", config.data_dir)
    return Stores(
        giveaways=JsonGiveawayStore(config.data_dir / "giveaways.json"),
        warnings=JsonWarningStore(config.data_dir / "warnings.json"),
    )
