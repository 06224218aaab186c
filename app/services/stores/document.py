from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from fastapi.encoders import jsonable_encoder
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from app.services.stores.errors import (
    DocumentNotFoundError,
    DocumentWriteError,
    StaleDocumentError,
    StoreError,
)


def encode_document(value: Any) -> Any:
    return jsonable_encoder(
        value,
        custom_encoder={
            Decimal: lambda v: str(v),
            datetime: lambda v: v.isoformat(),
            date: lambda v: v.isoformat(),
        },
    )


class DocumentStore(ABC):
    """Path-addressed JSON documents with append-only subcollections."""

    @abstractmethod
    async def get(self, path: str) -> dict[str, Any]:
        """Return the document at ``path`` or raise ``DocumentNotFoundError``."""

    @abstractmethod
    async def set(self, path: str, record: dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def update(
        self,
        path: str,
        fields: dict[str, Any],
        *,
        expected: dict[str, Any] | None = None,
    ) -> None:
        """Merge ``fields`` into an existing document.

        When ``expected`` is given, every listed field must still hold that
        value at write time, otherwise ``StaleDocumentError`` is raised and
        nothing is written.
        """

    @abstractmethod
    async def append(self, collection_path: str, record: dict[str, Any]) -> str:
        """Append ``record`` to a subcollection and return its generated id."""

    @abstractmethod
    async def list(self, collection_path: str) -> list[dict[str, Any]]:
        """Return a subcollection in append order."""

    @abstractmethod
    async def last(self, collection_path: str) -> dict[str, Any] | None:
        """Return the most recently appended record, or None for an empty subcollection."""


class RedisDocumentStore(DocumentStore):
    def __init__(self, redis: Redis, *, prefix: str) -> None:
        self._redis = redis
        self.prefix = prefix

    def _doc_key(self, path: str) -> str:
        return f"{self.prefix}:doc:{path}"

    def _collection_key(self, collection_path: str) -> str:
        return f"{self.prefix}:col:{collection_path}"

    async def get(self, path: str) -> dict[str, Any]:
        try:
            raw = await self._redis.get(self._doc_key(path))
        except RedisError as exc:
            raise StoreError(f"Document read failed: {path}") from exc
        if raw is None:
            raise DocumentNotFoundError(path)
        return json.loads(raw)

    async def set(self, path: str, record: dict[str, Any]) -> None:
        try:
            await self._redis.set(self._doc_key(path), json.dumps(encode_document(record)))
        except RedisError as exc:
            raise DocumentWriteError(f"Document write failed: {path}") from exc

    async def update(
        self,
        path: str,
        fields: dict[str, Any],
        *,
        expected: dict[str, Any] | None = None,
    ) -> None:
        key = self._doc_key(path)
        encoded_fields = encode_document(fields)
        encoded_expected = encode_document(expected) if expected else None
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    raise DocumentNotFoundError(path)
                current = json.loads(raw)
                if encoded_expected:
                    actual = {name: current.get(name) for name in encoded_expected}
                    if actual != encoded_expected:
                        raise StaleDocumentError(path, encoded_expected, actual)
                current.update(encoded_fields)
                pipe.multi()
                pipe.set(key, json.dumps(current))
                await pipe.execute()
        except WatchError as exc:
            raise StaleDocumentError(path, encoded_expected) from exc
        except RedisError as exc:
            raise DocumentWriteError(f"Document update failed: {path}") from exc

    async def append(self, collection_path: str, record: dict[str, Any]) -> str:
        record_id = uuid4().hex
        payload = {**encode_document(record), "id": record_id}
        try:
            await self._redis.rpush(self._collection_key(collection_path), json.dumps(payload))
        except RedisError as exc:
            raise DocumentWriteError(f"Append failed: {collection_path}") from exc
        return record_id

    async def list(self, collection_path: str) -> list[dict[str, Any]]:
        try:
            rows = await self._redis.lrange(self._collection_key(collection_path), 0, -1)
        except RedisError as exc:
            raise StoreError(f"Collection read failed: {collection_path}") from exc
        return [json.loads(row) for row in rows]

    async def last(self, collection_path: str) -> dict[str, Any] | None:
        try:
            raw = await self._redis.lindex(self._collection_key(collection_path), -1)
        except RedisError as exc:
            raise StoreError(f"Collection read failed: {collection_path}") from exc
        return json.loads(raw) if raw is not None else None
