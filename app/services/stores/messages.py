from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.notification import Notification
from app.services.stores.document import encode_document


logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "notifications"


class NotificationMessage(BaseModel):
    agency_id: str
    type: str
    title: str
    message: str
    link: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MessageSender(ABC):
    @abstractmethod
    async def send(self, user_id: str, message: NotificationMessage) -> None:
        """Deliver one message to one user; raises on failure."""


def channel_for_agency(prefix: str, agency_id: str) -> str:
    return f"{prefix}:{CHANNEL_PREFIX}:{agency_id}"


class SqlMessageSender(MessageSender):
    """Stores an in-app notification, then announces it on the agency channel."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Redis | None = None,
        *,
        prefix: str = "loanflow",
    ) -> None:
        self._session_factory = session_factory
        self._redis = redis
        self._prefix = prefix

    async def send(self, user_id: str, message: NotificationMessage) -> None:
        metadata = encode_document(message.metadata)
        async with self._session_factory() as session:
            row = Notification(
                agency_id=message.agency_id,
                user_id=user_id,
                type=message.type,
                title=message.title,
                message=message.message,
                link=message.link,
                payload=metadata,
            )
            session.add(row)
            await session.commit()

        if self._redis is None:
            return
        payload = {
            "id": str(row.id) if row.id else None,
            "user_id": user_id,
            "type": message.type,
            "title": message.title,
            "message": message.message,
            "link": message.link,
            "metadata": metadata,
        }
        try:
            await self._redis.publish(channel_for_agency(self._prefix, message.agency_id), json.dumps(payload))
        except RedisError as exc:
            # The stored row is the delivery; the live push is a courtesy.
            logger.warning("Notification publish failed for user=%s: %s", user_id, exc)
