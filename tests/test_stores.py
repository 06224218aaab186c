import json
from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError
from sqlalchemy.exc import OperationalError

from app.models.audit_log import AuditLog
from app.models.notification import Notification
from app.schemas.loan import LoanAuditEntry, LoanStatus, UserRole
from app.services.audit import SqlAgencyAuditStream
from app.services.stores.document import RedisDocumentStore
from app.services.stores.errors import (
    DocumentNotFoundError,
    DocumentWriteError,
    RelationalWriteError,
    StaleDocumentError,
    StoreError,
)
from app.services.stores.messages import NotificationMessage, SqlMessageSender, channel_for_agency
from app.services.stores.paths import DocumentPaths
from app.services.stores.recipients import SqlRecipientResolver
from app.services.stores.relational import SqlRelationalStore

from conftest import AGENCY, FakeAsyncSession, FakeResult, session_factory


# ---------------------------------------------------------------------------
# Redis fakes
# ---------------------------------------------------------------------------


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._watched: str | None = None
        self._version = 0
        self._queued: list[tuple[str, str]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def watch(self, key: str) -> None:
        self._watched = key
        self._version = self._redis.versions.get(key, 0)

    async def get(self, key: str):
        value = self._redis.data.get(key)
        if self._redis.race_on_read:
            self._redis.race_on_read = False
            self._redis.versions[key] = self._redis.versions.get(key, 0) + 1
        return value

    def multi(self) -> None:
        pass

    def set(self, key: str, value: str) -> None:
        self._queued.append((key, value))

    async def execute(self) -> list:
        if self._redis.versions.get(self._watched, 0) != self._version:
            raise WatchError("watched key changed")
        for key, value in self._queued:
            await self._redis.set(key, value)
        return [True] * len(self._queued)


class FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.versions: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.race_on_read = False
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key: str):
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str) -> bool:
        self._check()
        self.data[key] = value
        self.versions[key] = self.versions.get(key, 0) + 1
        return True

    async def rpush(self, key: str, value: str) -> int:
        self._check()
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        return list(self.lists.get(key, []))

    async def lindex(self, key: str, index: int):
        self._check()
        items = self.lists.get(key, [])
        return items[index] if -len(items) <= index < len(items) else None

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, message))
        return 1

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)


LOAN_PATH = DocumentPaths.loan(AGENCY, "L1")


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store(redis) -> RedisDocumentStore:
    return RedisDocumentStore(redis, prefix="test")


@pytest.mark.asyncio
async def test_redis_document_round_trip(store, redis) -> None:
    await store.set(LOAN_PATH, {"status": "draft", "amount": "100", "at": datetime(2025, 1, 1, tzinfo=timezone.utc)})

    assert f"test:doc:{LOAN_PATH}" in redis.data
    loaded = await store.get(LOAN_PATH)
    assert loaded == {"status": "draft", "amount": "100", "at": "2025-01-01T00:00:00+00:00"}


@pytest.mark.asyncio
async def test_redis_missing_document(store) -> None:
    with pytest.raises(DocumentNotFoundError):
        await store.get(LOAN_PATH)
    with pytest.raises(DocumentNotFoundError):
        await store.update(LOAN_PATH, {"status": "pending"})


@pytest.mark.asyncio
async def test_redis_conditional_update(store) -> None:
    await store.set(LOAN_PATH, {"status": "draft", "officer_id": "o-1"})

    await store.update(LOAN_PATH, {"status": "pending"}, expected={"status": "draft"})

    assert await store.get(LOAN_PATH) == {"status": "pending", "officer_id": "o-1"}
    with pytest.raises(StaleDocumentError) as excinfo:
        await store.update(LOAN_PATH, {"status": "approved"}, expected={"status": "under_review"})
    assert excinfo.value.actual == {"status": "pending"}


@pytest.mark.asyncio
async def test_redis_update_lost_race_is_stale(store, redis) -> None:
    await store.set(LOAN_PATH, {"status": "draft"})
    redis.race_on_read = True

    with pytest.raises(StaleDocumentError):
        await store.update(LOAN_PATH, {"status": "pending"}, expected={"status": "draft"})

    assert (await store.get(LOAN_PATH))["status"] == "draft"


@pytest.mark.asyncio
async def test_redis_append_and_list(store) -> None:
    collection = DocumentPaths.loan_audit_logs(AGENCY, "L1")

    first = await store.append(collection, {"new_status": "pending"})
    second = await store.append(collection, {"new_status": "under_review"})

    rows = await store.list(collection)
    assert [row["id"] for row in rows] == [first, second]
    assert rows[1]["new_status"] == "under_review"
    assert (await store.last(collection))["id"] == second
    assert await store.last(DocumentPaths.loan_audit_logs(AGENCY, "L2")) is None


@pytest.mark.asyncio
async def test_redis_outage_is_wrapped(store, redis) -> None:
    redis.down = True

    with pytest.raises(StoreError):
        await store.get(LOAN_PATH)
    with pytest.raises(DocumentWriteError):
        await store.append(DocumentPaths.loan_audit_logs(AGENCY, "L1"), {})
    with pytest.raises(StoreError):
        await store.last(DocumentPaths.loan_audit_logs(AGENCY, "L1"))


# ---------------------------------------------------------------------------
# SQL adapters
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sql_relational_update() -> None:
    session = FakeAsyncSession(FakeResult(rowcount=1))
    relational = SqlRelationalStore(session_factory(session))

    await relational.update("loans", {"id": "L1", "agency_id": AGENCY}, {"status": "pending"})

    assert session.committed
    sql = str(session.executed[0])
    assert sql.startswith("UPDATE loans")
    assert "loans.agency_id" in sql


@pytest.mark.asyncio
async def test_sql_relational_rejects_unscoped_or_unknown_writes() -> None:
    session = FakeAsyncSession()
    relational = SqlRelationalStore(session_factory(session))

    with pytest.raises(RelationalWriteError):
        await relational.update("loans", {"id": "L1"}, {"status": "pending"})
    with pytest.raises(RelationalWriteError):
        await relational.update("loans", {"id": "L1", "agency_id": AGENCY}, {"amount": 1})
    with pytest.raises(RelationalWriteError):
        await relational.update("customers", {"id": "C1", "agency_id": AGENCY}, {"status": "x"})
    assert session.executed == []


@pytest.mark.asyncio
async def test_sql_relational_missing_row_or_db_error() -> None:
    missing = SqlRelationalStore(session_factory(FakeAsyncSession(FakeResult(rowcount=0))))
    broken = SqlRelationalStore(
        session_factory(FakeAsyncSession(execute_error=OperationalError("UPDATE", {}, Exception("down"))))
    )

    with pytest.raises(RelationalWriteError):
        await missing.update("loans", {"id": "L1", "agency_id": AGENCY}, {"status": "pending"})
    with pytest.raises(RelationalWriteError):
        await broken.update("loans", {"id": "L1", "agency_id": AGENCY}, {"status": "pending"})


@pytest.mark.asyncio
async def test_sql_recipient_resolver() -> None:
    session = FakeAsyncSession(FakeResult(rows=[("admin-1",), ("manager-1",), (None,)]))
    resolver = SqlRecipientResolver(session_factory(session))

    found = await resolver.resolve(AGENCY, [UserRole.ADMIN, UserRole.MANAGER])

    assert found == {"admin-1", "manager-1"}
    assert "agency_members.agency_id" in str(session.executed[0])
    assert await resolver.resolve(AGENCY, []) == set()
    assert len(session.executed) == 1


@pytest.mark.asyncio
async def test_sql_message_sender_stores_then_publishes(redis) -> None:
    session = FakeAsyncSession()
    sender = SqlMessageSender(session_factory(session), redis, prefix="test")
    message = NotificationMessage(
        agency_id=AGENCY,
        type="loan_approved",
        title="Your Loan Update",
        message="Loan LN-1 has been approved.",
        link="/customer/loans/L1",
        metadata={"loan_id": "L1"},
    )

    await sender.send("customer-1", message)

    row = session.added[0]
    assert isinstance(row, Notification)
    assert row.user_id == "customer-1"
    assert row.payload == {"loan_id": "L1"}
    assert session.committed
    channel, raw = redis.published[0]
    assert channel == channel_for_agency("test", AGENCY)
    assert json.loads(raw)["id"] == str(row.id)


@pytest.mark.asyncio
async def test_sql_message_sender_survives_publish_failure(redis) -> None:
    redis.down = True
    session = FakeAsyncSession()
    sender = SqlMessageSender(session_factory(session), redis, prefix="test")

    await sender.send("u-1", NotificationMessage(agency_id=AGENCY, type="t", title="T", message="m"))

    assert session.committed


@pytest.mark.asyncio
async def test_sql_agency_audit_stream() -> None:
    session = FakeAsyncSession()
    entry = LoanAuditEntry(
        id="e1",
        loan_id="L1",
        agency_id=AGENCY,
        previous_status=LoanStatus.DRAFT,
        new_status=LoanStatus.PENDING,
        performed_by="officer-1",
        performed_by_role=UserRole.LOAN_OFFICER,
        timestamp=datetime(2025, 3, 1, tzinfo=timezone.utc),
    )

    await SqlAgencyAuditStream(session_factory(session)).record(entry)

    row = session.added[0]
    assert isinstance(row, AuditLog)
    assert row.resource_id == "L1"
    assert row.new_value["loan_audit_id"] == "e1"
    assert session.committed
