from datetime import datetime, timedelta, timezone

import pytest

from app.schemas.loan import LoanAuditEntry, LoanStatus, UserRole
from app.services.audit import (
    LOAN_STATUS_CHANGE_ACTION,
    LoanAuditWriter,
    _build_summary,
    _diff_values,
    build_agency_audit_log,
    list_loan_audit_trail,
)
from app.services.stores.errors import DocumentWriteError

from conftest import AGENCY, FakeAgencyAuditStream, InMemoryDocumentStore


T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _entry(previous: LoanStatus, new: LoanStatus, at: datetime, **overrides) -> LoanAuditEntry:
    values = dict(
        loan_id="L1",
        agency_id=AGENCY,
        previous_status=previous,
        new_status=new,
        performed_by="manager-1",
        performed_by_role=UserRole.MANAGER,
        timestamp=at,
        notes="",
    )
    values.update(overrides)
    return LoanAuditEntry(**values)


def test_diff_values_nested() -> None:
    changes = _diff_values({"status": "pending", "meta": {"a": 1}}, {"status": "approved", "meta": {"a": 2}})

    assert changes == {
        "status": {"from": "pending", "to": "approved"},
        "meta.a": {"from": 1, "to": 2},
    }


def test_build_summary_truncates() -> None:
    changes = {key: {"from": None, "to": 1} for key in ("d", "a", "c", "b")}

    assert _build_summary("update", changes) == "update: a, b, c..."
    assert _build_summary("update", None) == "update"


def test_build_agency_audit_log() -> None:
    entry = _entry(LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED, T0, id="e1", notes="ok")

    row = build_agency_audit_log(entry)

    assert row.agency_id == AGENCY
    assert row.action == LOAN_STATUS_CHANGE_ACTION
    assert row.resource_type == "loan"
    assert row.resource_id == "L1"
    assert row.actor_role == "manager"
    assert row.old_value == {"status": "under_review"}
    assert row.new_value["status"] == "approved"
    assert row.changes["status"] == {"from": "under_review", "to": "approved"}
    assert row.summary.startswith(LOAN_STATUS_CHANGE_ACTION)


@pytest.mark.asyncio
async def test_record_transition_appends_and_mirrors() -> None:
    documents = InMemoryDocumentStore()
    stream = FakeAgencyAuditStream()
    writer = LoanAuditWriter(documents, stream)

    stored = await writer.record_transition("L1", AGENCY, _entry(LoanStatus.DRAFT, LoanStatus.PENDING, T0))

    assert stored.id
    rows = documents.audit_rows(AGENCY, "L1")
    assert len(rows) == 1
    assert rows[0]["id"] == stored.id
    assert rows[0]["action"] == "STATUS_CHANGE"
    assert stream.entries == [stored]


@pytest.mark.asyncio
async def test_timestamps_never_go_backwards() -> None:
    documents = InMemoryDocumentStore()
    writer = LoanAuditWriter(documents, FakeAgencyAuditStream())

    await writer.record_transition("L1", AGENCY, _entry(LoanStatus.PENDING, LoanStatus.UNDER_REVIEW, T0))
    second = await writer.record_transition(
        "L1", AGENCY, _entry(LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED, T0 - timedelta(seconds=5))
    )

    assert second.timestamp == T0
    trail = await list_loan_audit_trail(documents, AGENCY, "L1")
    assert [entry.new_status for entry in trail] == [LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED]


@pytest.mark.asyncio
async def test_writers_sharing_a_store_keep_timestamps_ordered() -> None:
    documents = InMemoryDocumentStore()
    first_worker = LoanAuditWriter(documents, FakeAgencyAuditStream())
    second_worker = LoanAuditWriter(documents, FakeAgencyAuditStream())

    await first_worker.record_transition("L1", AGENCY, _entry(LoanStatus.PENDING, LoanStatus.UNDER_REVIEW, T0))
    # Second worker's clock runs two seconds behind.
    second = await second_worker.record_transition(
        "L1", AGENCY, _entry(LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED, T0 - timedelta(seconds=2))
    )

    assert second.timestamp == T0
    stored = [datetime.fromisoformat(row["timestamp"]) for row in documents.audit_rows(AGENCY, "L1")]
    assert stored == [T0, T0]
    trail = await list_loan_audit_trail(documents, AGENCY, "L1")
    assert [entry.new_status for entry in trail] == [LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED]


@pytest.mark.asyncio
async def test_next_timestamp_without_history_is_unchanged() -> None:
    writer = LoanAuditWriter(InMemoryDocumentStore(), FakeAgencyAuditStream())

    assert await writer.next_timestamp(AGENCY, "L1", T0) == T0


@pytest.mark.asyncio
async def test_loan_log_failure_propagates() -> None:
    documents = InMemoryDocumentStore()
    documents.fail_ops.add("append")
    stream = FakeAgencyAuditStream()
    writer = LoanAuditWriter(documents, stream)

    with pytest.raises(DocumentWriteError):
        await writer.record_transition("L1", AGENCY, _entry(LoanStatus.DRAFT, LoanStatus.PENDING, T0))

    assert stream.entries == []


@pytest.mark.asyncio
async def test_agency_stream_failure_is_logged_only() -> None:
    documents = InMemoryDocumentStore()
    stream = FakeAgencyAuditStream()
    stream.fail = True

    stored = await LoanAuditWriter(documents, stream).record_transition(
        "L1", AGENCY, _entry(LoanStatus.DRAFT, LoanStatus.PENDING, T0)
    )

    assert stored.id
    assert len(documents.audit_rows(AGENCY, "L1")) == 1


@pytest.mark.asyncio
async def test_entry_for_another_loan_is_rejected() -> None:
    writer = LoanAuditWriter(InMemoryDocumentStore(), FakeAgencyAuditStream())

    with pytest.raises(ValueError):
        await writer.record_transition("L2", AGENCY, _entry(LoanStatus.DRAFT, LoanStatus.PENDING, T0))
