"""Tests for the processed-call ledger state machine."""

from datetime import timedelta

import pytest

from callreview.ledger import ProcessedCallLedger, call_key
from callreview.models import CallStatus, Completed, Failed, ProcessedCallRecord, Skipped, utcnow

TENANT = "acme"


def _processing_record(key, minutes_ago):
    ts = utcnow() - timedelta(minutes=minutes_ago)
    return ProcessedCallRecord(
        tenant_id=TENANT,
        call_key=key,
        call_kind="meeting",
        status=CallStatus.PROCESSING,
        created_at=ts,
        updated_at=ts,
    )


@pytest.fixture
def ledger(repo):
    return ProcessedCallLedger(repo, stale_after=timedelta(minutes=10))


class TestCallKey:
    def test_kind_and_platform_qualified(self):
        assert call_key("diio", "phone_call", "9") == "diio:phone_call_9"
        assert call_key("diio", "meeting", "9") != call_key("diio", "phone_call", "9")


class TestClaim:
    @pytest.mark.asyncio
    async def test_new_key_is_claimed(self, ledger, repo):
        assert await ledger.claim(TENANT, "diio:meeting_1", "meeting") is True
        record = await repo.get_processed_call(TENANT, "diio:meeting_1")
        assert record.status == CallStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_failed_key_is_reclaimed_and_error_cleared(self, ledger, repo):
        await ledger.claim(TENANT, "k")
        await ledger.mark_terminal(TENANT, "k", Failed("network: boom"))

        assert await ledger.claim(TENANT, "k") is True
        record = await repo.get_processed_call(TENANT, "k")
        assert record.status == CallStatus.PROCESSING
        assert record.error_message is None

    @pytest.mark.asyncio
    async def test_completed_key_is_not_reclaimed(self, ledger, repo):
        await ledger.claim(TENANT, "k")
        await ledger.mark_terminal(TENANT, "k", Completed(review_id=5, overall_score=64))

        assert await ledger.claim(TENANT, "k") is False
        record = await repo.get_processed_call(TENANT, "k")
        assert record.status == CallStatus.COMPLETED
        assert record.review_id == 5

    @pytest.mark.asyncio
    async def test_skipped_key_is_not_reclaimed(self, ledger):
        await ledger.claim(TENANT, "k")
        await ledger.mark_terminal(TENANT, "k", Skipped("internal call"))
        assert await ledger.claim(TENANT, "k") is False

    @pytest.mark.asyncio
    async def test_live_processing_is_not_reclaimed(self, ledger, repo):
        await repo.insert_processed_call(_processing_record("k", minutes_ago=5))
        assert await ledger.claim(TENANT, "k") is False

    @pytest.mark.asyncio
    async def test_stale_processing_is_reclaimed(self, ledger, repo):
        await repo.insert_processed_call(_processing_record("k", minutes_ago=11))
        assert await ledger.claim(TENANT, "k") is True
        record = await repo.get_processed_call(TENANT, "k")
        assert utcnow() - record.updated_at < timedelta(minutes=1)


class TestDoneSet:
    @pytest.mark.asyncio
    async def test_terminal_and_live_records_are_done(self, ledger, repo):
        await ledger.claim(TENANT, "done")
        await ledger.mark_terminal(TENANT, "done", Completed(review_id=1, overall_score=50))
        await ledger.claim(TENANT, "skipped")
        await ledger.mark_terminal(TENANT, "skipped", Skipped("internal call"))
        await ledger.claim(TENANT, "failed")
        await ledger.mark_terminal(TENANT, "failed", Failed("data: empty"))
        await repo.insert_processed_call(_processing_record("live", minutes_ago=5))
        await repo.insert_processed_call(_processing_record("stale", minutes_ago=11))

        done = await ledger.compute_done_set(TENANT)
        assert done == {"done", "skipped", "live"}

    @pytest.mark.asyncio
    async def test_scoped_by_tenant(self, ledger):
        await ledger.claim(TENANT, "k")
        await ledger.mark_terminal(TENANT, "k", Completed(review_id=1, overall_score=50))
        assert await ledger.compute_done_set("other-tenant") == set()


class TestMarkTerminal:
    @pytest.mark.asyncio
    async def test_failure_reason_recorded(self, ledger, repo):
        await ledger.claim(TENANT, "k")
        await ledger.mark_terminal(TENANT, "k", Failed("scoring_timeout: no answer"))
        record = await repo.get_processed_call(TENANT, "k")
        assert record.status == CallStatus.FAILED
        assert record.error_message.startswith("scoring_timeout:")
        assert record.processed_at is None

    @pytest.mark.asyncio
    async def test_unknown_outcome_rejected(self, ledger):
        await ledger.claim(TENANT, "k")
        with pytest.raises(TypeError):
            await ledger.mark_terminal(TENANT, "k", "done")


class TestListRecords:
    @pytest.mark.asyncio
    async def test_records_scoped_by_tenant(self, ledger):
        await ledger.claim(TENANT, "a")
        await ledger.mark_terminal(TENANT, "a", Completed(review_id=1, overall_score=50))
        await ledger.claim(TENANT, "b")
        await ledger.claim("initech", "c")

        records = await ledger.list_records(TENANT)

        assert {r.call_key: r.status for r in records} == {
            "a": CallStatus.COMPLETED,
            "b": CallStatus.PROCESSING,
        }
