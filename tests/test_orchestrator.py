"""End-to-end orchestration tests with a fake platform and a fake scoring collaborator."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from callreview.errors import PersistenceError, PlatformAPIError, ScoringTimeoutError
from callreview.ledger import call_key
from callreview.models import (
    Attendee,
    CallMetadata,
    CallStatus,
    Completed,
    Failed,
    Platform,
    ScoringResult,
    Skipped,
    TranscriptRef,
    WebhookCall,
)
from callreview.orchestrator import ReviewOrchestrator, extract_webhook_calls

NOW = datetime.now(timezone.utc)


def _call(call_id, seller="jane@acme.com", hours_ago=1, customers=True, transcript_ref=True):
    name = seller.split("@")[0].title()
    return CallMetadata(
        id=call_id,
        kind="meeting",
        title=f"Meeting {call_id}",
        occurred_at=NOW - timedelta(hours=hours_ago),
        sellers=[Attendee(name=f"{name} Doe", email=seller)],
        customers=[Attendee(name="Hank Scorpio", company="Globex")] if customers else [],
        transcript_ref=TranscriptRef(id=f"t-{call_id}") if transcript_ref else None,
    )


class FakeAdapter:
    def __init__(self, credential, calls, transcript_error=None):
        self.platform = credential.platform
        self.credential = credential
        self.calls = {c.id: c for c in calls}
        self.transcript_error = transcript_error
        self.closed = False

    async def list_recent_calls(self, window_days):
        return list(self.calls.values())

    async def get_call_metadata(self, call_id, call_kind):
        return self.calls[call_id]

    async def get_transcript(self, transcript_ref):
        if self.transcript_error is not None:
            raise self.transcript_error
        return "Jane: What prompted the evaluation?\nHank: Our pipeline reviews take too long."

    async def aclose(self):
        self.closed = True


class FakeScoring:
    def __init__(self, payload, fail_titles=()):
        self.payload = payload
        self.fail_titles = fail_titles
        self.transcripts = []

    async def invoke(self, transcript, api_key=None):
        self.transcripts.append(transcript)
        for title in self.fail_titles:
            if transcript.startswith(f"Call: {title}\n"):
                raise ScoringTimeoutError("Scoring did not complete within 45s")
        return ScoringResult.model_validate(self.payload), self.payload


@pytest_asyncio.fixture
async def integration(repo, diio_credential):
    return await repo.upsert_integration(diio_credential)


def _orchestrator(settings, repo, scoring, adapters):
    """Serve each tenant the FakeAdapter registered for it in ``adapters``."""

    def factory(credential, on_refresh):
        adapter = adapters[credential.tenant_id]
        adapter.credential = credential
        return adapter

    return ReviewOrchestrator(settings, repo, scoring_client=scoring, adapter_factory=factory)


# ── Scheduled run ──

class TestRun:
    @pytest.mark.asyncio
    async def test_end_to_end_single_call(self, settings, repo, payload, integration):
        adapter = FakeAdapter(integration, [_call("m1")])
        scoring = FakeScoring(payload)
        orch = _orchestrator(settings, repo, scoring, {"acme": adapter})

        summary = await orch.run()

        assert (summary.tenants_checked, summary.tenants_processed) == (1, 1)
        assert (summary.calls_processed, summary.calls_failed) == (1, 0)
        assert summary.error is None

        reviews = await repo.list_reviews("acme")
        assert len(reviews) == 1
        assert reviews[0].overall_score == 64
        assert reviews[0].rep_name == "Jane Doe"
        assert reviews[0].client == "Globex"
        assert reviews[0].rep_id == (await repo.find_rep("acme", "Jane Doe")).id

        record = await repo.get_processed_call("acme", call_key("diio", "meeting", "m1"))
        assert record.status == CallStatus.COMPLETED
        assert record.review_id == reviews[0].id
        assert adapter.closed

    @pytest.mark.asyncio
    async def test_second_run_creates_no_duplicate(self, settings, repo, payload, integration):
        scoring = FakeScoring(payload)
        orch = _orchestrator(settings, repo, scoring, {"acme": FakeAdapter(integration, [_call("m1")])})

        await orch.run()
        second = await orch.run()

        assert second.calls_processed == 0
        assert second.tenants_processed == 0
        assert len(await repo.list_reviews("acme")) == 1
        assert len(scoring.transcripts) == 1

    @pytest.mark.asyncio
    async def test_scoring_timeout_isolated_to_one_call(self, settings, repo, payload, integration):
        calls = [_call("m1", "a@acme.com", 1), _call("m2", "b@acme.com", 2)]
        scoring = FakeScoring(payload, fail_titles=["Meeting m1"])
        orch = _orchestrator(settings, repo, scoring, {"acme": FakeAdapter(integration, calls)})

        summary = await orch.run()

        assert (summary.calls_processed, summary.calls_failed) == (1, 1)
        failed = await repo.get_processed_call("acme", call_key("diio", "meeting", "m1"))
        assert failed.status == CallStatus.FAILED
        assert failed.error_message.startswith("scoring_timeout:")
        done = await repo.get_processed_call("acme", call_key("diio", "meeting", "m2"))
        assert done.status == CallStatus.COMPLETED

        # Failed calls are retried on the next run
        scoring.fail_titles = ()
        retry = await orch.run()
        assert retry.calls_processed == 1
        assert len(await repo.list_reviews("acme")) == 2

    @pytest.mark.asyncio
    async def test_batch_capped_per_integration(self, settings, repo, payload, integration):
        settings.max_calls_per_run = 2
        calls = [_call(f"m{i}", f"rep{i}@acme.com", i) for i in range(1, 6)]
        orch = _orchestrator(settings, repo, FakeScoring(payload), {"acme": FakeAdapter(integration, calls)})

        summary = await orch.run()

        assert summary.calls_processed == 2
        assert len(await repo.list_processed_calls("acme")) == 2

    @pytest.mark.asyncio
    async def test_one_call_per_seller(self, settings, repo, payload, integration):
        calls = [
            _call("a1", "a@acme.com", 1),
            _call("a2", "a@acme.com", 2),
            _call("a3", "a@acme.com", 3),
            _call("b1", "b@acme.com", 4),
        ]
        scoring = FakeScoring(payload)
        orch = _orchestrator(settings, repo, scoring, {"acme": FakeAdapter(integration, calls)})

        summary = await orch.run()

        assert summary.calls_processed == 2
        keys = {r.call_key for r in await repo.list_processed_calls("acme")}
        assert keys == {call_key("diio", "meeting", "a1"), call_key("diio", "meeting", "b1")}

    @pytest.mark.asyncio
    async def test_calls_without_customers_reviewed_by_default(self, settings, repo, payload, integration):
        assert settings.skip_internal_calls is False
        scoring = FakeScoring(payload)
        adapter = FakeAdapter(integration, [_call("m1", customers=False)])
        orch = _orchestrator(settings, repo, scoring, {"acme": adapter})

        summary = await orch.run()

        assert (summary.calls_processed, summary.calls_skipped) == (1, 0)
        record = await repo.get_processed_call("acme", call_key("diio", "meeting", "m1"))
        assert record.status == CallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_internal_calls_skipped_without_scoring_when_enabled(self, settings, repo, payload, integration):
        settings.skip_internal_calls = True
        scoring = FakeScoring(payload)
        adapter = FakeAdapter(integration, [_call("m1", customers=False)])
        orch = _orchestrator(settings, repo, scoring, {"acme": adapter})

        summary = await orch.run()

        assert summary.calls_skipped == 1
        assert summary.calls_processed == 0
        assert scoring.transcripts == []
        record = await repo.get_processed_call("acme", call_key("diio", "meeting", "m1"))
        assert record.status == CallStatus.SKIPPED
        assert record.error_message == "internal call, no external participants"

    @pytest.mark.asyncio
    async def test_calls_without_transcript_not_batched(self, settings, repo, payload, integration):
        call = _call("m1").model_copy(update={"transcript_available": False})
        orch = _orchestrator(settings, repo, FakeScoring(payload), {"acme": FakeAdapter(integration, [call])})

        summary = await orch.run()

        assert summary.tenants_processed == 0
        assert await repo.list_processed_calls("acme") == []

    @pytest.mark.asyncio
    async def test_failing_tenant_does_not_stop_others(self, settings, repo, payload, integration, diio_credential):
        other = await repo.upsert_integration(
            diio_credential.model_copy(update={"id": None, "tenant_id": "initech"})
        )
        broken = FakeAdapter(integration, [])
        broken.list_recent_calls = AsyncMock(side_effect=PlatformAPIError("Diio", 500, "boom"))
        orch = _orchestrator(
            settings, repo, FakeScoring(payload),
            {"acme": broken, "initech": FakeAdapter(other, [_call("m1")])},
        )

        summary = await orch.run()

        assert summary.tenants_checked == 2
        assert summary.tenants_processed == 1
        assert summary.calls_processed == 1
        assert summary.error is None
        assert broken.closed

    @pytest.mark.asyncio
    async def test_tenant_without_scoring_key_skipped(self, settings, repo, payload, integration):
        settings.anthropic_api_key = None
        factory_calls = []

        def factory(credential, on_refresh):
            factory_calls.append(credential)
            return FakeAdapter(credential, [_call("m1")])

        orch = ReviewOrchestrator(settings, repo, scoring_client=FakeScoring(payload), adapter_factory=factory)
        summary = await orch.run()

        assert summary.tenants_checked == 1
        assert summary.tenants_processed == 0
        assert factory_calls == []

    @pytest.mark.asyncio
    async def test_adapter_receives_refresh_callback(self, settings, repo, payload, integration):
        received = []

        def factory(credential, on_refresh):
            received.append(on_refresh)
            return FakeAdapter(credential, [])

        orch = ReviewOrchestrator(settings, repo, scoring_client=FakeScoring(payload), adapter_factory=factory)
        await orch.run()

        assert received == [orch.token_manager.refresh]

    @pytest.mark.asyncio
    async def test_storage_failure_stops_run(self, settings, repo, payload, integration):
        orch = _orchestrator(settings, repo, FakeScoring(payload), {"acme": FakeAdapter(integration, [_call("m1")])})

        with patch.object(repo, "insert_review", AsyncMock(side_effect=PersistenceError("disk full"))):
            summary = await orch.run()

        assert summary.error.startswith("persistence:")
        assert summary.calls_processed == 0

    @pytest.mark.asyncio
    async def test_no_integrations(self, settings, repo, payload):
        orch = _orchestrator(settings, repo, FakeScoring(payload), {})
        summary = await orch.run()
        assert summary.tenants_checked == 0
        assert summary.error is None


# ── Single call ──

class TestProcessCall:
    @pytest.mark.asyncio
    async def test_missing_transcript_ref_fails_call(self, settings, repo, payload, integration):
        adapter = FakeAdapter(integration, [_call("m1", transcript_ref=False)])
        orch = _orchestrator(settings, repo, FakeScoring(payload), {"acme": adapter})

        outcome = await orch.process_call(integration, adapter, "m1", "meeting")

        assert isinstance(outcome, Failed)
        assert outcome.reason == "data: No transcript available yet"

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded_as_failure(self, settings, repo, payload, integration):
        adapter = FakeAdapter(integration, [_call("m1")], transcript_error=KeyError("transcript"))
        orch = _orchestrator(settings, repo, FakeScoring(payload), {"acme": adapter})

        outcome = await orch.process_call(integration, adapter, "m1", "meeting")

        assert isinstance(outcome, Failed)
        assert outcome.reason.startswith("unexpected: KeyError")
        record = await repo.get_processed_call("acme", call_key("diio", "meeting", "m1"))
        assert record.status == CallStatus.FAILED

    @pytest.mark.asyncio
    async def test_completed_call_is_not_reprocessed(self, settings, repo, payload, integration):
        adapter = FakeAdapter(integration, [_call("m1")])
        orch = _orchestrator(settings, repo, FakeScoring(payload), {"acme": adapter})

        first = await orch.process_call(integration, adapter, "m1", "meeting")
        second = await orch.process_call(integration, adapter, "m1", "meeting")

        assert isinstance(first, Completed)
        assert isinstance(second, Skipped)
        assert len(await repo.list_reviews("acme")) == 1

    @pytest.mark.asyncio
    async def test_rep_lookup_failure_does_not_block_review(self, settings, repo, payload, integration):
        adapter = FakeAdapter(integration, [_call("m1")])
        orch = _orchestrator(settings, repo, FakeScoring(payload), {"acme": adapter})

        with patch.object(repo, "find_rep", AsyncMock(side_effect=PersistenceError("locked"))):
            outcome = await orch.process_call(integration, adapter, "m1", "meeting")

        assert isinstance(outcome, Completed)
        review = await repo.get_review(outcome.review_id)
        assert review.rep_id is None


# ── Manual and webhook entry points ──

class TestProcessManual:
    @pytest.mark.asyncio
    async def test_manual_processing(self, settings, repo, payload, integration):
        orch = _orchestrator(settings, repo, FakeScoring(payload), {"acme": FakeAdapter(integration, [_call("m1")])})

        result = await orch.process_manual("acme", "m1", "meeting")
        assert result.ok is True
        assert result.overall_score == 64

        again = await orch.process_manual("acme", "m1", "meeting")
        assert again.ok is False
        assert again.status == "skipped"

    @pytest.mark.asyncio
    async def test_internal_call_rule_applies_to_manual_requests(self, settings, repo, payload, integration):
        settings.skip_internal_calls = True
        scoring = FakeScoring(payload)
        orch = _orchestrator(
            settings, repo, scoring, {"acme": FakeAdapter(integration, [_call("m1", customers=False)])}
        )

        result = await orch.process_manual("acme", "m1", "meeting")

        assert result.status == "skipped"
        assert result.error == "internal call, no external participants"
        assert scoring.transcripts == []

    @pytest.mark.asyncio
    async def test_unconfigured_platform(self, settings, repo, payload, integration):
        orch = _orchestrator(settings, repo, FakeScoring(payload), {})
        result = await orch.process_manual("acme", "c1", platform=Platform.GONG)
        assert result.ok is False
        assert result.status == "not_configured"

    @pytest.mark.asyncio
    async def test_failed_call_reports_reason(self, settings, repo, payload, integration):
        scoring = FakeScoring(payload, fail_titles=["Meeting m1"])
        orch = _orchestrator(settings, repo, scoring, {"acme": FakeAdapter(integration, [_call("m1")])})

        result = await orch.process_manual("acme", "m1")
        assert result.ok is False
        assert result.status == "failed"
        assert result.error.startswith("scoring_timeout:")


class TestListCalls:
    @pytest.mark.asyncio
    async def test_listing_joins_ledger_status(self, settings, repo, payload, integration):
        calls = [_call("m1", hours_ago=1), _call("m2", hours_ago=2), _call("m3", hours_ago=3, customers=False)]
        adapter = FakeAdapter(integration, calls)
        scoring = FakeScoring(payload, fail_titles=["Meeting m2"])
        orch = _orchestrator(settings, repo, scoring, {"acme": adapter})

        first = await orch.process_call(integration, adapter, "m1", "meeting")
        await orch.process_call(integration, adapter, "m2", "meeting")

        listings = await orch.list_calls("acme", days=14)

        by_id = {c.call_id: c for c in listings}
        assert [c.call_id for c in listings] == ["m1", "m2", "m3"]
        assert by_id["m1"].status == "completed"
        assert by_id["m1"].review_id == first.review_id
        assert by_id["m2"].status == "failed"
        assert by_id["m2"].error_message.startswith("scoring_timeout:")
        assert by_id["m3"].status == "new"
        assert by_id["m3"].review_id is None
        assert by_id["m3"].call_key == call_key("diio", "meeting", "m3")
        assert by_id["m3"].seller_name == "Jane Doe"
        assert by_id["m3"].customer_name is None
        assert adapter.closed

    @pytest.mark.asyncio
    async def test_unconfigured_platform_returns_none(self, settings, repo, payload, integration):
        orch = _orchestrator(settings, repo, FakeScoring(payload), {})
        assert await orch.list_calls("acme", platform=Platform.GONG) is None


class TestWebhook:
    def test_extract_single_and_batched_call_ids(self):
        assert extract_webhook_calls({"callId": 123}, Platform.GONG) == [
            WebhookCall(call_id="123", call_kind="call")
        ]
        calls = extract_webhook_calls(
            {"data": [{"callId": "a", "callType": "phone_call"}, {"nope": 1}, {"callId": "b"}]},
            Platform.DIIO,
        )
        assert calls == [
            WebhookCall(call_id="a", call_kind="phone_call"),
            WebhookCall(call_id="b", call_kind="meeting"),
        ]
        assert extract_webhook_calls({"event": "ping"}, Platform.GONG) == []

    @pytest.mark.asyncio
    async def test_only_auto_review_tenants_processed(self, settings, repo, payload, integration, diio_credential):
        opted_out = await repo.upsert_integration(
            diio_credential.model_copy(update={"id": None, "tenant_id": "initech", "auto_review": False})
        )
        scoring = FakeScoring(payload)
        orch = _orchestrator(
            settings, repo, scoring,
            {"acme": FakeAdapter(integration, [_call("m1")]), "initech": FakeAdapter(opted_out, [_call("m1")])},
        )

        summary = await orch.process_webhook(Platform.DIIO, [WebhookCall(call_id="m1", call_kind="meeting")])

        assert summary.tenants_checked == 1
        assert summary.calls_processed == 1
        assert len(await repo.list_reviews("acme")) == 1
        assert await repo.list_reviews("initech") == []
