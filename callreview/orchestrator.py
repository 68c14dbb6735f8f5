"""Orchestrates ingestion and scoring across all tenant integrations."""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Optional

from .aggregator import build_review
from .batcher import build_fair_batch, to_candidate
from .config import Settings
from .errors import CallReviewError, CredentialError, DataError, PersistenceError
from .ledger import ProcessedCallLedger, call_key
from .models import (
    CallListing,
    CallOutcome,
    Completed,
    Failed,
    IntegrationCredential,
    ManualResult,
    Platform,
    RunSummary,
    Skipped,
    WebhookCall,
)
from .normalizer import build_transcript_text
from .platforms import DEFAULT_CALL_KIND, AdapterFactory, CallPlatform, build_adapter
from .repository import CallRepository
from .scoring_client import ScoringClient
from .sqlite_repository import SQLiteCallRepository
from .token_manager import TokenManager

logger = logging.getLogger(__name__)


def extract_webhook_calls(payload: dict[str, Any], platform: Platform) -> list[WebhookCall]:
    """
    Pull call references out of a platform event.

    Accepts ``{"callId": ...}`` or ``{"data": [{"callId": ...}, ...]}``; an
    optional ``callType`` names the call kind.
    """
    items: list[dict[str, Any]] = []
    if payload.get("callId") or payload.get("call_id"):
        items.append(payload)
    elif isinstance(payload.get("data"), list):
        items.extend(d for d in payload["data"] if isinstance(d, dict))

    calls = []
    for item in items:
        call_id = item.get("callId") or item.get("call_id")
        if not call_id:
            continue
        kind = item.get("callType") or item.get("callKind") or DEFAULT_CALL_KIND[platform]
        calls.append(WebhookCall(call_id=str(call_id), call_kind=str(kind)))
    return calls


class ReviewOrchestrator:
    """Drives token handling, listing, batching, scoring and the ledger for every tenant."""

    def __init__(
        self,
        settings: Settings,
        repository: Optional[CallRepository] = None,
        *,
        scoring_client: Optional[ScoringClient] = None,
        token_manager: Optional[TokenManager] = None,
        adapter_factory: Optional[AdapterFactory] = None,
    ):
        """Initialize the orchestrator."""
        self.settings = settings
        if repository is None:
            repository = SQLiteCallRepository(settings.sqlite_db_path)
        self.repository = repository
        self.ledger = ProcessedCallLedger(
            repository, stale_after=timedelta(minutes=settings.stale_processing_minutes)
        )
        self.scoring_client = scoring_client or ScoringClient(settings)
        self.token_manager = token_manager or TokenManager(
            repository, timeout=settings.token_refresh_timeout_seconds
        )
        self.adapter_factory = adapter_factory or (
            lambda credential, on_refresh: build_adapter(credential, settings, on_refresh)
        )

    @asynccontextmanager
    async def open_adapter(self, integration: IntegrationCredential) -> AsyncIterator[CallPlatform]:
        """Ensure a usable token and yield the integration's platform adapter."""
        credential = await self.token_manager.ensure_access_token(integration)
        adapter = self.adapter_factory(credential, self.token_manager.refresh)
        try:
            yield adapter
        finally:
            await adapter.aclose()

    def scoring_key_for(self, integration: IntegrationCredential) -> Optional[str]:
        return integration.scoring_api_key or self.settings.anthropic_api_key

    # Scheduled entry point

    async def run(self) -> RunSummary:
        """
        Process new calls for every configured integration.

        Tenant failures are logged and skipped; a storage failure stops the
        run and is reported in the summary.
        """
        summary = RunSummary()
        try:
            integrations = await self.repository.list_integrations()
        except PersistenceError as e:
            logger.error("Cannot read integrations: %s", e)
            summary.error = e.ledger_reason()
            return summary

        if not integrations:
            logger.info("No integrations configured")
            return summary

        for integration in integrations:
            summary.tenants_checked += 1
            try:
                await self._run_integration(integration, summary)
            except PersistenceError as e:
                logger.error("Storage failure while processing %s, aborting run: %s", integration.label, e)
                summary.error = e.ledger_reason()
                break
            except CallReviewError as e:
                logger.error("Skipping %s: %s", integration.label, e.ledger_reason())
            except Exception:
                logger.exception("Unexpected error for %s, skipping", integration.label)

        logger.info(
            "Run complete: %d tenants checked, %d processed, %d calls processed, %d failed, %d skipped",
            summary.tenants_checked,
            summary.tenants_processed,
            summary.calls_processed,
            summary.calls_failed,
            summary.calls_skipped,
        )
        return summary

    async def _run_integration(self, integration: IntegrationCredential, summary: RunSummary) -> None:
        api_key = self.scoring_key_for(integration)
        if not api_key:
            logger.warning("No scoring API key for %s, skipping", integration.label)
            return

        platform = integration.platform.value

        async with self.open_adapter(integration) as adapter:
            calls = await adapter.list_recent_calls(self.settings.lookback_days)
            done = await self.ledger.compute_done_set(integration.tenant_id)

            candidates = [
                to_candidate(call)
                for call in calls
                if call.transcript_available and call_key(platform, call.kind, call.id) not in done
            ]

            batch = build_fair_batch(candidates, self.settings.per_seller_quota)
            batch = batch[: self.settings.max_calls_per_run]
            if not batch:
                logger.info("No new calls for %s", integration.label)
                return

            summary.tenants_processed += 1
            logger.info(
                "%d new calls for %s, processing %d", len(candidates), integration.label, len(batch)
            )

            for i, candidate in enumerate(batch, 1):
                logger.info(
                    "[%d/%d] %s %s (%s)", i, len(batch), candidate.call_kind, candidate.call_id, candidate.seller
                )
                outcome = await self.process_call(
                    integration, adapter, candidate.call_id, candidate.call_kind, api_key=api_key
                )
                if isinstance(outcome, Completed):
                    summary.calls_processed += 1
                elif isinstance(outcome, Failed):
                    summary.calls_failed += 1
                elif isinstance(outcome, Skipped):
                    summary.calls_skipped += 1

    # Per-call pipeline

    async def process_call(
        self,
        integration: IntegrationCredential,
        adapter: CallPlatform,
        call_id: str,
        call_kind: str,
        *,
        api_key: Optional[str] = None,
    ) -> CallOutcome:
        """
        Claim, fetch, normalize, score and persist one call.

        Per-call errors are recorded in the ledger as failed; only storage
        failures propagate.
        """
        tenant_id = integration.tenant_id
        key = call_key(integration.platform.value, call_kind, call_id)

        if not await self.ledger.claim(tenant_id, key, call_kind):
            return Skipped("already processed")

        outcome: CallOutcome
        try:
            outcome = await self._review_call(integration, adapter, call_id, call_kind, api_key)
        except PersistenceError:
            raise
        except CallReviewError as e:
            logger.error("Failed to process %s: %s", key, e.ledger_reason())
            outcome = Failed(e.ledger_reason())
        except Exception as e:
            logger.exception("Unexpected error processing %s", key)
            outcome = Failed(f"unexpected: {type(e).__name__}: {e}")
        else:
            if isinstance(outcome, Completed):
                logger.info("Processed %s -> review %s (score: %s)", key, outcome.review_id, outcome.overall_score)
            else:
                logger.info("Skipped %s: %s", key, outcome.reason)

        await self.ledger.mark_terminal(tenant_id, key, outcome)
        return outcome

    async def _review_call(
        self,
        integration: IntegrationCredential,
        adapter: CallPlatform,
        call_id: str,
        call_kind: str,
        api_key: Optional[str],
    ) -> CallOutcome:
        metadata = await adapter.get_call_metadata(call_id, call_kind)
        if self.settings.skip_internal_calls and not metadata.customers:
            return Skipped("internal call, no external participants")
        if metadata.transcript_ref is None:
            raise DataError("No transcript available yet")

        raw = await adapter.get_transcript(metadata.transcript_ref)
        transcript = build_transcript_text(metadata, raw, self.settings.transcript_char_budget)

        result, payload = await self.scoring_client.invoke(transcript, api_key)

        review = build_review(
            tenant_id=integration.tenant_id,
            client=integration.client,
            platform=integration.platform.value,
            metadata=metadata,
            result=result,
            raw_payload=payload,
            transcript=transcript,
        )
        review.rep_id = await self.find_or_create_rep(integration.tenant_id, review.rep_name)
        review_id = await self.repository.insert_review(review)
        return Completed(review_id=review_id, overall_score=review.overall_score)

    async def find_or_create_rep(self, tenant_id: str, rep_name: str) -> Optional[int]:
        """Resolve a rep id by name, creating the rep if needed. Never blocks a review."""
        if not rep_name:
            return None
        try:
            rep = await self.repository.find_rep(tenant_id, rep_name)
            if rep is None:
                # A concurrent insert may win the name; look it up again
                rep = await self.repository.insert_rep(tenant_id, rep_name)
                rep = rep or await self.repository.find_rep(tenant_id, rep_name)
            return rep.id if rep else None
        except PersistenceError as e:
            logger.warning("find_or_create_rep(%s) failed: %s", rep_name, e)
            return None

    # Manual entry point

    async def process_manual(
        self,
        tenant_id: str,
        call_id: str,
        call_kind: Optional[str] = None,
        *,
        platform: Platform = Platform.DIIO,
        client: Optional[str] = None,
    ) -> ManualResult:
        """Process one call on demand for a tenant."""
        integration = await self.repository.get_integration(tenant_id, platform, client)
        if integration is None:
            target = f"{tenant_id}/{client}" if client else tenant_id
            return ManualResult(
                ok=False, status="not_configured", error=f"{platform.value} is not configured for {target}"
            )

        call_kind = call_kind or DEFAULT_CALL_KIND[platform]
        try:
            api_key = self.scoring_key_for(integration)
            if not api_key:
                raise CredentialError("No scoring API key configured")
            async with self.open_adapter(integration) as adapter:
                outcome = await self.process_call(integration, adapter, call_id, call_kind, api_key=api_key)
        except CallReviewError as e:
            logger.error("Manual processing of %s failed: %s", call_id, e.ledger_reason())
            return ManualResult(ok=False, status="failed", error=e.ledger_reason())

        if isinstance(outcome, Completed):
            return ManualResult(
                ok=True, status="completed", review_id=outcome.review_id, overall_score=outcome.overall_score
            )
        if isinstance(outcome, Failed):
            return ManualResult(ok=False, status="failed", error=outcome.reason)
        return ManualResult(ok=False, status="skipped", error=outcome.reason)

    # Call listing

    async def list_calls(
        self,
        tenant_id: str,
        *,
        platform: Platform = Platform.DIIO,
        client: Optional[str] = None,
        days: Optional[int] = None,
    ) -> Optional[list[CallListing]]:
        """
        List a tenant's recent platform calls with their processing status.

        Calls with no ledger record are reported as ``new``.

        Returns:
            Listings newest first, or None if the platform is not configured
        """
        integration = await self.repository.get_integration(tenant_id, platform, client)
        if integration is None:
            return None

        async with self.open_adapter(integration) as adapter:
            calls = await adapter.list_recent_calls(days or self.settings.lookback_days)
        records = {r.call_key: r for r in await self.ledger.list_records(tenant_id)}

        listings = []
        for call in calls:
            key = call_key(platform.value, call.kind, call.id)
            record = records.get(key)
            listings.append(
                CallListing(
                    call_key=key,
                    call_id=call.id,
                    call_kind=call.kind,
                    title=call.title,
                    occurred_at=call.occurred_at,
                    seller_name=", ".join(a.display_name for a in call.sellers) or None,
                    customer_name=", ".join(a.display_name for a in call.customers) or None,
                    transcript_available=call.transcript_available,
                    status=record.status.value if record else "new",
                    review_id=record.review_id if record else None,
                    error_message=record.error_message if record else None,
                )
            )
        return listings

    # Webhook entry point

    async def process_webhook(self, platform: Platform, calls: list[WebhookCall]) -> RunSummary:
        """
        Process webhook-referenced calls for every tenant with the platform configured.

        Runs detached from the webhook response; results are visible only in
        the ledger.
        """
        summary = RunSummary()
        try:
            integrations = [i for i in await self.repository.list_integrations(platform) if i.auto_review]
        except PersistenceError as e:
            logger.error("Webhook: cannot read integrations: %s", e)
            summary.error = e.ledger_reason()
            return summary

        for integration in integrations:
            summary.tenants_checked += 1
            api_key = self.scoring_key_for(integration)
            if not api_key:
                logger.warning("Webhook: no scoring API key for %s, skipping", integration.label)
                continue
            try:
                async with self.open_adapter(integration) as adapter:
                    summary.tenants_processed += 1
                    for call in calls:
                        outcome = await self.process_call(
                            integration, adapter, call.call_id, call.call_kind, api_key=api_key
                        )
                        if isinstance(outcome, Completed):
                            summary.calls_processed += 1
                        elif isinstance(outcome, Failed):
                            summary.calls_failed += 1
                        elif isinstance(outcome, Skipped):
                            summary.calls_skipped += 1
            except PersistenceError as e:
                logger.error("Webhook: storage failure, stopping: %s", e)
                summary.error = e.ledger_reason()
                break
            except CallReviewError as e:
                logger.error("Webhook: skipping %s: %s", integration.label, e.ledger_reason())
            except Exception:
                logger.exception("Webhook: unexpected error for %s, skipping", integration.label)

        return summary

    async def close(self) -> None:
        """Close any open connections."""
        await self.repository.close()
