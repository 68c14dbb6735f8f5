"""Processed-call ledger: idempotency and status tracking per call attempt."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .models import (
    TERMINAL_STATUSES,
    CallOutcome,
    CallStatus,
    Completed,
    Failed,
    ProcessedCallRecord,
    Skipped,
    utcnow,
)
from .repository import CallRepository

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=10)


def call_key(platform: str, call_kind: str, call_id: str) -> str:
    """Platform-qualified call id used as the ledger key, e.g. ``diio:meeting_42``."""
    return f"{platform}:{call_kind}_{call_id}"


class ProcessedCallLedger:
    """
    Claim-based idempotency guard over the repository's ledger records.

    State machine per call key:
      new -> processing -> completed | failed
      failed -> processing (retry)
      processing (stale) -> processing (reclaimed)
    completed and skipped are terminal.

    Claims are not atomic with compute_done_set(); two overlapping runs can
    both claim the same call.
    """

    def __init__(
        self,
        repository: CallRepository,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ):
        self.repository = repository
        self.stale_after = stale_after

    async def claim(self, tenant_id: str, key: str, call_kind: str = "") -> bool:
        """
        Mark a call as processing.

        Creates the record, or overwrites a failed or stale processing record
        back to processing and clears its error.

        Returns:
            False if the call is completed, skipped or still being processed
        """
        now = utcnow()
        record = ProcessedCallRecord(
            tenant_id=tenant_id,
            call_key=key,
            call_kind=call_kind,
            status=CallStatus.PROCESSING,
            created_at=now,
            updated_at=now,
        )
        if await self.repository.insert_processed_call(record):
            return True

        existing = await self.repository.get_processed_call(tenant_id, key)
        if existing is not None and existing.status in TERMINAL_STATUSES:
            logger.info("Not reclaiming %s/%s: already %s", tenant_id, key, existing.status.value)
            return False
        if (
            existing is not None
            and existing.status == CallStatus.PROCESSING
            and not self.is_stale(existing, now)
        ):
            logger.info("Not reclaiming %s/%s: processing started %s", tenant_id, key, existing.updated_at)
            return False

        await self.repository.update_processed_call(
            tenant_id, key, status=CallStatus.PROCESSING, error_message=None
        )
        return True

    async def compute_done_set(
        self, tenant_id: str, now: Optional[datetime] = None
    ) -> set[str]:
        """
        Keys that must not be picked up again in this run.

        Completed and skipped records are always done; processing records are
        done while younger than the staleness threshold. Failed records and
        stale processing records are retryable.
        """
        now = now or utcnow()
        done = set()
        for record in await self.repository.list_processed_calls(tenant_id):
            if record.status in TERMINAL_STATUSES:
                done.add(record.call_key)
            elif record.status == CallStatus.PROCESSING and not self.is_stale(record, now):
                done.add(record.call_key)
        return done

    def is_stale(self, record: ProcessedCallRecord, now: Optional[datetime] = None) -> bool:
        """True if a processing record has been abandoned long enough to reclaim."""
        now = now or utcnow()
        return now - record.updated_at > self.stale_after

    async def mark_terminal(self, tenant_id: str, key: str, outcome: CallOutcome) -> None:
        """Record the outcome of a processing attempt."""
        if isinstance(outcome, Completed):
            await self.repository.update_processed_call(
                tenant_id,
                key,
                status=CallStatus.COMPLETED,
                review_id=outcome.review_id,
                processed_at=utcnow(),
            )
        elif isinstance(outcome, Failed):
            await self.repository.update_processed_call(
                tenant_id, key, status=CallStatus.FAILED, error_message=outcome.reason
            )
        elif isinstance(outcome, Skipped):
            await self.repository.update_processed_call(
                tenant_id,
                key,
                status=CallStatus.SKIPPED,
                error_message=outcome.reason,
                processed_at=utcnow(),
            )
        else:
            raise TypeError(f"Unknown call outcome: {outcome!r}")

    async def list_records(self, tenant_id: str) -> list[ProcessedCallRecord]:
        """All ledger records for a tenant, newest first."""
        return await self.repository.list_processed_calls(tenant_id)
