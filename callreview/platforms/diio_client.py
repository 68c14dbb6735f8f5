"""Diio API client for meetings, phone calls and transcripts."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..errors import CredentialError, PlatformAPIError, TransientNetworkError
from ..models import (
    Attendee,
    CallMetadata,
    CallSummary,
    IntegrationCredential,
    Platform,
    RawTranscript,
    TranscriptRef,
    TranscriptTurn,
)

logger = logging.getLogger(__name__)

# Called on a 401 with the current credential; returns the refreshed one
RefreshCallback = Callable[[IntegrationCredential], Awaitable[IntegrationCredential]]

# call kind -> (list/detail endpoint, response key of the listing)
CALL_KINDS = {
    "meeting": ("meetings", "meetings"),
    "phone_call": ("phone_calls", "phone_calls"),
}


def diio_base_url(subdomain: str) -> str:
    """External API root for a Diio workspace."""
    return f"https://{subdomain}.diio.com/api/external"


def _call_date(item: dict[str, Any]) -> Optional[datetime]:
    raw = item.get("scheduled_at") or item.get("occurred_at") or item.get("created_at")
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable Diio date %r on call %s", raw, item.get("id"))
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _attendees(items: Optional[list[dict[str, Any]]]) -> list[Attendee]:
    attendees = []
    for item in items or []:
        attendee = Attendee(
            name=item.get("name") or "",
            email=item.get("email") or "",
            company=item.get("company") or "",
            title=item.get("title") or "",
        )
        if attendee.display_name:
            attendees.append(attendee)
    return attendees


class DiioClient:
    """
    Async Diio API client using httpx.
    - Auth: Bearer access token; on a 401 the refresh callback is invoked and
      the request retried exactly once with the returned credential
    - Pagination: page-numbered, bounded by a page cap and the window cutoff
    """

    platform = Platform.DIIO

    def __init__(
        self,
        credential: IntegrationCredential,
        *,
        on_refresh: Optional[RefreshCallback] = None,
        timeout: float = 30.0,
        max_pages: int = 20,
        page_size: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the async Diio client."""
        if not credential.base_url.startswith("http"):
            raise ValueError("Diio base_url must include scheme, e.g. https://...")

        self.credential = credential
        self.base_url = credential.base_url.rstrip("/")
        self.on_refresh = on_refresh
        self.max_pages = max_pages
        self.page_size = page_size

        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "DiioClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def list_recent_calls(self, window_days: int) -> list[CallSummary]:
        """
        List meetings and phone calls within the window, newest first.

        Args:
            window_days: Lookback window in days

        Returns:
            Normalized call summaries of both kinds
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=window_days)
        summaries: list[CallSummary] = []
        for kind in CALL_KINDS:
            summaries.extend(await self._list_kind(kind, cutoff))

        summaries.sort(
            key=lambda s: s.occurred_at or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        return summaries

    async def _list_kind(self, kind: str, cutoff: datetime) -> list[CallSummary]:
        endpoint, key = CALL_KINDS[kind]
        summaries: list[CallSummary] = []
        for page in range(1, self.max_pages + 1):
            data = await self._request(
                "GET", f"/v1/{endpoint}", params={"page": page, "limit": self.page_size}
            )
            batch = data.get(key) or []
            for item in batch:
                summary = self._to_summary(item, kind)
                if summary is None:
                    continue
                if summary.occurred_at is not None and summary.occurred_at < cutoff:
                    continue
                summaries.append(summary)

            # Listings are newest first: a page reaching past the cutoff is the last one
            if not data.get("next") or len(batch) < self.page_size:
                break
            oldest = _call_date(batch[-1])
            if oldest is None or oldest < cutoff:
                break
        else:
            logger.warning("Diio %s listing for %s stopped at the %d page cap", kind, self.credential.label, self.max_pages)
        return summaries

    async def get_call_metadata(self, call_id: str, call_kind: str) -> CallMetadata:
        """Fetch a meeting or phone call with attendees and transcript reference."""
        if call_kind not in CALL_KINDS:
            raise ValueError(f"Unknown Diio call kind: {call_kind}")
        endpoint, _ = CALL_KINDS[call_kind]
        item = await self._request("GET", f"/v1/{endpoint}/{call_id}")

        summary = self._to_summary({"id": call_id, **item}, call_kind)
        transcript_id = item.get("last_transcript_id")
        return CallMetadata(
            **summary.model_dump(),
            transcript_ref=TranscriptRef(id=str(transcript_id)) if transcript_id else None,
        )

    async def get_transcript(self, transcript_ref: TranscriptRef) -> RawTranscript:
        """
        Fetch a transcript.

        Returns:
            Plain text, or a list of speaker turns when Diio returns structured data
        """
        data = await self._request("GET", f"/v1/transcripts/{transcript_ref.id}")
        raw = data.get("transcript")
        if isinstance(raw, list):
            return [
                TranscriptTurn(
                    speaker=str(t.get("speaker") or t.get("name") or ""),
                    text=str(t.get("text") or t.get("content") or ""),
                )
                for t in raw
                if isinstance(t, dict)
            ]
        if raw is None:
            return ""
        return raw if isinstance(raw, str) else str(raw)

    def _to_summary(self, item: dict[str, Any], kind: str) -> Optional[CallSummary]:
        call_id = item.get("id")
        if not call_id:
            return None
        attendees = item.get("attendees") or {}
        return CallSummary(
            id=str(call_id),
            kind=kind,
            title=item.get("name") or "",
            occurred_at=_call_date(item),
            sellers=_attendees(attendees.get("sellers")),
            customers=_attendees(attendees.get("customers")),
            transcript_available=bool(item.get("last_transcript_id")),
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        is_retry: bool = False,
    ) -> dict[str, Any]:
        if not self.credential.access_token:
            raise CredentialError(f"No Diio access token for {self.credential.label}")

        try:
            resp = await self._client.request(
                method,
                self.base_url + path,
                params=params,
                headers={"Authorization": f"Bearer {self.credential.access_token}"},
            )
        except httpx.RequestError as e:
            raise TransientNetworkError(f"Diio request to {path} failed: {e}") from e

        if resp.status_code == 401 and not is_retry and self.on_refresh is not None:
            logger.info("Diio returned 401 for %s, refreshing token", self.credential.label)
            self.credential = await self.on_refresh(self.credential)
            return await self._request(method, path, params=params, is_retry=True)

        if resp.status_code >= 400:
            raise PlatformAPIError("Diio", resp.status_code, resp.text)

        try:
            return resp.json()
        except ValueError as e:
            raise PlatformAPIError("Diio", resp.status_code, f"Invalid JSON response: {e}") from e
