"""Gong API client for listing calls and fetching transcripts."""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urljoin

import httpx

from ..errors import DataError, PlatformAPIError, TransientNetworkError
from ..models import (
    Attendee,
    CallMetadata,
    CallSummary,
    IntegrationCredential,
    Platform,
    TranscriptRef,
    TranscriptTurn,
)

logger = logging.getLogger(__name__)

DEFAULT_GONG_BASE_URL = "https://us-11211.api.gong.io"


def _parse_started(meta: dict[str, Any]) -> Optional[datetime]:
    started = meta.get("started") or meta.get("scheduled")
    if not started:
        return None
    try:
        parsed = datetime.fromisoformat(str(started).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable Gong start time %r on call %s", started, meta.get("id"))
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GongClient:
    """
    Async Gong API client using httpx.
    - Auth: Basic (Access Key / Secret), never refreshed
    - Pagination: cursor, bounded by a page cap
    - Errors: non-2xx -> PlatformAPIError, transport failures -> TransientNetworkError
    """

    platform = Platform.GONG

    def __init__(
        self,
        credential: IntegrationCredential,
        *,
        internal_domain: Optional[str] = None,
        timeout: float = 30.0,
        max_pages: int = 20,
        page_size: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the async Gong client."""
        api_endpoint = credential.base_url or DEFAULT_GONG_BASE_URL
        if not api_endpoint.startswith("http"):
            raise ValueError("Gong base_url must include scheme, e.g. https://...")

        self.credential = credential
        self.base_url = api_endpoint.rstrip("/") + "/"
        self.internal_domain = (internal_domain or "").lower()
        self.max_pages = max_pages
        self.page_size = page_size

        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            auth=(credential.access_key or "", credential.access_key_secret or ""),
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "GongClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def list_recent_calls(self, window_days: int) -> list[CallSummary]:
        """
        List calls started within the window, newest first.

        Args:
            window_days: Lookback window in days

        Returns:
            Normalized call summaries
        """
        to_dt = datetime.now(timezone.utc)
        cutoff = to_dt - timedelta(days=window_days)
        payload: dict[str, Any] = {
            "filter": {
                "fromDateTime": cutoff.isoformat().replace("+00:00", "Z"),
                "toDateTime": to_dt.isoformat().replace("+00:00", "Z"),
            },
            "contentSelector": {"exposedFields": {"parties": True}},
        }

        summaries: list[CallSummary] = []
        cursor: Optional[str] = None
        for _ in range(self.max_pages):
            if cursor:
                payload["cursor"] = cursor
            data = await self._api_call("/v2/calls/extensive", "POST", payload=payload)
            batch = [self._to_summary(call) for call in data.get("calls", [])]
            batch = [s for s in batch if s is not None]
            summaries.extend(s for s in batch if s.occurred_at is None or s.occurred_at >= cutoff)

            records = data.get("records") or {}
            cursor = records.get("cursor") if isinstance(records, dict) else None
            if not cursor or len(batch) < self.page_size:
                break
            dated = [s.occurred_at for s in batch if s.occurred_at]
            if dated and min(dated) < cutoff:
                break
        else:
            logger.warning("Gong listing for %s stopped at the %d page cap", self.credential.label, self.max_pages)

        summaries.sort(
            key=lambda s: s.occurred_at or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        return summaries

    async def get_call_metadata(self, call_id: str, call_kind: str = "call") -> CallMetadata:
        """
        Fetch extended call data (parties, title, timestamps) for one call.

        Raises:
            DataError: Gong returned no call for the id
        """
        data = await self._api_call(
            "/v2/calls/extensive",
            "POST",
            payload={
                "filter": {"callIds": [call_id]},
                "contentSelector": {"exposedFields": {"parties": True}},
            },
        )
        calls = data.get("calls") or []
        if not calls:
            raise DataError(f"Gong call {call_id} not found")

        call = calls[0]
        summary = self._to_summary(call)
        if summary is None:
            raise DataError(f"Gong call {call_id} has no metadata")

        return CallMetadata(
            **summary.model_dump(),
            transcript_ref=TranscriptRef(
                id=summary.id,
                speaker_names=self.build_speaker_map(call.get("parties", [])),
            ),
        )

    async def get_transcript(self, transcript_ref: TranscriptRef) -> list[TranscriptTurn]:
        """
        Fetch a call transcript as speaker turns.

        Args:
            transcript_ref: Call id plus the speakerId -> name map

        Returns:
            One turn per transcript segment (empty if Gong has no transcript)
        """
        data = await self._api_call(
            "/v2/calls/transcript",
            "POST",
            payload={"filter": {"callIds": [transcript_ref.id]}},
        )
        transcripts = data.get("callTranscripts") or data.get("transcripts") or []
        if not transcripts:
            return []

        turns = []
        for segment in transcripts[0].get("transcript") or []:
            if not isinstance(segment, dict):
                continue
            speaker_id = str(segment.get("speakerId", ""))
            speaker = transcript_ref.speaker_names.get(speaker_id) or f"Speaker {speaker_id}"
            text = " ".join(
                s.get("text", "") for s in segment.get("sentences", []) if isinstance(s, dict)
            ).strip()
            turns.append(TranscriptTurn(speaker=speaker, text=text))
        return turns

    @staticmethod
    def build_speaker_map(parties: list[dict[str, Any]]) -> dict[str, str]:
        """Map Gong speakerIds to display names."""
        speakers = {}
        for party in parties:
            speaker_id = party.get("speakerId")
            if speaker_id is None:
                continue
            speakers[str(speaker_id)] = (
                party.get("name") or party.get("emailAddress") or f"Speaker {speaker_id}"
            )
        return speakers

    def _to_summary(self, call: dict[str, Any]) -> Optional[CallSummary]:
        meta = call.get("metaData") or {}
        call_id = meta.get("id")
        if not call_id:
            return None

        sellers, customers = [], []
        for party in call.get("parties", []):
            attendee = Attendee(
                name=party.get("name") or "",
                email=party.get("emailAddress") or "",
                company=party.get("company") or "",
                title=party.get("title") or "",
            )
            if not attendee.display_name:
                continue
            if self._is_external_party(party):
                customers.append(attendee)
            else:
                sellers.append(attendee)

        return CallSummary(
            id=str(call_id),
            kind="call",
            title=meta.get("title") or "",
            occurred_at=_parse_started(meta),
            sellers=sellers,
            customers=customers,
            transcript_available=True,
        )

    def _is_external_party(self, party: dict[str, Any]) -> bool:
        """
        Determine if a party is external.

        External if:
          - affiliation == 'External', OR
          - affiliation == 'Unknown' AND email domain != internal_domain
        """
        aff = (party.get("affiliation") or "").strip()
        email = (party.get("emailAddress") or "").strip().lower()

        if aff == "External":
            return True

        if aff == "Unknown" and self.internal_domain and email and "@" in email:
            return email.split("@")[-1] != self.internal_domain

        return False

    async def _api_call(
        self,
        api_path: str,
        method: str,
        *,
        payload: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Make a single API request.

        Args:
            api_path: API endpoint path
            method: HTTP method (GET or POST)
            payload: Request body for POST
            query: Query parameters for GET

        Returns:
            Decoded JSON response
        """
        if not api_path.startswith("/"):
            api_path = "/" + api_path
        url = urljoin(self.base_url, api_path.lstrip("/"))

        try:
            resp = await self._client.request(
                method=method,
                url=url,
                params=query,
                content=None if payload is None else json.dumps(payload),
            )
        except httpx.RequestError as e:
            raise TransientNetworkError(f"Gong request to {api_path} failed: {e}") from e

        if resp.status_code >= 400:
            raise PlatformAPIError("Gong", resp.status_code, resp.text)

        try:
            return resp.json()
        except ValueError as e:
            raise PlatformAPIError("Gong", resp.status_code, f"Invalid JSON response: {e}") from e
