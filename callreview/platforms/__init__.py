"""Call platform adapters.

Both adapters satisfy the ``CallPlatform`` protocol and share no base class.
"""

from typing import Awaitable, Callable, Optional, Protocol

import httpx

from ..config import Settings
from ..models import CallMetadata, CallSummary, IntegrationCredential, Platform, RawTranscript, TranscriptRef
from .diio_client import DiioClient, RefreshCallback, diio_base_url
from .gong_client import DEFAULT_GONG_BASE_URL, GongClient

# Call kind used when an event or request does not name one
DEFAULT_CALL_KIND = {
    Platform.GONG: "call",
    Platform.DIIO: "meeting",
}


class CallPlatform(Protocol):
    """Uniform interface over the call-recording platforms."""

    platform: Platform
    credential: IntegrationCredential

    async def list_recent_calls(self, window_days: int) -> list[CallSummary]:
        ...

    async def get_call_metadata(self, call_id: str, call_kind: str) -> CallMetadata:
        ...

    async def get_transcript(self, transcript_ref: TranscriptRef) -> RawTranscript:
        ...

    async def aclose(self) -> None:
        ...


AdapterFactory = Callable[[IntegrationCredential, Optional[RefreshCallback]], CallPlatform]


def build_adapter(
    credential: IntegrationCredential,
    settings: Settings,
    on_refresh: Optional[Callable[[IntegrationCredential], Awaitable[IntegrationCredential]]] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CallPlatform:
    """Create the adapter matching an integration's platform."""
    common = dict(
        timeout=settings.http_timeout_seconds,
        max_pages=settings.max_list_pages,
        page_size=settings.list_page_size,
        transport=transport,
    )
    if credential.platform == Platform.GONG:
        return GongClient(credential, internal_domain=settings.internal_domain, **common)
    if credential.platform == Platform.DIIO:
        return DiioClient(credential, on_refresh=on_refresh, **common)
    raise ValueError(f"Unsupported platform: {credential.platform}")


__all__ = [
    "AdapterFactory",
    "CallPlatform",
    "DEFAULT_CALL_KIND",
    "DEFAULT_GONG_BASE_URL",
    "DiioClient",
    "GongClient",
    "RefreshCallback",
    "build_adapter",
    "diio_base_url",
]
