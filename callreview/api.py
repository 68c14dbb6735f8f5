"""
HTTP entry points: scheduled run, call listing, manual processing and webhooks.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .config import Settings, load_settings
from .errors import CallReviewError
from .models import Platform
from .orchestrator import ReviewOrchestrator, extract_webhook_calls

logger = logging.getLogger(__name__)

AUTH_TIMEOUT_SECONDS = 10.0
MANAGER_ROLES = ("admin", "manager")


class ProcessCallRequest(BaseModel):
    """Body of a manual processing request."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    call_id: str
    call_kind: Optional[str] = None
    tenant: Optional[str] = None
    client: Optional[str] = None
    platform: Platform = Platform.DIIO


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


async def fetch_profile(auth_url: str, token: str) -> Optional[Dict[str, Any]]:
    """Resolve a bearer token to a caller profile, or None if it is not accepted."""
    try:
        async with httpx.AsyncClient(timeout=AUTH_TIMEOUT_SECONDS) as client:
            response = await client.get(auth_url, headers={"Authorization": f"Bearer {token}"})
    except httpx.RequestError as e:
        logger.warning("Auth lookup failed: %s", e)
        return None
    if response.status_code != 200:
        return None
    try:
        profile = response.json()
    except ValueError:
        return None
    return profile if isinstance(profile, dict) else None


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[ReviewOrchestrator] = None,
) -> FastAPI:
    """Build the FastAPI application around one orchestrator."""
    settings = settings or load_settings()
    orchestrator = orchestrator or ReviewOrchestrator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await orchestrator.close()

    app = FastAPI(title="callreview", lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.post("/api/cron/run")
    async def cron_run(authorization: Optional[str] = Header(None)):
        """Run one scheduled pass over every tenant integration."""
        if settings.cron_secret and _bearer_token(authorization) != settings.cron_secret:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

        summary = await orchestrator.run()
        return summary.model_dump(by_alias=True)

    async def resolve_tenant(requested: Optional[str], authorization: Optional[str]) -> str:
        """Tenant the caller may act on: the profile's tenant when AUTH_URL is set, else the requested one."""
        tenant_id = requested
        if settings.auth_url:
            token = _bearer_token(authorization)
            profile = await fetch_profile(settings.auth_url, token) if token else None
            if profile is None:
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
            if profile.get("role") not in MANAGER_ROLES:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN, detail="Admin or manager access required"
                )
            profile_tenant = str(profile.get("tenant_id") or profile.get("org_id") or "")
            if tenant_id and tenant_id != profile_tenant:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of this tenant")
            tenant_id = profile_tenant

        if not tenant_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tenant is required")
        return tenant_id

    @app.get("/api/calls")
    async def list_calls(
        tenant: Optional[str] = None,
        platform: Platform = Platform.DIIO,
        client: Optional[str] = None,
        days: Optional[int] = Query(None, ge=1),
        authorization: Optional[str] = Header(None),
    ):
        """List recent platform calls with their processing status."""
        tenant_id = await resolve_tenant(tenant, authorization)
        try:
            calls = await orchestrator.list_calls(tenant_id, platform=platform, client=client, days=days)
        except CallReviewError as e:
            logger.error("Listing %s calls for %s failed: %s", platform.value, tenant_id, e.ledger_reason())
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.ledger_reason())
        if calls is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{platform.value} is not configured for {tenant_id}",
            )
        return {"calls": [call.model_dump(by_alias=True) for call in calls]}

    @app.post("/api/calls/process")
    async def process_call(body: ProcessCallRequest, authorization: Optional[str] = Header(None)):
        """Process one call on demand."""
        tenant_id = await resolve_tenant(body.tenant, authorization)

        result = await orchestrator.process_manual(
            tenant_id, body.call_id, body.call_kind, platform=body.platform, client=body.client
        )
        status_codes = {
            "completed": status.HTTP_200_OK,
            "not_configured": status.HTTP_400_BAD_REQUEST,
            "skipped": status.HTTP_409_CONFLICT,
        }
        return JSONResponse(
            status_code=status_codes.get(result.status, status.HTTP_502_BAD_GATEWAY),
            content=result.model_dump(by_alias=True, exclude_none=True, exclude={"status"}),
        )

    @app.post("/api/webhooks/{platform}")
    async def platform_webhook(platform: Platform, request: Request, background_tasks: BackgroundTasks):
        """Acknowledge a platform event and process its calls in the background."""
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

        calls = extract_webhook_calls(payload, platform)
        if not calls:
            logger.info("%s webhook carried no call ids", platform.value)
            return {"ok": True, "processing": 0}

        background_tasks.add_task(orchestrator.process_webhook, platform, calls)
        logger.info("Received %s webhook for %d call(s), processing in background", platform.value, len(calls))
        return {"ok": True, "processing": len(calls)}

    return app
