"""Credential/token manager for refreshable platform credentials."""

import logging
from typing import Optional

import httpx

from .errors import CredentialError, PersistenceError, TransientNetworkError
from .models import IntegrationCredential, Platform
from .repository import CallRepository

logger = logging.getLogger(__name__)


class TokenManager:
    """
    Holds and refreshes per-tenant platform credentials.

    Credentials are immutable values: every refresh returns a new
    IntegrationCredential which callers thread forward.
    """

    def __init__(
        self,
        repository: CallRepository,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.repository = repository
        self.timeout = timeout
        self.transport = transport

    async def ensure_access_token(
        self, credential: IntegrationCredential
    ) -> IntegrationCredential:
        """Return the credential with a usable access token, refreshing if none is cached."""
        if credential.platform != Platform.DIIO or credential.access_token:
            return credential
        logger.info("No cached access token for %s, refreshing", credential.label)
        return await self.refresh(credential)

    async def refresh(self, credential: IntegrationCredential) -> IntegrationCredential:
        """
        Exchange the long-lived credentials for a new access token.

        Args:
            credential: Credential carrying client_id/client_secret/refresh_token

        Returns:
            New credential carrying the fresh token pair

        Raises:
            CredentialError: Refresh rejected or credentials incomplete
            TransientNetworkError: Refresh endpoint unreachable or timed out
        """
        if not (credential.client_id and credential.client_secret and credential.refresh_token):
            raise CredentialError(f"Incomplete refresh credentials for {credential.label}")

        url = credential.base_url.rstrip("/") + "/refresh_token"
        payload = {
            "client_id": credential.client_id,
            "client_secret": credential.client_secret,
            "refresh_token": credential.refresh_token,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(url, json=payload)
        except httpx.RequestError as e:
            raise TransientNetworkError(f"Token refresh failed for {credential.label}: {e}") from e

        if resp.status_code >= 400:
            raise CredentialError(
                f"Token refresh failed ({resp.status_code}): {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise CredentialError(f"Invalid token refresh response: {e}") from e

        access_token = data.get("access_token")
        if not access_token:
            raise CredentialError(f"Token refresh for {credential.label} returned no access_token")
        refresh_token = data.get("refresh_token") or credential.refresh_token

        refreshed = credential.model_copy(
            update={"access_token": access_token, "refresh_token": refresh_token}
        )

        if credential.id is not None:
            try:
                updated_at = await self.repository.save_tokens(
                    credential.id, access_token, refresh_token
                )
                refreshed = refreshed.model_copy(update={"updated_at": updated_at})
            except PersistenceError as e:
                # The new token is still valid for this run
                logger.warning("Could not persist refreshed tokens for %s: %s", credential.label, e)

        logger.info("Refreshed access token for %s", credential.label)
        return refreshed
