"""Repository interface for integrations, the processed-call ledger, reps and reviews."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from .models import (
    CallReviewRecord,
    CallStatus,
    IntegrationCredential,
    Platform,
    ProcessedCallRecord,
    Rep,
)


class CallRepository(ABC):
    """Abstract interface for pipeline storage.

    Implementations raise ``PersistenceError`` when the underlying store
    cannot be read or written.
    """

    # Integrations

    @abstractmethod
    async def list_integrations(
        self, platform: Optional[Platform] = None
    ) -> list[IntegrationCredential]:
        """
        List configured integrations, optionally for one platform.

        Args:
            platform: Restrict to this platform

        Returns:
            Integrations ordered by id
        """
        pass

    @abstractmethod
    async def get_integration(
        self, tenant_id: str, platform: Platform, client: Optional[str] = None
    ) -> Optional[IntegrationCredential]:
        """Get the integration for a tenant (and client, when given)."""
        pass

    @abstractmethod
    async def upsert_integration(
        self, credential: IntegrationCredential
    ) -> IntegrationCredential:
        """
        Insert or update an integration keyed by (tenant, client, platform).

        Returns:
            The stored credential, with its id set
        """
        pass

    @abstractmethod
    async def save_tokens(
        self, integration_id: int, access_token: str, refresh_token: Optional[str]
    ) -> datetime:
        """
        Persist a refreshed token pair.

        Returns:
            The new updated_at timestamp
        """
        pass

    @abstractmethod
    async def delete_integration(self, integration_id: int) -> None:
        """Remove an integration (disconnect)."""
        pass

    # Processed-call ledger

    @abstractmethod
    async def insert_processed_call(self, record: ProcessedCallRecord) -> bool:
        """
        Insert a ledger record.

        Returns:
            False if a record with the same (tenant, call_key) already exists
        """
        pass

    @abstractmethod
    async def update_processed_call(
        self,
        tenant_id: str,
        call_key: str,
        *,
        status: CallStatus,
        review_id: Optional[int] = None,
        error_message: Optional[str] = None,
        processed_at: Optional[datetime] = None,
    ) -> None:
        """Overwrite the status fields of an existing ledger record."""
        pass

    @abstractmethod
    async def get_processed_call(
        self, tenant_id: str, call_key: str
    ) -> Optional[ProcessedCallRecord]:
        """Get a single ledger record."""
        pass

    @abstractmethod
    async def list_processed_calls(self, tenant_id: str) -> list[ProcessedCallRecord]:
        """List all ledger records for a tenant, newest first."""
        pass

    # Reps

    @abstractmethod
    async def find_rep(self, tenant_id: str, full_name: str) -> Optional[Rep]:
        """Find a rep by display name within a tenant."""
        pass

    @abstractmethod
    async def insert_rep(self, tenant_id: str, full_name: str) -> Optional[Rep]:
        """
        Insert a rep.

        Returns:
            The new rep, or None if one with the same name already exists
        """
        pass

    # Reviews

    @abstractmethod
    async def insert_review(self, review: CallReviewRecord) -> int:
        """
        Append a call review.

        Returns:
            The new review id
        """
        pass

    @abstractmethod
    async def get_review(self, review_id: int) -> Optional[CallReviewRecord]:
        """Get a review by id."""
        pass

    @abstractmethod
    async def list_reviews(self, tenant_id: str) -> list[CallReviewRecord]:
        """List reviews for a tenant, oldest first."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close any open connections."""
        pass
