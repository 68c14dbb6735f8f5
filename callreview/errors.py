"""Error taxonomy for the ingestion pipeline."""

from typing import Optional


class CallReviewError(RuntimeError):
    """Base class for pipeline errors.

    ``reason_code`` is written in front of the message when a failure is
    recorded in the ledger, so operators can filter failures by kind.
    """

    reason_code = "error"

    def ledger_reason(self) -> str:
        return f"{self.reason_code}: {self}"


class CredentialError(CallReviewError):
    """Missing or invalid platform/scoring credentials. Needs operator action."""

    reason_code = "credential"

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TransientNetworkError(CallReviewError):
    """Timeouts and connection failures. Retried on a later run."""

    reason_code = "network"


class PlatformAPIError(CallReviewError):
    """Non-2xx response from a call platform."""

    reason_code = "platform_api"

    def __init__(self, platform: str, status_code: int, body: str):
        super().__init__(f"{platform} API {status_code}: {body}")
        self.platform = platform
        self.status_code = status_code
        self.body = body

    @property
    def transient(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


class ScoringTimeoutError(CallReviewError):
    """The scoring collaborator did not answer within its budget."""

    reason_code = "scoring_timeout"


class ScoringError(CallReviewError):
    """The scoring collaborator reported an error."""

    reason_code = "scoring"


class DataError(CallReviewError):
    """Missing/empty transcript or malformed collaborator output."""

    reason_code = "data"


class PersistenceError(CallReviewError):
    """Ledger, review or credential storage failure."""

    reason_code = "persistence"
