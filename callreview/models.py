"""Data models for the application."""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# The nine categories the scoring collaborator grades on a 0-10 scale
CATEGORY_IDS = (
    "opening",
    "discovery",
    "qualification",
    "storytelling",
    "objection",
    "demo",
    "multithreading",
    "nextsteps",
    "control",
)


def utcnow() -> datetime:
    """Timezone-aware current time; all stored timestamps are UTC."""
    return datetime.now(timezone.utc)


class Platform(str, Enum):
    """Supported call-recording platforms."""

    GONG = "gong"
    DIIO = "diio"


class CallStatus(str, Enum):
    """Ledger status for a call-processing attempt."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({CallStatus.COMPLETED, CallStatus.SKIPPED})


class IntegrationCredential(BaseModel):
    """Per-tenant platform credentials. A token refresh produces a new value."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    tenant_id: str
    client: str = "Other"
    platform: Platform
    base_url: str

    # Gong key pair
    access_key: Optional[str] = None
    access_key_secret: Optional[str] = None

    # Diio refreshable token pair
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    scoring_api_key: Optional[str] = None
    auto_review: bool = True
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def label(self) -> str:
        return f"{self.platform.value}/{self.tenant_id}/{self.client}"


class Attendee(BaseModel):
    """A seller or customer on a call."""

    name: str = ""
    email: str = ""
    company: str = ""
    title: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.email


class CallSummary(BaseModel):
    """A call as returned by a platform listing."""

    id: str
    kind: str
    title: str = ""
    occurred_at: Optional[datetime] = None
    sellers: list[Attendee] = Field(default_factory=list)
    customers: list[Attendee] = Field(default_factory=list)
    transcript_available: bool = True


class TranscriptRef(BaseModel):
    """Where to fetch a transcript from, plus speaker labels if the platform needs them."""

    id: str
    speaker_names: dict[str, str] = Field(default_factory=dict)


class CallMetadata(CallSummary):
    """Full call metadata, including the transcript reference."""

    transcript_ref: Optional[TranscriptRef] = None


class TranscriptTurn(BaseModel):
    """One speaker turn of a structured transcript."""

    speaker: str = ""
    text: str = ""


RawTranscript = Union[str, list[TranscriptTurn]]


class CallCandidate(BaseModel):
    """A call eligible for processing in the current run."""

    call_id: str
    call_kind: str
    seller: str
    summary: CallSummary


class ProcessedCallRecord(BaseModel):
    """Ledger entry for a call-processing attempt."""

    tenant_id: str
    call_key: str
    call_kind: str = ""
    status: CallStatus
    review_id: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None


class ScoringMetadata(BaseModel):
    """Call metadata inferred by the scoring collaborator."""

    rep_name: str = ""
    prospect_company: str = ""
    prospect_name: str = ""
    call_type: str = ""
    deal_stage: str = ""


class CategoryScore(BaseModel):
    """Score for a single category (0-10 scale)."""

    score: float = Field(ge=0, le=10)
    details: str = ""


class ScoringResult(BaseModel):
    """Structured output of the scoring collaborator."""

    metadata: ScoringMetadata = Field(default_factory=ScoringMetadata)
    scores: dict[str, CategoryScore]
    gut_check: str = ""
    strengths: list[str] = Field(min_length=3, max_length=3)
    areas_of_opportunity: list[str] = Field(min_length=2, max_length=4)

    @field_validator("scores")
    @classmethod
    def _all_categories_present(cls, value: dict[str, CategoryScore]) -> dict[str, CategoryScore]:
        missing = [c for c in CATEGORY_IDS if c not in value]
        if missing:
            raise ValueError(f"missing category scores: {missing}")
        return value

    def category_scores(self) -> dict[str, float]:
        return {c: self.scores[c].score for c in CATEGORY_IDS}


class Rep(BaseModel):
    """Tenant-scoped sales rep."""

    id: int
    tenant_id: str
    full_name: str


class CallReviewRecord(BaseModel):
    """Persisted review of a single call."""

    id: Optional[int] = None
    tenant_id: str
    client: str
    rep_id: Optional[int] = None
    rep_name: str = ""
    prospect_company: str = ""
    prospect_name: str = ""
    call_title: str = ""
    call_date: date
    call_type: str = "Discovery"
    deal_stage: str = "Early"
    category_scores: dict[str, float]
    overall_score: int = Field(ge=0, le=100)
    transcript: str
    ai_analysis: dict[str, Any]
    coaching_notes: str = ""
    auxiliary: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# Tagged outcome of processing one call


@dataclass(frozen=True)
class Completed:
    review_id: int
    overall_score: int


@dataclass(frozen=True)
class Failed:
    reason: str


@dataclass(frozen=True)
class Skipped:
    reason: str


CallOutcome = Union[Completed, Failed, Skipped]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RunSummary(_CamelModel):
    """Counters for one scheduled run."""

    tenants_checked: int = 0
    tenants_processed: int = 0
    calls_processed: int = 0
    calls_failed: int = 0
    calls_skipped: int = 0
    error: Optional[str] = None


class ManualResult(_CamelModel):
    """Result of processing a single call on demand."""

    ok: bool
    status: str = "completed"
    review_id: Optional[int] = None
    overall_score: Optional[int] = None
    error: Optional[str] = None


class CallListing(_CamelModel):
    """A listed platform call joined with its ledger state; ``status`` is ``new`` when never attempted."""

    call_key: str
    call_id: str
    call_kind: str
    title: str = ""
    occurred_at: Optional[datetime] = None
    seller_name: Optional[str] = None
    customer_name: Optional[str] = None
    transcript_available: bool = True
    status: str = "new"
    review_id: Optional[int] = None
    error_message: Optional[str] = None


class WebhookCall(BaseModel):
    """A call referenced by a platform webhook event."""

    call_id: str
    call_kind: str
