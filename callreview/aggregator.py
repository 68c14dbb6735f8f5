"""Turn scoring output and platform metadata into a persisted review record."""

from datetime import date
from typing import Any, Optional

from .models import CATEGORY_IDS, CallMetadata, CallReviewRecord, ScoringResult

MAX_CATEGORY_SCORE = 10


def compute_overall_score(category_scores: dict[str, float]) -> int:
    """Overall score 0-100 from the nine 0-10 category scores."""
    total = sum(category_scores.get(c, 0) for c in CATEGORY_IDS)
    return round(total / (len(CATEGORY_IDS) * MAX_CATEGORY_SCORE) * 100)


def _first(values: list[str]) -> str:
    return next((v for v in values if v), "")


def build_review(
    *,
    tenant_id: str,
    client: Optional[str],
    platform: str,
    metadata: CallMetadata,
    result: ScoringResult,
    raw_payload: dict[str, Any],
    transcript: str,
    rep_id: Optional[int] = None,
) -> CallReviewRecord:
    """
    Assemble the review for one scored call.

    Platform attendee data is authoritative; values inferred by the scoring
    collaborator are used only where the platform has none.
    """
    ai = result.metadata
    sellers = [s.display_name for s in metadata.sellers]
    customers = [c.display_name for c in metadata.customers]
    companies = [c.company for c in metadata.customers if c.company]
    titles = [c.title for c in metadata.customers if c.title]

    rep_name = _first(sellers) or ai.rep_name
    prospect_name = _first(customers) or ai.prospect_name
    prospect_company = _first(companies) or ai.prospect_company
    category_scores = result.category_scores()

    auxiliary: dict[str, Any] = {
        "platform": platform,
        "platform_call_id": metadata.id,
        "call_kind": metadata.kind,
    }
    if sellers:
        auxiliary["sellers"] = sellers
    if customers:
        auxiliary["customers"] = customers
    if companies:
        auxiliary["customer_companies"] = companies
    if titles:
        auxiliary["customer_titles"] = titles

    return CallReviewRecord(
        tenant_id=tenant_id,
        client=client or prospect_company or "Other",
        rep_id=rep_id,
        rep_name=rep_name,
        prospect_company=prospect_company,
        prospect_name=prospect_name,
        call_title=metadata.title,
        call_date=metadata.occurred_at.date() if metadata.occurred_at else date.today(),
        call_type=ai.call_type or "Discovery",
        deal_stage=ai.deal_stage or "Early",
        category_scores=category_scores,
        overall_score=compute_overall_score(category_scores),
        transcript=transcript,
        ai_analysis=raw_payload,
        coaching_notes=result.gut_check,
        auxiliary=auxiliary,
    )
