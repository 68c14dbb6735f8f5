"""Fairness-aware selection of the calls to process in one run."""

from .models import CallCandidate, CallSummary


def seller_identity(summary: CallSummary) -> str:
    """Group key for a call: first seller's email, else name, else ``unknown``."""
    for seller in summary.sellers:
        if seller.email:
            return seller.email.strip().lower()
        if seller.name:
            return seller.name.strip()
    return "unknown"


def to_candidate(summary: CallSummary) -> CallCandidate:
    return CallCandidate(
        call_id=summary.id,
        call_kind=summary.kind,
        seller=seller_identity(summary),
        summary=summary,
    )


def build_fair_batch(
    candidates: list[CallCandidate], per_seller_quota: int = 1
) -> list[CallCandidate]:
    """
    Keep at most ``per_seller_quota`` calls per seller.

    Candidates are expected newest first. Within a seller the newest calls
    are kept. The result is flattened round-robin (every seller's first call,
    then every seller's second, ...) so a later total cap cuts evenly.
    """
    by_seller: dict[str, list[CallCandidate]] = {}
    for candidate in candidates:
        kept = by_seller.setdefault(candidate.seller, [])
        if len(kept) < per_seller_quota:
            kept.append(candidate)

    batch = []
    for rank in range(per_seller_quota):
        batch.extend(kept[rank] for kept in by_seller.values() if rank < len(kept))
    return batch
