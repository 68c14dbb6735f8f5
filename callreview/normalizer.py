"""Merge platform metadata and raw transcripts into canonical scoring input."""

from .errors import DataError
from .models import CallMetadata, RawTranscript

TRUNCATION_MARKER = "\n\n[TRANSCRIPT TRUNCATED]"

DEFAULT_CHAR_BUDGET = 60_000


def render_transcript_body(raw: RawTranscript) -> str:
    """Flatten a raw transcript to text; structured turns render as ``speaker: text``."""
    if isinstance(raw, str):
        return raw.strip()

    lines = []
    for turn in raw:
        text = turn.text.strip()
        if not text:
            continue
        speaker = turn.speaker.strip()
        lines.append(f"{speaker}: {text}" if speaker else text)
    return "\n".join(lines)


def build_header(metadata: CallMetadata) -> list[str]:
    """Header lines giving the scorer context about the call."""
    sellers = [s.display_name for s in metadata.sellers if s.display_name]
    customers = [c.display_name for c in metadata.customers if c.display_name]

    lines = [f"Call: {metadata.title or 'Untitled'}"]
    if metadata.occurred_at:
        lines.append(f"Date: {metadata.occurred_at.date().isoformat()}")
    if sellers:
        lines.append(f"Sellers (internal): {', '.join(sellers)}")
    if customers:
        lines.append(f"Customers (prospect): {', '.join(customers)}")
    return lines


def build_transcript_text(
    metadata: CallMetadata,
    raw: RawTranscript,
    char_budget: int = DEFAULT_CHAR_BUDGET,
) -> str:
    """
    Produce the canonical transcript text for scoring.

    Args:
        metadata: Platform call metadata
        raw: Plain-text transcript or list of speaker turns
        char_budget: Maximum characters before the truncation marker

    Returns:
        Header, separator and body, truncated to the budget if needed

    Raises:
        DataError: The transcript has no content
    """
    body = render_transcript_body(raw)
    if not body:
        raise DataError("Transcript is empty; the call may not have been transcribed yet")

    text = "\n".join(build_header(metadata) + ["", "---", "", body])
    return truncate(text, char_budget)


def truncate(text: str, char_budget: int) -> str:
    """Cut text to exactly ``char_budget`` characters and append the marker."""
    if len(text) <= char_budget:
        return text
    return text[:char_budget] + TRUNCATION_MARKER


def is_truncated(text: str) -> bool:
    return text.endswith(TRUNCATION_MARKER)
