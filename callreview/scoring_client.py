"""Scoring collaborator client: transcript text in, structured review out."""

import asyncio
import json
import logging
import re
from typing import Any, Optional

import anthropic
from anthropic import AsyncAnthropic
from pydantic import ValidationError

from .config import Settings
from .errors import CredentialError, DataError, ScoringError, ScoringTimeoutError
from .models import ScoringResult

logger = logging.getLogger(__name__)

CATEGORIES = [
    ("opening", "Opening & Agenda Setting", ["Confirmed time available", "Stated clear agenda/purpose", "Asked prospect to add items", "Set expectations for outcome"]),
    ("discovery", "Discovery Depth", ["Identified core business pain", "Quantified impact of the problem", "Explored timeline/urgency", "Uncovered previous attempts to solve", "Asked 'why now?' or trigger event"]),
    ("qualification", "Qualification (MEDDPICC)", ["Metrics", "Economic Buyer", "Decision Criteria", "Decision Process", "Paper Process", "Implicated Pain", "Champion", "Competition"]),
    ("storytelling", "Storytelling & Social Proof", ["Used relevant customer story", "Matched story to prospect's situation", "Included specific metrics/outcomes", "Created 'that could be us' moment"]),
    ("objection", "Objection Handling", ["Acknowledged the concern genuinely", "Asked clarifying questions before responding", "Reframed rather than argued", "Used evidence/proof to address", "Confirmed resolution before moving on"]),
    ("demo", "Demo / Value Presentation", ["Tied features to stated pain points", "Avoided feature dumping", "Asked engagement questions during demo", "Created 'aha' moments"]),
    ("multithreading", "Multi-threading & Stakeholders", ["Asked about other stakeholders", "Understood org structure", "Planned to engage additional contacts", "Discussed how to get champion buy-in"]),
    ("nextsteps", "Next Steps & Commitment", ["Proposed specific next step", "Got calendar commitment (date/time)", "Assigned clear action items", "Summarized what was agreed", "Created urgency or deadline"]),
    ("control", "Call Control & Presence", ["Managed talk/listen ratio well", "Redirected tangents effectively", "Showed confidence and authority", "Used silence effectively", "Matched prospect's energy/pace"]),
]


def build_prompt(transcript: str) -> str:
    """Build the review prompt for a canonical transcript."""
    framework = "\n".join(
        f"{i}. {cat_id.upper()} - {name}: {' | '.join(criteria)}"
        for i, (cat_id, name, criteria) in enumerate(CATEGORIES, 1)
    )
    example_scores = ",".join(
        f'"{cat_id}":{{"score":0,"details":"..."}}' for cat_id, _, _ in CATEGORIES
    )
    return f"""You are an expert sales call reviewer. Score the following sales call transcript.

SCORING FRAMEWORK (9 categories, each scored 0-10):
{framework}

Score 0 when a category is absent, 10 only when every criterion is clearly met with evidence.

ALSO EXTRACT from the transcript:
- rep_name: The sales rep / account executive name
- prospect_company: The prospect's company name
- prospect_name: The main prospect/buyer on the call
- call_type: One of Discovery, Demo, Follow-up, Negotiation, Closing
- deal_stage: One of Early, Mid-Pipe, Late Stage, Negotiation

If the transcript ends with [TRANSCRIPT TRUNCATED], score only what is present.

RESPOND ONLY WITH VALID JSON (exactly 3 strengths, 2-4 areas of opportunity):
{{"metadata":{{"rep_name":"...","prospect_company":"...","prospect_name":"...","call_type":"...","deal_stage":"..."}},"scores":{{{example_scores}}},"gut_check":"...","strengths":["...","...","..."],"areas_of_opportunity":["...","..."]}}

---

TRANSCRIPT:
{transcript}"""


def parse_scoring_response(content: str) -> tuple[ScoringResult, dict[str, Any]]:
    """
    Parse and validate the collaborator's JSON.

    Returns:
        Tuple of (validated result, raw payload)

    Raises:
        DataError: Non-JSON or schema-violating output
    """
    # Try to extract JSON from markdown code blocks if present
    if "```json" in content:
        json_start = content.find("```json") + 7
        json_end = content.find("```", json_start)
        content = content[json_start:json_end].strip()
    elif "```" in content:
        json_start = content.find("```") + 3
        json_end = content.find("```", json_start)
        content = content[json_start:json_end].strip()

    # Remove trailing commas before closing braces/brackets
    content = re.sub(r",(\s*[}\]])", r"\1", content.strip())

    try:
        payload = json.loads(content)
    except json.JSONDecodeError as e:
        raise DataError(f"Scoring response is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise DataError("Scoring response is not a JSON object")

    try:
        return ScoringResult.model_validate(payload), payload
    except ValidationError as e:
        raise DataError(f"Scoring response violates schema: {e.error_count()} error(s): {e}") from e


class ScoringClient:
    """Timeout-bounded client for the scoring collaborator (Anthropic Messages API)."""

    def __init__(self, settings: Settings):
        """Initialize the scoring client."""
        self.model = settings.scoring_model
        self.max_tokens = settings.scoring_max_tokens
        self.timeout = settings.scoring_timeout_seconds
        self.default_api_key = settings.anthropic_api_key
        self._clients: dict[str, AsyncAnthropic] = {}

    def _client_for(self, api_key: Optional[str]) -> AsyncAnthropic:
        key = api_key or self.default_api_key
        if not key:
            raise CredentialError("No scoring API key configured")
        if key not in self._clients:
            # No SDK retries: a failed call is retried on a later run
            self._clients[key] = AsyncAnthropic(api_key=key, max_retries=0, timeout=self.timeout + 5)
        return self._clients[key]

    async def invoke(
        self, transcript: str, api_key: Optional[str] = None
    ) -> tuple[ScoringResult, dict[str, Any]]:
        """
        Score a transcript, racing the collaborator against the scoring timer.

        Args:
            transcript: Canonical transcript text
            api_key: Per-tenant key overriding the default

        Returns:
            Tuple of (validated result, raw payload)

        Raises:
            ScoringTimeoutError: No answer within the budget
            ScoringError: Collaborator reported an error
            DataError: Malformed collaborator output
        """
        client = self._client_for(api_key)
        try:
            content = await asyncio.wait_for(self._request(client, transcript), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ScoringTimeoutError(f"Scoring did not complete within {self.timeout:g}s") from e
        return parse_scoring_response(content)

    async def _request(self, client: AsyncAnthropic, transcript: str) -> str:
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0,
                messages=[{"role": "user", "content": build_prompt(transcript)}],
            )
        except anthropic.APITimeoutError as e:
            raise ScoringTimeoutError(f"Scoring request timed out: {e}") from e
        except anthropic.AuthenticationError as e:
            raise CredentialError(f"Scoring API key rejected: {e}") from e
        except anthropic.APIError as e:
            raise ScoringError(f"Scoring collaborator error: {e}") from e

        return "".join(getattr(block, "text", "") for block in response.content)
