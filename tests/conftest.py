"""Shared fixtures: settings, a SQLite repository and scoring payloads."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from callreview.config import Settings
from callreview.models import (
    CATEGORY_IDS,
    Attendee,
    CallMetadata,
    IntegrationCredential,
    Platform,
    ScoringResult,
    TranscriptRef,
)
from callreview.sqlite_repository import SQLiteCallRepository

DEFAULT_SCORES = [7, 8, 6, 7, 5, 6, 4, 8, 7]


def scoring_payload(scores=None, **metadata):
    """A well-formed scoring collaborator payload."""
    scores = scores or DEFAULT_SCORES
    meta = {
        "rep_name": "J. Doe",
        "prospect_company": "Globex",
        "prospect_name": "Hank Scorpio",
        "call_type": "Discovery",
        "deal_stage": "Early",
    }
    meta.update(metadata)
    return {
        "metadata": meta,
        "scores": {
            cat: {"score": score, "details": f"{cat} notes"}
            for cat, score in zip(CATEGORY_IDS, scores)
        },
        "gut_check": "Solid discovery, weak next steps.",
        "strengths": ["Rapport", "Pain discovery", "Agenda"],
        "areas_of_opportunity": ["Multi-threading", "Next steps"],
    }


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        anthropic_api_key="sk-test",
        sqlite_db_path=str(tmp_path / "callreview.db"),
    )


@pytest.fixture
def repo(tmp_path):
    repository = SQLiteCallRepository(str(tmp_path / "callreview.db"))
    yield repository
    repository.conn.close()


@pytest.fixture
def make_payload():
    return scoring_payload


@pytest.fixture
def payload():
    return scoring_payload()


@pytest.fixture
def payload_json(payload):
    return json.dumps(payload)


@pytest.fixture
def scoring_result(payload):
    return ScoringResult.model_validate(payload)


@pytest.fixture
def diio_credential():
    return IntegrationCredential(
        id=1,
        tenant_id="acme",
        client="Globex",
        platform=Platform.DIIO,
        base_url="https://acme.diio.com/api/external",
        client_id="cid",
        client_secret="csecret",
        access_token="old-token",
        refresh_token="rt-1",
    )


@pytest.fixture
def gong_credential():
    return IntegrationCredential(
        tenant_id="acme",
        platform=Platform.GONG,
        base_url="https://api.gong.test",
        access_key="key",
        access_key_secret="secret",
    )


@pytest.fixture
def call_metadata():
    return CallMetadata(
        id="42",
        kind="meeting",
        title="Globex discovery",
        occurred_at=datetime.now(timezone.utc) - timedelta(days=1),
        sellers=[Attendee(name="Jane Doe", email="jane@acme.com")],
        customers=[Attendee(name="Hank Scorpio", email="hank@globex.com", company="Globex", title="CEO")],
        transcript_ref=TranscriptRef(id="t-42"),
    )
