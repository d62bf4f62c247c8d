"""Shared fixtures for pipeline tests."""
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock

from src.config.settings import Settings
from src.data_access.feedback_store import FeedbackStore
from src.models.schemas import (
    ClusterAnalysisRecord,
    FeedbackRecord,
    InsightRecord,
    JiraConfig,
    OrganizationPolicy,
)

FORM_ID = "507f1f77bcf86cd799439011"
OTHER_FORM_ID = "507f1f77bcf86cd799439022"
ANALYSIS_ID = "64b7f0c2a1e4d3b2c1a09f8e"
ORGANIZATION = "acme"


@pytest.fixture
def mock_config():
    """Create a mock Settings config with the default values."""
    config = Mock(spec=Settings)
    for name, field in Settings.model_fields.items():
        if not field.is_required():
            setattr(config, name, field.default)
    config.openai_api_key = "test-key"
    config.postgres_host = "localhost"
    config.postgres_database = "insights"
    config.postgres_username = "user"
    config.postgres_password = "password"
    config.postmark_api_token = "postmark-token"
    config.kmeans_random_seed = 42
    config.max_workers = 2
    return config


@pytest.fixture
def mock_store():
    """Create a mock store with no data."""
    store = Mock(spec=FeedbackStore)
    store.find_feedback_by_form.return_value = []
    store.find_insights_by_feedback_ids.return_value = []
    store.find_organization.return_value = None
    store.find_recent_ticket.return_value = None
    store.find_recent_notification.return_value = None
    store.find_cluster_analyses_by_form.return_value = []
    store.find_cluster_analyses_by_organization.return_value = []
    store.insert_cluster_analysis.side_effect = lambda record: record.model_copy(
        update={"analysis_id": record.analysis_id or ANALYSIS_ID}
    )
    return store


@pytest.fixture
def organization():
    return OrganizationPolicy(
        identifier=ORGANIZATION,
        name="Acme Inc",
        email="alerts@acme.test",
        recommendation_threshold=0.5,
        notification_threshold=0.7,
        ticket_creation_delay=7,
        jira_config=JiraConfig(
            enabled=True,
            host="https://acme.atlassian.net/",
            username="bot@acme.test",
            api_token="jira-token",
            project_key="FB",
        ),
    )


def make_insight(
    index: int,
    sentiment: str = "dissatisfied",
    description: str = "App crashes on login",
    keywords=None,
    embedding=None,
    form_id: str = FORM_ID,
) -> InsightRecord:
    return InsightRecord(
        insight_id=f"insight-{index}",
        feedback_id=f"feedback-{index}",
        form_id=form_id,
        organization=ORGANIZATION,
        sentiment=sentiment,
        feedback_description=description,
        keywords=keywords if keywords is not None else ["login", "crash"],
        embedding=embedding,
    )


def make_feedback(insights) -> list:
    return [
        FeedbackRecord(
            feedback_id=insight.feedback_id,
            form_id=insight.form_id,
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        for insight in insights
    ]


def make_analysis(**overrides) -> ClusterAnalysisRecord:
    fields = {
        "analysis_id": ANALYSIS_ID,
        "form_id": FORM_ID,
        "organization": ORGANIZATION,
        "cluster_label": "login, crash",
        "cluster_summary": "Users cannot log in",
        "insight_ids": ["insight-1", "insight-2"],
        "sentiment_percentage": 100.0,
        "cluster_size": 2,
        "recommendation": "Fix the session refresh on login",
        "impact": "high",
        "urgency": "immediate",
    }
    fields.update(overrides)
    return ClusterAnalysisRecord(**fields)
