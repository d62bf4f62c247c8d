import re
from pydantic import BaseModel, Field, ConfigDict, field_validator
from datetime import datetime, timezone
from typing import Optional, List, Dict
from enum import Enum

from src.models.errors import InvalidIdError


NEGATIVE_SENTIMENTS = ("very dissatisfied", "dissatisfied")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Sentiment(str, Enum):
    VERY_DISSATISFIED = "very dissatisfied"
    DISSATISFIED = "dissatisfied"
    NEUTRAL = "neutral"
    SATISFIED = "satisfied"
    VERY_SATISFIED = "very satisfied"


class Impact(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Urgency(str, Enum):
    IMMEDIATE = "immediate"
    SOON = "soon"
    LATER = "later"


class FeedbackRecord(BaseModel):
    """Feedback submission, as far as clustering needs it."""
    feedback_id: str
    form_id: str
    created_at: datetime


class InsightRecord(BaseModel):
    """Sentiment-tagged excerpt derived from one feedback submission."""
    model_config = ConfigDict(use_enum_values=True)

    insight_id: str
    feedback_id: str
    form_id: str
    organization: str
    sentiment: Sentiment
    feedback_description: str = ""
    keywords: List[str] = Field(default_factory=list)
    embedding: Optional[List[float]] = None

    @property
    def is_negative(self) -> bool:
        return self.sentiment in NEGATIVE_SENTIMENTS

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def embedding_text(self) -> str:
        """Text the embedding is computed from: description plus keywords."""
        return f"{self.feedback_description} {' '.join(self.keywords)}"


class JiraConfig(BaseModel):
    enabled: bool = False
    host: Optional[str] = None
    username: Optional[str] = None
    api_token: Optional[str] = None
    project_key: Optional[str] = None
    issue_type: str = "Task"
    supports_priority: bool = True

    @property
    def is_configured(self) -> bool:
        return bool(self.enabled and self.host and self.username and self.api_token)


class OrganizationPolicy(BaseModel):
    """Organization settings read by the pipeline. Thresholds are fractions (0-1)."""
    identifier: str
    name: str = ""
    email: Optional[str] = None
    recommendation_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    notification_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    ticket_creation_delay: Optional[int] = Field(default=None, ge=0)
    jira_config: JiraConfig = Field(default_factory=JiraConfig)


class ClusterRecommendation(BaseModel):
    """Structured answer of the generative AI service for one cluster."""
    model_config = ConfigDict(use_enum_values=True)

    recommendation: str = Field(..., min_length=1)
    impact: Impact
    urgency: Urgency
    cluster_summary: str = Field(..., min_length=1)

    @field_validator("impact", "urgency", mode="before")
    @classmethod
    def _normalize_level(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class ClusterAnalysisRecord(BaseModel):
    """One persisted cluster produced by a clustering run."""
    model_config = ConfigDict(use_enum_values=True)

    analysis_id: Optional[str] = None
    form_id: str
    organization: str
    cluster_label: str
    cluster_summary: str
    insight_ids: List[str]
    sentiment_percentage: float = Field(..., ge=0.0, le=100.0)
    cluster_size: int = Field(..., ge=1)
    recommendation: Optional[str] = None
    impact: Optional[Impact] = None
    urgency: Optional[Urgency] = None
    ticket_created: bool = False
    last_ticket_date: Optional[datetime] = None
    jira_ticket_id: Optional[str] = None
    jira_ticket_url: Optional[str] = None
    jira_ticket_status: Optional[str] = None
    email_notification_sent: bool = False
    email_notification_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_ticket_candidate(self) -> bool:
        """High impact clusters that need attention within weeks."""
        return self.impact == Impact.HIGH.value and self.urgency in (
            Urgency.IMMEDIATE.value,
            Urgency.SOON.value,
        )


class ClusteringResult(BaseModel):
    """Outcome of clustering one form."""
    form_id: str
    total_insights: int
    clusters: List[ClusterAnalysisRecord] = Field(default_factory=list)
    message: Optional[str] = None


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class FormRunOutcome(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    form_id: str
    status: RunStatus
    reason: Optional[str] = None
    error: Optional[str] = None
    clusters_found: int = 0
    total_insights: int = 0


class SchedulerRunSummary(BaseModel):
    started_at: datetime
    duration_seconds: float = 0.0
    total_forms: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: List[FormRunOutcome] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    IDLE = "idle"
    PROCESSING = "processing"


class SchedulerStatus(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    is_running: SchedulerState
    enabled: bool
    busy: bool
    cron_expression: str
    description: str
    next_run: Optional[datetime] = None
    run_count: int = 0


class TicketStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    NOT_ELIGIBLE = "not_eligible"
    FAILED = "failed"


class TicketResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    analysis_id: str
    status: TicketStatus
    ticket_id: Optional[str] = None
    ticket_url: Optional[str] = None
    message: str = ""


class FormClusterReport(BaseModel):
    form_id: str
    total_analyses: int
    clusters: List[ClusterAnalysisRecord]


class OrganizationClusterSummary(BaseModel):
    total_clusters: int
    forms_with_clusters: int
    clusters_with_tickets: int
    high_impact_clusters: int
    urgent_clusters: int


class OrganizationClusterReport(BaseModel):
    organization: str
    summary: OrganizationClusterSummary
    analyses_by_form: Dict[str, List[ClusterAnalysisRecord]]
    all_analyses: List[ClusterAnalysisRecord]


_OBJECT_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")


def validate_object_id(value, kind: str = "form") -> str:
    """Return ``value`` if it is a 24-character hex document id, else raise InvalidIdError."""
    if not isinstance(value, str) or not _OBJECT_ID_PATTERN.match(value):
        raise InvalidIdError(f"Invalid {kind} ID: {value!r}")
    return value
