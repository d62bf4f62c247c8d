# src/config/settings.py
from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional

# Get project root (2 levels up from this file)
PROJECT_ROOT = Path(__file__).parent.parent.parent

class Settings(BaseSettings):
    # OpenAI
    openai_api_key: str
    openai_embedding_model: str = "text-embedding-3-small"
    openai_llm_model: str = "gpt-5-nano"

    # PostgreSQL (feedback, insights, cluster analyses, organizations)
    postgres_host: str
    postgres_port: int = 5432
    postgres_database: str
    postgres_username: str
    postgres_password: str
    postgres_sslmode: str = "require"
    postgres_min_connections: int = 1
    postgres_max_connections: int = 10

    # Postmark (cluster notification emails)
    postmark_api_token: Optional[str] = None
    postmark_from_email: str = "notifications@luaplatform.com"

    # Scheduler
    insight_clustering_timer: str = "0 * * * *"
    active_form_window_hours: int = 24
    clustering_cooldown_hours: int = 6

    # Clustering
    min_insights_for_clustering: int = 2
    kmeans_max_iterations: int = 100
    kmeans_random_seed: Optional[int] = None

    # Organization policy fallbacks
    default_recommendation_threshold: float = 0.5
    default_notification_threshold: float = 0.7
    default_ticket_creation_delay: int = 7
    notification_cooldown_hours: int = 24

    # Reports
    form_report_limit: int = 10
    organization_report_limit: int = 50

    # Pipeline config
    max_workers: int = 4

    class Config:
        env_file = str(PROJECT_ROOT / ".env")
        case_sensitive = False
