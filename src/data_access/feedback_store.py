# src/data_access/feedback_store.py
"""
PostgreSQL store for feedback, insights, organizations and cluster analyses.
"""

import logging
import secrets
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool
from pydantic import ValidationError

from src.config.settings import Settings
from src.models.errors import PersistenceError
from src.models.schemas import (
    ClusterAnalysisRecord,
    FeedbackRecord,
    InsightRecord,
    OrganizationPolicy,
)

logger = logging.getLogger(__name__)

ANALYSIS_COLUMNS = [
    "analysis_id", "form_id", "organization", "cluster_label", "cluster_summary",
    "insight_ids", "sentiment_percentage", "cluster_size", "recommendation", "impact",
    "urgency", "ticket_created", "last_ticket_date", "jira_ticket_id", "jira_ticket_url",
    "jira_ticket_status", "email_notification_sent", "email_notification_date", "created_at",
]

# Fields that may change after a cluster analysis is inserted
UPDATABLE_ANALYSIS_COLUMNS = {
    "ticket_created", "last_ticket_date", "jira_ticket_id", "jira_ticket_url",
    "jira_ticket_status", "email_notification_sent", "email_notification_date",
}


def new_document_id() -> str:
    """24-character hex id, the same shape as the product's other document ids."""
    return secrets.token_hex(12)


class FeedbackStore:
    """PostgreSQL client for the data the clustering pipeline reads and writes."""

    def __init__(self, config: Settings):
        self.config = config
        self.pool = None
        self._pool_lock = threading.Lock()

    def connect(self) -> None:
        """Create the connection pool."""
        self.pool = ThreadedConnectionPool(
            self.config.postgres_min_connections,
            self.config.postgres_max_connections,
            host=self.config.postgres_host,
            port=self.config.postgres_port,
            database=self.config.postgres_database,
            user=self.config.postgres_username,
            password=self.config.postgres_password,
            sslmode=self.config.postgres_sslmode
        )

    def close(self) -> None:
        """Close all pooled connections."""
        if self.pool:
            self.pool.closeall()
            self.pool = None

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        try:
            if not self.pool:
                with self._pool_lock:
                    if not self.pool:
                        self.connect()
            conn = self.pool.getconn()
        except psycopg2.Error as e:
            raise PersistenceError(f"Could not connect to database: {e}") from e

        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise PersistenceError(f"Database operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        schema_sql = """
        CREATE TABLE IF NOT EXISTS feedback (
            feedback_id VARCHAR(24) PRIMARY KEY,
            form_id VARCHAR(24) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL
        );

        CREATE INDEX IF NOT EXISTS feedback_form_idx ON feedback(form_id);
        CREATE INDEX IF NOT EXISTS feedback_created_idx ON feedback(created_at);

        CREATE TABLE IF NOT EXISTS insights (
            insight_id VARCHAR(24) PRIMARY KEY,
            feedback_id VARCHAR(24) NOT NULL,
            form_id VARCHAR(24) NOT NULL,
            organization VARCHAR(255) NOT NULL,
            sentiment VARCHAR(32) NOT NULL,
            feedback_description TEXT NOT NULL DEFAULT '',
            keywords TEXT[] NOT NULL DEFAULT '{}',
            embedding DOUBLE PRECISION[]
        );

        CREATE INDEX IF NOT EXISTS insights_feedback_idx ON insights(feedback_id);

        CREATE TABLE IF NOT EXISTS organizations (
            identifier VARCHAR(255) PRIMARY KEY,
            name VARCHAR(255) NOT NULL DEFAULT '',
            email VARCHAR(255),
            recommendation_threshold DOUBLE PRECISION,
            notification_threshold DOUBLE PRECISION,
            ticket_creation_delay INTEGER,
            jira_config JSONB
        );

        CREATE TABLE IF NOT EXISTS cluster_analyses (
            analysis_id VARCHAR(24) PRIMARY KEY,
            form_id VARCHAR(24) NOT NULL,
            organization VARCHAR(255) NOT NULL,
            cluster_label TEXT NOT NULL,
            cluster_summary TEXT NOT NULL,
            insight_ids TEXT[] NOT NULL,
            sentiment_percentage DOUBLE PRECISION NOT NULL,
            cluster_size INTEGER NOT NULL,
            recommendation TEXT,
            impact VARCHAR(16),
            urgency VARCHAR(16),
            ticket_created BOOLEAN NOT NULL DEFAULT FALSE,
            last_ticket_date TIMESTAMPTZ,
            jira_ticket_id VARCHAR(64),
            jira_ticket_url TEXT,
            jira_ticket_status VARCHAR(64),
            email_notification_sent BOOLEAN NOT NULL DEFAULT FALSE,
            email_notification_date TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL
        );

        CREATE INDEX IF NOT EXISTS cluster_analyses_form_idx ON cluster_analyses(form_id, created_at DESC);
        CREATE INDEX IF NOT EXISTS cluster_analyses_org_idx ON cluster_analyses(organization, created_at DESC);
        """

        with self._cursor() as cursor:
            cursor.execute(schema_sql)

    # Feedback and insights

    def find_feedback_by_form(self, form_id: str) -> List[FeedbackRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT feedback_id, form_id, created_at FROM feedback WHERE form_id = %s",
                (form_id,)
            )
            return [FeedbackRecord(**row) for row in cursor.fetchall()]

    def find_form_ids_with_feedback_since(self, since: datetime) -> List[str]:
        """Distinct form ids with at least one feedback submission created at or after ``since``."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT DISTINCT form_id FROM feedback WHERE created_at >= %s",
                (since,)
            )
            return [row["form_id"] for row in cursor.fetchall()]

    def find_insights_by_feedback_ids(self, feedback_ids: List[str]) -> List[InsightRecord]:
        if not feedback_ids:
            return []

        query = """
            SELECT insight_id, feedback_id, form_id, organization, sentiment,
                   feedback_description, keywords, embedding
            FROM insights
            WHERE feedback_id = ANY(%s)
            ORDER BY insight_id
        """

        with self._cursor() as cursor:
            cursor.execute(query, (list(feedback_ids),))
            rows = cursor.fetchall()

        try:
            return [InsightRecord(**row) for row in rows]
        except ValidationError as e:
            raise PersistenceError(f"Invalid insight record: {e}") from e

    def count_insights_for_form(self, form_id: str) -> int:
        query = """
            SELECT COUNT(*) AS insight_count
            FROM insights
            JOIN feedback ON feedback.feedback_id = insights.feedback_id
            WHERE feedback.form_id = %s
        """

        with self._cursor() as cursor:
            cursor.execute(query, (form_id,))
            return cursor.fetchone()["insight_count"]

    def update_insight_embedding(self, insight_id: str, embedding: List[float]) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE insights SET embedding = %s WHERE insight_id = %s",
                (list(embedding), insight_id)
            )

    # Organizations

    def find_organization(self, identifier: str) -> Optional[OrganizationPolicy]:
        query = """
            SELECT identifier, name, email, recommendation_threshold,
                   notification_threshold, ticket_creation_delay, jira_config
            FROM organizations
            WHERE identifier = %s
        """

        with self._cursor() as cursor:
            cursor.execute(query, (identifier,))
            row = cursor.fetchone()

        if row is None:
            return None
        row = dict(row)
        row["jira_config"] = row.get("jira_config") or {}
        row["name"] = row.get("name") or ""
        return OrganizationPolicy(**row)

    # Cluster analyses

    def insert_cluster_analysis(self, record: ClusterAnalysisRecord) -> ClusterAnalysisRecord:
        """
        Insert a cluster analysis.

        Returns:
            The record with its assigned analysis_id
        """
        record = record.model_copy(update={"analysis_id": record.analysis_id or new_document_id()})
        values = [getattr(record, column) for column in ANALYSIS_COLUMNS]

        query = f"""
            INSERT INTO cluster_analyses ({', '.join(ANALYSIS_COLUMNS)})
            VALUES ({', '.join(['%s'] * len(ANALYSIS_COLUMNS))})
        """

        with self._cursor() as cursor:
            cursor.execute(query, values)
        return record

    def update_cluster_analysis(self, analysis_id: str, fields: Dict[str, Any]) -> None:
        """Update ticket and notification fields of an existing analysis."""
        unknown = set(fields) - UPDATABLE_ANALYSIS_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update cluster analysis fields: {sorted(unknown)}")
        if not fields:
            return

        columns = sorted(fields)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        values = [fields[column] for column in columns] + [analysis_id]

        with self._cursor() as cursor:
            cursor.execute(f"UPDATE cluster_analyses SET {assignments} WHERE analysis_id = %s", values)

    def get_cluster_analysis(self, analysis_id: str) -> Optional[ClusterAnalysisRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT {', '.join(ANALYSIS_COLUMNS)} FROM cluster_analyses WHERE analysis_id = %s",
                (analysis_id,)
            )
            row = cursor.fetchone()
        return ClusterAnalysisRecord(**row) if row else None

    def find_cluster_analyses_by_form(self, form_id: str, limit: int = 10) -> List[ClusterAnalysisRecord]:
        """Most recent analyses of a form, newest first."""
        return self._find_cluster_analyses("form_id = %s", [form_id], limit)

    def find_cluster_analyses_by_organization(self, organization: str, limit: int = 50) -> List[ClusterAnalysisRecord]:
        """Most recent analyses across an organization's forms, newest first."""
        return self._find_cluster_analyses("organization = %s", [organization], limit)

    def find_recent_ticket(self, form_id: str, cluster_label: str, since: datetime) -> Optional[ClusterAnalysisRecord]:
        """Latest analysis with the same form and label that got a ticket at or after ``since``."""
        analyses = self._find_cluster_analyses(
            "form_id = %s AND cluster_label = %s AND ticket_created AND last_ticket_date >= %s",
            [form_id, cluster_label, since],
            1,
            order_by="last_ticket_date",
        )
        return analyses[0] if analyses else None

    def find_recent_notification(self, form_id: str, cluster_label: str, since: datetime) -> Optional[ClusterAnalysisRecord]:
        """Latest analysis with the same form and label that sent an email at or after ``since``."""
        analyses = self._find_cluster_analyses(
            "form_id = %s AND cluster_label = %s AND email_notification_sent AND email_notification_date >= %s",
            [form_id, cluster_label, since],
            1,
            order_by="email_notification_date",
        )
        return analyses[0] if analyses else None

    def _find_cluster_analyses(
        self,
        where: str,
        params: List[Any],
        limit: int,
        order_by: str = "created_at",
    ) -> List[ClusterAnalysisRecord]:
        query = f"""
            SELECT {', '.join(ANALYSIS_COLUMNS)}
            FROM cluster_analyses
            WHERE {where}
            ORDER BY {order_by} DESC
            LIMIT %s
        """

        with self._cursor() as cursor:
            cursor.execute(query, tuple(params) + (limit,))
            return [ClusterAnalysisRecord(**row) for row in cursor.fetchall()]
