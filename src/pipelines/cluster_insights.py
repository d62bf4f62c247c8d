"""
Per-form insight clustering pipeline.
Embeds a form's insights, groups them with k-means, scores each cluster's share of
negative sentiment and, depending on the organization's thresholds, asks the LLM
for a recommendation and emails the organization.
"""

from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta
from typing import Dict, List, Optional
import argparse
import logging

import numpy as np

from src.config.settings import Settings
from src.data_access.feedback_store import FeedbackStore
from src.embedding.embedder import get_embedding_provider
from src.embedding.kmeans import cluster_embeddings, determine_optimal_clusters
from src.agents.llm_agent import ClusterRecommender
from src.integrations.email_client import PostmarkEmailClient
from src.models.errors import InsufficientDataError, InvalidIdError, PersistenceError
from src.models.schemas import (
    ClusterAnalysisRecord,
    ClusterRecommendation,
    ClusteringResult,
    InsightRecord,
    OrganizationPolicy,
    utc_now,
    validate_object_id,
)

logger = logging.getLogger(__name__)

INSUFFICIENT_INSIGHTS_MESSAGE = "Not enough insights for clustering (minimum 2 required)"


def build_cluster_label(insights: List[InsightRecord], cluster_index: int) -> str:
    """Top three keywords of the cluster, or a numbered fallback when there are none."""
    keyword_counts = Counter(keyword for insight in insights for keyword in insight.keywords)
    top_keywords = [keyword for keyword, _ in keyword_counts.most_common(3)]
    return ", ".join(top_keywords) or f"Cluster {cluster_index + 1}"


def negative_sentiment_percentage(insights: List[InsightRecord]) -> float:
    """Share of insights with negative sentiment, 0-100."""
    negative_count = sum(1 for insight in insights if insight.is_negative)
    return negative_count / len(insights) * 100


class InsightClusteringPipeline:
    """
    Pipeline for clustering the insights of one form and acting on negative clusters.
    """

    def __init__(
        self,
        config: Settings,
        store: Optional[FeedbackStore] = None,
        embedder=None,
        recommender: Optional[ClusterRecommender] = None,
        email_client=None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config
        self.store = store or FeedbackStore(config)
        self.embedder = embedder or get_embedding_provider(config)
        self.recommender = recommender or ClusterRecommender(config)
        self.email_client = email_client or PostmarkEmailClient(config)
        self.rng = rng if rng is not None else np.random.default_rng(config.kmeans_random_seed)
        self.min_insights = config.min_insights_for_clustering

    def run(self, form_id: str) -> ClusteringResult:
        """
        Cluster the insights of a form.

        Args:
            form_id: Form identifier (24 hex characters)

        Returns:
            Clustering result; ``clusters`` is empty and ``message`` set when the form
            has fewer than two insights

        Raises:
            InvalidIdError: If form_id is malformed
            PersistenceError: If feedback, insights or the organization cannot be loaded
        """
        validate_object_id(form_id, "form")
        logger.info(f"Starting clustering for form {form_id}")

        insights = self._load_insights(form_id)
        total_insights = len(insights)

        if total_insights < self.min_insights:
            logger.info(f"Not enough insights for clustering form {form_id} (count={total_insights})")
            return ClusteringResult(
                form_id=form_id,
                total_insights=total_insights,
                clusters=[],
                message=INSUFFICIENT_INSIGHTS_MESSAGE,
            )

        try:
            embedded = self._ensure_embeddings(form_id, insights)
        except InsufficientDataError as e:
            logger.warning(str(e))
            return ClusteringResult(
                form_id=form_id,
                total_insights=total_insights,
                clusters=[],
                message=INSUFFICIENT_INSIGHTS_MESSAGE,
            )

        # Insights whose embedding failed do not count towards k
        optimal_k = determine_optimal_clusters(len(embedded))
        assignments = cluster_embeddings(
            [insight.embedding for insight in embedded],
            optimal_k,
            max_iterations=self.config.kmeans_max_iterations,
            rng=self.rng,
        )
        clusters = self._group_by_cluster(embedded, assignments)

        organization_id = embedded[0].organization
        organization = self.store.find_organization(organization_id)
        if organization is None:
            logger.warning(f"Organization {organization_id} not found, using default thresholds for form {form_id}")

        analyses = []
        for cluster_index, members in clusters.items():
            analysis = self._analyze_cluster(form_id, cluster_index, members, organization)
            if analysis is not None:
                analyses.append(analysis)

        logger.info(
            f"Clustering completed for form {form_id}: {total_insights} insights, "
            f"{len(analyses)} clusters saved (k={optimal_k})"
        )

        return ClusteringResult(form_id=form_id, total_insights=total_insights, clusters=analyses)

    def _load_insights(self, form_id: str) -> List[InsightRecord]:
        feedback = self.store.find_feedback_by_form(form_id)
        feedback_ids = [record.feedback_id for record in feedback]
        return self.store.find_insights_by_feedback_ids(feedback_ids)

    def _ensure_embeddings(self, form_id: str, insights: List[InsightRecord]) -> List[InsightRecord]:
        """
        Embed insights that have no embedding yet and write the vectors back.

        Returns:
            Insights usable for clustering (embedded, with the common dimension)

        Raises:
            InsufficientDataError: If fewer than the minimum number of insights could be embedded
        """
        missing = [insight for insight in insights if not insight.has_embedding]

        if missing:
            logger.info(f"Generating embeddings for {len(missing)} insights of form {form_id}")

            with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
                future_to_insight = {
                    executor.submit(self.embedder.embed, insight.embedding_text()): insight
                    for insight in missing
                }

                for future in as_completed(future_to_insight):
                    insight = future_to_insight[future]
                    try:
                        insight.embedding = future.result()
                    except Exception as e:
                        logger.error(f"Embedding failed for insight {insight.insight_id} (form {form_id}): {e}")
                        continue
                    self._save_embedding(form_id, insight)

        embedded = [insight for insight in insights if insight.has_embedding]

        if embedded:
            dimension, _ = Counter(len(insight.embedding) for insight in embedded).most_common(1)[0]
            mismatched = [insight.insight_id for insight in embedded if len(insight.embedding) != dimension]
            if mismatched:
                logger.warning(
                    f"Skipping {len(mismatched)} insights of form {form_id} with embeddings "
                    f"not of dimension {dimension}: {mismatched}"
                )
                embedded = [insight for insight in embedded if len(insight.embedding) == dimension]

        if len(embedded) < self.min_insights:
            raise InsufficientDataError(form_id, len(embedded), self.min_insights)

        return embedded

    def _save_embedding(self, form_id: str, insight: InsightRecord) -> None:
        try:
            self.store.update_insight_embedding(insight.insight_id, insight.embedding)
        except PersistenceError as e:
            logger.warning(f"Could not save embedding for insight {insight.insight_id} (form {form_id}): {e}")

    def _group_by_cluster(self, insights: List[InsightRecord], assignments: List[int]) -> Dict[int, List[InsightRecord]]:
        clusters: Dict[int, List[InsightRecord]] = {}
        for insight, cluster_index in zip(insights, assignments):
            clusters.setdefault(cluster_index, []).append(insight)
        return dict(sorted(clusters.items()))

    def _policy(self, organization: Optional[OrganizationPolicy], field: str, default):
        value = getattr(organization, field, None) if organization is not None else None
        return default if value is None else value

    def _analyze_cluster(
        self,
        form_id: str,
        cluster_index: int,
        insights: List[InsightRecord],
        organization: Optional[OrganizationPolicy],
    ) -> Optional[ClusterAnalysisRecord]:
        """Score, enrich and persist one cluster. Returns None if it could not be saved."""
        cluster_size = len(insights)
        sentiment_percentage = negative_sentiment_percentage(insights)
        cluster_label = build_cluster_label(insights, cluster_index)

        analysis = ClusterAnalysisRecord(
            form_id=form_id,
            organization=insights[0].organization,
            cluster_label=cluster_label,
            cluster_summary=f"Cluster of {cluster_size} insights about {cluster_label}",
            insight_ids=[insight.insight_id for insight in insights],
            sentiment_percentage=sentiment_percentage,
            cluster_size=cluster_size,
        )

        # Organization thresholds are fractions
        negative_fraction = sentiment_percentage / 100
        recommendation_threshold = self._policy(
            organization, "recommendation_threshold", self.config.default_recommendation_threshold
        )
        notification_threshold = self._policy(
            organization, "notification_threshold", self.config.default_notification_threshold
        )

        if negative_fraction >= recommendation_threshold:
            recommendation = self._recommend(analysis, insights)
            if recommendation is not None:
                analysis.recommendation = recommendation.recommendation
                analysis.impact = recommendation.impact
                analysis.urgency = recommendation.urgency
                analysis.cluster_summary = recommendation.cluster_summary

        self._carry_ticket_state(analysis, organization)

        try:
            analysis = self.store.insert_cluster_analysis(analysis)
        except PersistenceError as e:
            logger.error(
                f"Could not save cluster '{cluster_label}' for form {form_id} "
                f"(organization {analysis.organization}): {e}"
            )
            return None

        if negative_fraction >= notification_threshold:
            self._notify(analysis, organization)

        return analysis

    def _recommend(self, analysis: ClusterAnalysisRecord, insights: List[InsightRecord]) -> Optional[ClusterRecommendation]:
        feedback_texts = [insight.feedback_description for insight in insights]
        try:
            return self.recommender.recommend(feedback_texts, analysis.cluster_label)
        except Exception as e:
            logger.error(
                f"Error analyzing cluster '{analysis.cluster_label}' with AI "
                f"(form {analysis.form_id}, organization {analysis.organization}): {e}"
            )
            return None

    def _carry_ticket_state(self, analysis: ClusterAnalysisRecord, organization: Optional[OrganizationPolicy]) -> None:
        """Copy the ticket of a recent analysis with the same label so no duplicate gets requested."""
        delay_days = self._policy(organization, "ticket_creation_delay", self.config.default_ticket_creation_delay)
        since = utc_now() - timedelta(days=delay_days)

        try:
            previous = self.store.find_recent_ticket(analysis.form_id, analysis.cluster_label, since)
        except PersistenceError as e:
            logger.warning(f"Could not check existing tickets for cluster '{analysis.cluster_label}' (form {analysis.form_id}): {e}")
            return

        if previous is not None:
            analysis.ticket_created = True
            analysis.last_ticket_date = previous.last_ticket_date
            analysis.jira_ticket_id = previous.jira_ticket_id
            analysis.jira_ticket_url = previous.jira_ticket_url
            analysis.jira_ticket_status = previous.jira_ticket_status

    def _notify(self, analysis: ClusterAnalysisRecord, organization: Optional[OrganizationPolicy]) -> None:
        if organization is None or not organization.email:
            logger.warning(
                f"Sentiment threshold exceeded but no organization email configured "
                f"(form {analysis.form_id}, cluster '{analysis.cluster_label}', "
                f"organization {analysis.organization}, {analysis.sentiment_percentage:.1f}% negative)"
            )
            return

        since = utc_now() - timedelta(hours=self.config.notification_cooldown_hours)
        try:
            previous = self.store.find_recent_notification(analysis.form_id, analysis.cluster_label, since)
        except PersistenceError as e:
            logger.error(f"Could not check earlier notifications for cluster '{analysis.cluster_label}' (form {analysis.form_id}), not sending: {e}")
            return

        if previous is not None:
            logger.info(
                f"Notification for cluster '{analysis.cluster_label}' (form {analysis.form_id}) "
                f"already sent at {previous.email_notification_date}, skipping"
            )
            return

        cluster_data = {
            "organization_name": organization.name,
            "cluster_label": analysis.cluster_label,
            "cluster_summary": analysis.cluster_summary,
            "cluster_size": analysis.cluster_size,
            "recommendation": analysis.recommendation,
            "impact": analysis.impact,
            "urgency": analysis.urgency,
            "jira_ticket": {
                "ticket_id": analysis.jira_ticket_id,
                "ticket_url": analysis.jira_ticket_url,
                "status": analysis.jira_ticket_status,
            } if analysis.jira_ticket_id else None,
        }

        logger.info(
            f"Sending cluster notification email for '{analysis.cluster_label}' "
            f"(form {analysis.form_id}, organization {analysis.organization}, "
            f"{analysis.sentiment_percentage:.1f}% negative)"
        )

        try:
            sent = self.email_client.send(organization.email, cluster_data, analysis.sentiment_percentage)
        except Exception as e:
            logger.error(f"Cluster notification email failed for '{analysis.cluster_label}' (form {analysis.form_id}): {e}")
            return

        if not sent:
            logger.warning(f"Cluster notification email not sent for '{analysis.cluster_label}' (form {analysis.form_id})")
            return

        analysis.email_notification_sent = True
        analysis.email_notification_date = utc_now()

        try:
            self.store.update_cluster_analysis(
                analysis.analysis_id,
                {
                    "email_notification_sent": True,
                    "email_notification_date": analysis.email_notification_date,
                },
            )
        except PersistenceError as e:
            logger.error(f"Email sent but notification state not saved for analysis {analysis.analysis_id}: {e}")


def main():
    """Cluster the insights of one form."""
    parser = argparse.ArgumentParser(description="Run insight clustering for a form.")
    parser.add_argument("form_id", type=str, help="Form identifier.")
    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    config = Settings()
    pipeline = InsightClusteringPipeline(config)

    try:
        result = pipeline.run(args.form_id)
    except InvalidIdError as e:
        parser.error(str(e))
    finally:
        pipeline.store.close()

    print(result.model_dump_json(indent=2))


if __name__ == "__main__":
    main()
