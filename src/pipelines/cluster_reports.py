"""
Read-side reports over persisted cluster analyses.
"""

from typing import Dict, List
import argparse
import logging

import pandas as pd

from src.config.settings import Settings
from src.data_access.feedback_store import FeedbackStore
from src.models.errors import NotFoundError
from src.models.schemas import (
    ClusterAnalysisRecord,
    FormClusterReport,
    Impact,
    OrganizationClusterReport,
    OrganizationClusterSummary,
    Urgency,
    validate_object_id,
)

logger = logging.getLogger(__name__)


def summarize_analyses(analyses: List[ClusterAnalysisRecord]) -> OrganizationClusterSummary:
    """Counts over a list of analyses: forms covered, tickets, high impact and immediate urgency."""
    df = pd.DataFrame(
        [
            {
                "form_id": a.form_id,
                "ticket_created": a.ticket_created,
                "impact": a.impact,
                "urgency": a.urgency,
            }
            for a in analyses
        ],
        columns=["form_id", "ticket_created", "impact", "urgency"],
    )

    return OrganizationClusterSummary(
        total_clusters=len(df),
        forms_with_clusters=int(df["form_id"].nunique()),
        clusters_with_tickets=int(df["ticket_created"].astype(bool).sum()),
        high_impact_clusters=int((df["impact"] == Impact.HIGH.value).sum()),
        urgent_clusters=int((df["urgency"] == Urgency.IMMEDIATE.value).sum()),
    )


def group_by_form(analyses: List[ClusterAnalysisRecord]) -> Dict[str, List[ClusterAnalysisRecord]]:
    """Analyses keyed by form, keeping each form's newest-first order."""
    if not analyses:
        return {}

    df = pd.DataFrame({"form_id": [a.form_id for a in analyses], "position": range(len(analyses))})
    grouped = df.groupby("form_id", sort=False)["position"].apply(list).to_dict()
    return {form_id: [analyses[i] for i in positions] for form_id, positions in grouped.items()}


class ClusterReportService:
    """Recent cluster analyses per form and per organization."""

    def __init__(self, config: Settings, store: FeedbackStore = None):
        self.config = config
        self.store = store or FeedbackStore(config)

    def get_cluster_analyses_by_form(self, form_id: str) -> FormClusterReport:
        """
        Most recent analyses of a form, newest first.

        Raises:
            InvalidIdError: If form_id is malformed
            NotFoundError: If the form has never been clustered
        """
        validate_object_id(form_id, "form")

        analyses = self.store.find_cluster_analyses_by_form(form_id, limit=self.config.form_report_limit)
        if not analyses:
            logger.info(f"No cluster analyses found for form {form_id}")
            raise NotFoundError("No cluster analyses found for this form. Run clustering first.")

        return FormClusterReport(form_id=form_id, total_analyses=len(analyses), clusters=analyses)

    def get_cluster_analyses_by_organization(self, organization: str) -> OrganizationClusterReport:
        """
        Most recent analyses across an organization's forms, grouped by form with summary counts.

        Raises:
            ValueError: If organization is empty
            NotFoundError: If the organization has no analyses
        """
        if not organization:
            logger.warning("No organization ID provided for cluster analysis")
            raise ValueError("Organization ID is required")

        analyses = self.store.find_cluster_analyses_by_organization(
            organization, limit=self.config.organization_report_limit
        )
        if not analyses:
            logger.info(f"No cluster analyses found for organization {organization}")
            raise NotFoundError("No cluster analyses found for this organization. Run clustering first.")

        return OrganizationClusterReport(
            organization=organization,
            summary=summarize_analyses(analyses),
            analyses_by_form=group_by_form(analyses),
            all_analyses=analyses,
        )


def main():
    """Print the cluster report of a form or an organization."""
    parser = argparse.ArgumentParser(description="Show recent cluster analyses.")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--form", type=str, help="Form identifier.")
    group.add_argument("--organization", type=str, help="Organization identifier.")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = Settings()
    service = ClusterReportService(config)

    try:
        if args.form:
            report = service.get_cluster_analyses_by_form(args.form)
        else:
            report = service.get_cluster_analyses_by_organization(args.organization)
    except (ValueError, NotFoundError) as e:
        parser.error(str(e))
    finally:
        service.store.close()

    print(report.model_dump_json(indent=2))


if __name__ == "__main__":
    main()
