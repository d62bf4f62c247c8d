"""
Explicit issue-tracker tickets for cluster analyses.

Clustering runs never open tickets; this operation does, for high impact
clusters, at most once per form and label within the organization's
ticket creation delay.
"""

from datetime import timedelta
from typing import Dict, Optional
import argparse
import logging

from src.config.settings import Settings
from src.data_access.feedback_store import FeedbackStore
from src.integrations.issue_tracker import JiraIssueTracker
from src.models.errors import NotFoundError, PersistenceError
from src.models.schemas import (
    ClusterAnalysisRecord,
    OrganizationPolicy,
    TicketResult,
    TicketStatus,
    utc_now,
    validate_object_id,
)

logger = logging.getLogger(__name__)

OPEN_TICKET_STATUS = "Open"


class TicketService:
    """Create a ticket for one cluster analysis and record it on the analysis."""

    def __init__(self, config: Settings, store: Optional[FeedbackStore] = None, tracker=None):
        self.config = config
        self.store = store or FeedbackStore(config)
        self.tracker = tracker or JiraIssueTracker()
        # Tickets the issue tracker created but the store failed to record, by analysis id
        self._unsaved_tickets: Dict[str, Dict[str, str]] = {}

    def create_ticket(self, analysis_id: str, force: bool = False) -> TicketResult:
        """
        Create a ticket for a cluster analysis.

        Args:
            analysis_id: Cluster analysis identifier
            force: Create the ticket even if the cluster is not high impact and urgent

        Raises:
            InvalidIdError: If analysis_id is malformed
            NotFoundError: If the analysis or its organization does not exist
            PersistenceError: If the store fails
        """
        validate_object_id(analysis_id, "analysis")

        analysis = self.store.get_cluster_analysis(analysis_id)
        if analysis is None:
            raise NotFoundError(f"Cluster analysis {analysis_id} not found")

        organization = self.store.find_organization(analysis.organization)
        if organization is None:
            raise NotFoundError(f"Organization {analysis.organization} not found")

        if not force and not analysis.is_ticket_candidate:
            logger.info(
                f"Cluster '{analysis.cluster_label}' (analysis {analysis_id}) is not a ticket candidate "
                f"(impact={analysis.impact}, urgency={analysis.urgency})"
            )
            return TicketResult(
                analysis_id=analysis_id,
                status=TicketStatus.NOT_ELIGIBLE,
                message="Only high impact clusters with immediate or soon urgency get tickets",
            )

        if analysis.ticket_created:
            return TicketResult(
                analysis_id=analysis_id,
                status=TicketStatus.DUPLICATE,
                ticket_id=analysis.jira_ticket_id,
                ticket_url=analysis.jira_ticket_url,
                message="Ticket already created for this cluster",
            )

        delay_days = self._ticket_creation_delay(organization)
        previous = self.store.find_recent_ticket(
            analysis.form_id, analysis.cluster_label, utc_now() - timedelta(days=delay_days)
        )
        if previous is not None:
            logger.info(
                f"Ticket {previous.jira_ticket_id} already created for cluster '{analysis.cluster_label}' "
                f"(form {analysis.form_id}) at {previous.last_ticket_date}, skipping"
            )
            return TicketResult(
                analysis_id=analysis_id,
                status=TicketStatus.DUPLICATE,
                ticket_id=previous.jira_ticket_id,
                ticket_url=previous.jira_ticket_url,
                message=f"Ticket already created within the last {delay_days} days",
            )

        unsaved = self._unsaved_tickets.get(analysis_id)
        if unsaved is not None:
            logger.warning(
                f"Ticket {unsaved['ticket_id']} was created for analysis {analysis_id} but not saved, saving it again"
            )
            return self._record_ticket(analysis_id, analysis, unsaved, TicketStatus.DUPLICATE)

        ticket = self.tracker.create_ticket(analysis, organization)
        if not ticket:
            return TicketResult(
                analysis_id=analysis_id,
                status=TicketStatus.FAILED,
                message="Issue tracker did not create a ticket",
            )

        logger.info(
            f"Ticket {ticket['ticket_id']} created for cluster '{analysis.cluster_label}' "
            f"(form {analysis.form_id}, organization {analysis.organization})"
        )
        return self._record_ticket(analysis_id, analysis, ticket, TicketStatus.CREATED)

    def _record_ticket(
        self,
        analysis_id: str,
        analysis: ClusterAnalysisRecord,
        ticket: Dict[str, str],
        status: TicketStatus,
    ) -> TicketResult:
        """Save ticket fields on the analysis; an unsaved ticket is kept so a retry does not open another."""
        try:
            self.store.update_cluster_analysis(
                analysis_id,
                {
                    "ticket_created": True,
                    "last_ticket_date": utc_now(),
                    "jira_ticket_id": ticket["ticket_id"],
                    "jira_ticket_url": ticket["ticket_url"],
                    "jira_ticket_status": OPEN_TICKET_STATUS,
                },
            )
        except PersistenceError as e:
            self._unsaved_tickets[analysis_id] = ticket
            logger.error(
                f"Ticket {ticket['ticket_id']} ({ticket['ticket_url']}) created for cluster "
                f"'{analysis.cluster_label}' (analysis {analysis_id}) but not saved: {e}"
            )
            return TicketResult(
                analysis_id=analysis_id,
                status=status,
                ticket_id=ticket["ticket_id"],
                ticket_url=ticket["ticket_url"],
                message=f"Ticket created but not saved on the analysis: {e}",
            )

        self._unsaved_tickets.pop(analysis_id, None)
        return TicketResult(
            analysis_id=analysis_id,
            status=status,
            ticket_id=ticket["ticket_id"],
            ticket_url=ticket["ticket_url"],
        )

    def _ticket_creation_delay(self, organization: OrganizationPolicy) -> int:
        if organization.ticket_creation_delay is None:
            return self.config.default_ticket_creation_delay
        return organization.ticket_creation_delay


def main():
    """Create a ticket for one cluster analysis."""
    parser = argparse.ArgumentParser(description="Create an issue tracker ticket for a cluster analysis.")
    parser.add_argument("analysis_id", type=str, help="Cluster analysis identifier.")
    parser.add_argument("--force", action="store_true", help="Create the ticket regardless of impact and urgency.")
    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = Settings()
    service = TicketService(config)

    try:
        result = service.create_ticket(args.analysis_id, force=args.force)
    except (ValueError, NotFoundError) as e:
        parser.error(str(e))
    finally:
        service.store.close()

    print(result.model_dump_json(indent=2))


if __name__ == "__main__":
    main()
