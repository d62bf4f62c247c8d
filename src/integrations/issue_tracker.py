"""
Jira tickets for cluster analyses.
"""

from typing import Dict, Optional, Protocol
import logging

import requests

from src.models.schemas import ClusterAnalysisRecord, OrganizationPolicy

logger = logging.getLogger(__name__)

IMPACT_PRIORITIES = {"high": "High", "medium": "Medium", "low": "Low"}


class IssueTracker(Protocol):
    def create_ticket(self, analysis: ClusterAnalysisRecord, organization: OrganizationPolicy) -> Optional[Dict[str, str]]:
        ...


def clean_host(host: str) -> str:
    """Strip protocol and trailing slash from a configured Jira host."""
    for prefix in ("https://", "http://"):
        if host.startswith(prefix):
            host = host[len(prefix):]
    return host.rstrip("/")


def format_description(analysis: ClusterAnalysisRecord) -> str:
    return f"""*Cluster Analysis Report*

*Summary:* {analysis.cluster_summary}

*Details:*
- Cluster Size: {analysis.cluster_size} insights
- Negative Sentiment: {analysis.sentiment_percentage:.1f}%
- Impact Level: {analysis.impact or "Not analyzed"}
- Urgency: {analysis.urgency or "Not analyzed"}

*AI Recommendation:*
{analysis.recommendation or "No recommendation available"}

*Form ID:* {analysis.form_id}
*Organization:* {analysis.organization}
*Analysis Date:* {analysis.created_at.isoformat()}"""


class JiraIssueTracker:
    """Create Jira issues through the REST API (v2) using each organization's credentials."""

    def __init__(self, timeout: int = 30):
        self.timeout = timeout

    def build_issue(self, analysis: ClusterAnalysisRecord, organization: OrganizationPolicy) -> dict:
        jira = organization.jira_config
        issue = {
            "fields": {
                "project": {"key": jira.project_key},
                "summary": f"User Feedback Cluster: {analysis.cluster_label}",
                "description": format_description(analysis),
                "issuetype": {"name": jira.issue_type or "Task"},
                "labels": [
                    "user-feedback",
                    "ai-recommendation",
                    f"sentiment-{round(analysis.sentiment_percentage)}pct",
                    f"impact-{analysis.impact or 'unknown'}",
                    f"urgency-{analysis.urgency or 'unknown'}",
                ],
            }
        }
        if analysis.impact and jira.supports_priority:
            issue["fields"]["priority"] = {"name": IMPACT_PRIORITIES.get(analysis.impact, "Medium")}
        return issue

    def create_ticket(self, analysis: ClusterAnalysisRecord, organization: OrganizationPolicy) -> Optional[Dict[str, str]]:
        """
        Create a Jira issue for a cluster analysis.

        Returns:
            {"ticket_id", "ticket_url"} on success, None when Jira is not configured or the call fails
        """
        jira = organization.jira_config
        if not jira.is_configured:
            logger.warning(f"Cannot create Jira ticket - Jira not configured for organization {organization.identifier}")
            return None
        if not jira.project_key:
            logger.error(f"Cannot create Jira ticket - project key not configured for organization {organization.identifier}")
            return None

        host = clean_host(jira.host)
        url = f"https://{host}/rest/api/2/issue"
        auth = (jira.username, jira.api_token)
        issue = self.build_issue(analysis, organization)

        try:
            r = requests.post(url, json=issue, auth=auth, timeout=self.timeout)
            if r.status_code == 400 and "priority" in r.text and "priority" in issue["fields"]:
                logger.warning(
                    f"Priority field not available in Jira project {jira.project_key}, retrying without priority"
                )
                del issue["fields"]["priority"]
                r = requests.post(url, json=issue, auth=auth, timeout=self.timeout)

            if r.status_code >= 300:
                logger.error(
                    f"Failed to create Jira ticket for cluster '{analysis.cluster_label}' "
                    f"(form {analysis.form_id}): {r.status_code} {r.text[:200]}"
                )
                return None

            key = r.json()["key"]
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.error(f"Failed to create Jira ticket for cluster '{analysis.cluster_label}' (form {analysis.form_id}): {e}")
            return None

        logger.info(f"Jira ticket {key} created for cluster '{analysis.cluster_label}' (form {analysis.form_id})")
        return {"ticket_id": key, "ticket_url": f"https://{host}/browse/{key}"}
