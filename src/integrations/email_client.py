"""
Cluster notification emails.
"""

from typing import Any, Dict, Protocol
import html
import logging

import requests

from src.config.settings import Settings
from src.models.errors import NotificationError

logger = logging.getLogger(__name__)

POSTMARK_URL = "https://api.postmarkapp.com/email"


class EmailClient(Protocol):
    def send(self, to_address: str, cluster_data: Dict[str, Any], sentiment_percentage: float) -> bool:
        ...


def build_cluster_email(cluster_data: Dict[str, Any], sentiment_percentage: float) -> Dict[str, str]:
    """Subject, plain text and HTML body for a negative-sentiment cluster alert."""
    label = cluster_data.get("cluster_label", "Unlabelled cluster")
    organization_name = cluster_data.get("organization_name") or "your organization"

    subject = f"High Sentiment Alert: {label} ({sentiment_percentage:.1f}% negative)"

    lines = [
        f"A feedback cluster for {organization_name} crossed the negative sentiment threshold.",
        "",
        f"Cluster: {label}",
        f"Summary: {cluster_data.get('cluster_summary') or 'n/a'}",
        f"Cluster size: {cluster_data.get('cluster_size', 0)} insights",
        f"Negative sentiment: {sentiment_percentage:.1f}%",
        f"Impact: {cluster_data.get('impact') or 'Not analyzed'}",
        f"Urgency: {cluster_data.get('urgency') or 'Not analyzed'}",
        "",
        f"Recommendation: {cluster_data.get('recommendation') or 'No recommendation available'}",
    ]
    ticket = cluster_data.get("jira_ticket")
    if ticket:
        lines.append(f"Ticket: {ticket.get('ticket_id')} ({ticket.get('status')}) {ticket.get('ticket_url')}")

    text = "\n".join(lines)
    body = "<br>".join(html.escape(line) if line else "&nbsp;" for line in lines)
    return {"subject": subject, "text": text, "html": f"<html><body>{body}</body></html>"}


class PostmarkEmailClient:
    """Send cluster notifications through the Postmark HTTP API."""

    def __init__(self, config: Settings, timeout: int = 30):
        self.token = (config.postmark_api_token or "").strip()
        self.from_email = config.postmark_from_email
        self.timeout = timeout

    def send(self, to_address: str, cluster_data: Dict[str, Any], sentiment_percentage: float) -> bool:
        """
        Send one cluster notification.

        Returns:
            True when Postmark accepted the message, False when email is not configured

        Raises:
            NotificationError: If Postmark rejects the message or cannot be reached
        """
        if not self.token:
            logger.warning("Postmark API token not configured, skipping email notification")
            return False

        if not to_address:
            logger.warning(f"Organization email not configured, skipping notification for cluster '{cluster_data.get('cluster_label')}'")
            return False

        message = build_cluster_email(cluster_data, sentiment_percentage)
        payload = {
            "From": self.from_email,
            "To": to_address,
            "Subject": message["subject"],
            "TextBody": message["text"],
            "HtmlBody": message["html"],
            "MessageStream": "outbound",
        }
        headers = {
            "X-Postmark-Server-Token": self.token,
            "Content-Type": "application/json",
        }

        try:
            r = requests.post(POSTMARK_URL, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotificationError(f"Postmark request failed: {e}") from e

        if r.status_code >= 300:
            raise NotificationError(f"Postmark send failed ({r.status_code}): {r.text}")
        return True
