"""Unit tests for the email and issue tracker clients."""
import pytest
import requests
from unittest.mock import Mock, patch

from conftest import make_analysis
from src.integrations.email_client import PostmarkEmailClient, build_cluster_email
from src.integrations.issue_tracker import JiraIssueTracker, clean_host, format_description
from src.models.errors import NotificationError
from src.models.schemas import JiraConfig, OrganizationPolicy

CLUSTER_DATA = {
    "organization_name": "Acme Inc",
    "cluster_label": "login, crash",
    "cluster_summary": "Users cannot log in",
    "cluster_size": 5,
    "recommendation": "Fix the session refresh",
    "impact": "high",
    "urgency": "immediate",
    "jira_ticket": None,
}


def response(status_code, json_body=None, text=""):
    r = Mock()
    r.status_code = status_code
    r.text = text
    r.json.return_value = json_body or {}
    return r


class TestBuildClusterEmail:
    """Test notification email content."""

    def test_subject(self):
        message = build_cluster_email(CLUSTER_DATA, 80.0)
        assert message["subject"] == "High Sentiment Alert: login, crash (80.0% negative)"

    def test_body(self):
        message = build_cluster_email(CLUSTER_DATA, 80.0)
        assert "Acme Inc" in message["text"]
        assert "Fix the session refresh" in message["text"]
        assert message["html"].startswith("<html>")

    def test_ticket_line(self):
        data = dict(CLUSTER_DATA, jira_ticket={"ticket_id": "FB-1", "ticket_url": "https://x/browse/FB-1", "status": "Open"})
        assert "FB-1 (Open)" in build_cluster_email(data, 75.0)["text"]

    def test_html_body_is_escaped(self):
        data = dict(CLUSTER_DATA, cluster_label="<script>alert(1)</script>", recommendation="Use a & b")

        message = build_cluster_email(data, 80.0)

        assert "<script>" not in message["html"]
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in message["html"]
        assert "Use a &amp; b" in message["html"]
        assert "<script>alert(1)</script>" in message["text"]


class TestPostmarkEmailClient:
    """Test PostmarkEmailClient.send."""

    @patch('src.integrations.email_client.requests.post')
    def test_send(self, mock_post, mock_config):
        mock_post.return_value = response(200)
        client = PostmarkEmailClient(mock_config)

        assert client.send("alerts@acme.test", CLUSTER_DATA, 80.0) is True

        kwargs = mock_post.call_args.kwargs
        assert kwargs["json"]["To"] == "alerts@acme.test"
        assert kwargs["json"]["From"] == "notifications@luaplatform.com"
        assert kwargs["json"]["Subject"] == "High Sentiment Alert: login, crash (80.0% negative)"
        assert kwargs["headers"]["X-Postmark-Server-Token"] == "postmark-token"

    @patch('src.integrations.email_client.requests.post')
    def test_without_token(self, mock_post, mock_config):
        mock_config.postmark_api_token = None
        client = PostmarkEmailClient(mock_config)

        assert client.send("alerts@acme.test", CLUSTER_DATA, 80.0) is False
        mock_post.assert_not_called()

    @patch('src.integrations.email_client.requests.post')
    def test_without_address(self, mock_post, mock_config):
        client = PostmarkEmailClient(mock_config)

        assert client.send("", CLUSTER_DATA, 80.0) is False
        mock_post.assert_not_called()

    @patch('src.integrations.email_client.requests.post')
    def test_rejected(self, mock_post, mock_config):
        mock_post.return_value = response(422, text="Invalid 'To' address")
        client = PostmarkEmailClient(mock_config)

        with pytest.raises(NotificationError, match="422"):
            client.send("not-an-address", CLUSTER_DATA, 80.0)

    @patch('src.integrations.email_client.requests.post')
    def test_unreachable(self, mock_post, mock_config):
        mock_post.side_effect = requests.ConnectionError("connection refused")
        client = PostmarkEmailClient(mock_config)

        with pytest.raises(NotificationError):
            client.send("alerts@acme.test", CLUSTER_DATA, 80.0)


class TestJiraIssueTracker:
    """Test JiraIssueTracker.create_ticket."""

    def test_clean_host(self):
        assert clean_host("https://acme.atlassian.net/") == "acme.atlassian.net"
        assert clean_host("acme.atlassian.net") == "acme.atlassian.net"

    def test_description(self):
        description = format_description(make_analysis(sentiment_percentage=80.0))
        assert "Negative Sentiment: 80.0%" in description
        assert "Impact Level: high" in description

    def test_issue_fields(self, organization):
        issue = JiraIssueTracker().build_issue(make_analysis(sentiment_percentage=80.0), organization)

        fields = issue["fields"]
        assert fields["project"] == {"key": "FB"}
        assert fields["summary"] == "User Feedback Cluster: login, crash"
        assert fields["issuetype"] == {"name": "Task"}
        assert fields["priority"] == {"name": "High"}
        assert "sentiment-80pct" in fields["labels"]
        assert "impact-high" in fields["labels"]

    def test_no_priority_when_unsupported(self, organization):
        organization.jira_config.supports_priority = False

        issue = JiraIssueTracker().build_issue(make_analysis(), organization)

        assert "priority" not in issue["fields"]

    @patch('src.integrations.issue_tracker.requests.post')
    def test_create_ticket(self, mock_post, organization):
        mock_post.return_value = response(201, {"key": "FB-42"})

        ticket = JiraIssueTracker().create_ticket(make_analysis(), organization)

        assert ticket == {"ticket_id": "FB-42", "ticket_url": "https://acme.atlassian.net/browse/FB-42"}
        args, kwargs = mock_post.call_args
        assert args[0] == "https://acme.atlassian.net/rest/api/2/issue"
        assert kwargs["auth"] == ("bot@acme.test", "jira-token")

    @patch('src.integrations.issue_tracker.requests.post')
    def test_retries_without_priority(self, mock_post, organization):
        mock_post.side_effect = [
            response(400, text='{"errors":{"priority":"Field \'priority\' cannot be set."}}'),
            response(201, {"key": "FB-43"}),
        ]

        ticket = JiraIssueTracker().create_ticket(make_analysis(), organization)

        assert ticket["ticket_id"] == "FB-43"
        assert mock_post.call_count == 2
        assert "priority" not in mock_post.call_args.kwargs["json"]["fields"]

    @patch('src.integrations.issue_tracker.requests.post')
    def test_server_error(self, mock_post, organization):
        mock_post.return_value = response(500, text="Internal Server Error")

        assert JiraIssueTracker().create_ticket(make_analysis(), organization) is None

    @patch('src.integrations.issue_tracker.requests.post')
    def test_request_exception(self, mock_post, organization):
        mock_post.side_effect = requests.Timeout("timed out")

        assert JiraIssueTracker().create_ticket(make_analysis(), organization) is None

    @patch('src.integrations.issue_tracker.requests.post')
    def test_not_configured(self, mock_post):
        organization = OrganizationPolicy(identifier="acme", jira_config=JiraConfig(enabled=False))

        assert JiraIssueTracker().create_ticket(make_analysis(), organization) is None
        mock_post.assert_not_called()

    @patch('src.integrations.issue_tracker.requests.post')
    def test_missing_project_key(self, mock_post, organization):
        organization.jira_config.project_key = None

        assert JiraIssueTracker().create_ticket(make_analysis(), organization) is None
        mock_post.assert_not_called()
