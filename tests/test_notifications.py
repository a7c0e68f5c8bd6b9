"""Tests for notification channels."""

from unittest.mock import Mock, patch

import httpx
import pytest

from prnudge.github.provider import ProviderError
from prnudge.github.rate_limiter import RateLimitExhausted
from prnudge.models import ActorDetails, PullRequest, Repository
from prnudge.notifications import (
    GitHubCommentNotifier,
    SlackAPIError,
    SlackClient,
    SlackNotifier,
    build_nudge_message,
)
from prnudge.notifications.base import pull_request_url

REPO = Repository(repo_id=100, installation_id=5, owner="acme", name="api")
PR = PullRequest(pr_id=1, number=7, repo_id=100)
REVIEWER = ActorDetails(is_reviewer=True, identity="r1")
AUTHOR = ActorDetails(is_reviewer=False, identity="alice")


def _ok_response(body=None):
    response = Mock(status_code=200)
    response.raise_for_status = Mock()
    response.json.return_value = body if body is not None else {"ok": True}
    return response


class TestNudgeMessage:
    """Tests for the nudge message text."""

    def test_reviewer_message(self):
        assert build_nudge_message(REVIEWER) == (
            "Hello @r1. The PR is blocked on your approval. Please review it ASAP."
        )

    def test_author_message(self):
        assert build_nudge_message(AUTHOR) == (
            "Hello @alice. The PR is blocked on your changes. Please complete it ASAP."
        )

    def test_pull_request_url(self):
        assert pull_request_url(REPO, PR) == "https://github.com/acme/api/pull/7"


class TestGitHubCommentNotifier:
    """Tests for GitHubCommentNotifier."""

    def test_is_configured(self):
        assert GitHubCommentNotifier(Mock()).is_configured() is True
        assert GitHubCommentNotifier(None).is_configured() is False

    def test_channel_name(self):
        assert GitHubCommentNotifier(Mock()).channel_name == "GitHub"

    def test_send_nudge_posts_comment(self):
        """Test the nudge is posted on the PR with the installation's token."""
        provider = Mock()
        result = GitHubCommentNotifier(provider).send_nudge(REPO, PR, REVIEWER)

        assert result.success is True
        provider.post_comment.assert_called_once_with(
            "api", "acme", 7, build_nudge_message(REVIEWER), 5
        )

    def test_provider_error_is_reported(self):
        """Test API failures become a failed result."""
        provider = Mock()
        provider.post_comment.side_effect = ProviderError("403")

        result = GitHubCommentNotifier(provider).send_nudge(REPO, PR, AUTHOR)

        assert result.success is False
        assert "acme/api#7" in result.error

    def test_rate_limit_is_reported(self):
        provider = Mock()
        provider.post_comment.side_effect = RateLimitExhausted(60)

        result = GitHubCommentNotifier(provider).send_nudge(REPO, PR, AUTHOR)
        assert result.success is False

    def test_unconfigured(self):
        result = GitHubCommentNotifier(None).send_nudge(REPO, PR, AUTHOR)
        assert result.success is False


class TestSlackClient:
    """Tests for SlackClient."""

    @patch.object(httpx.Client, "post")
    def test_post_message(self, mock_post):
        """Test the message is posted with bearer auth."""
        mock_post.return_value = _ok_response()
        client = SlackClient()

        client.post_message("C123", "xoxb-token", "hello")

        _, kwargs = mock_post.call_args
        assert kwargs["json"] == {"channel": "C123", "text": "hello"}
        assert kwargs["headers"]["Authorization"] == "Bearer xoxb-token"
        client.close()

    @patch.object(httpx.Client, "post")
    def test_ok_false_raises(self, mock_post):
        """Test Slack's ok=false body is surfaced as SlackAPIError."""
        mock_post.return_value = _ok_response({"ok": False, "error": "channel_not_found"})
        client = SlackClient()

        with pytest.raises(SlackAPIError, match="channel_not_found"):
            client.post_message("C123", "xoxb-token", "hello")
        assert mock_post.call_count == 1

    @patch("time.sleep")
    @patch.object(httpx.Client, "post")
    def test_client_error_not_retried(self, mock_post, mock_sleep):
        """Test a 4xx response fails fast."""
        mock_post.return_value = Mock(status_code=401, text="invalid_auth")
        client = SlackClient()

        with pytest.raises(ValueError):
            client.post_message("C123", "bad", "hello")
        assert mock_post.call_count == 1
        mock_sleep.assert_not_called()

    @patch("time.sleep")
    @patch.object(httpx.Client, "post")
    def test_retries_on_server_error(self, mock_post, mock_sleep):
        """Test 5xx responses are retried."""
        error_response = Mock(status_code=500)
        error_response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "Server Error", request=Mock(), response=error_response
        )
        mock_post.side_effect = [error_response, _ok_response()]
        client = SlackClient()

        client.post_message("C123", "xoxb-token", "hello")

        assert mock_post.call_count == 2
        assert mock_sleep.call_count == 1

    @patch("time.sleep")
    @patch.object(httpx.Client, "post")
    def test_retries_on_request_error(self, mock_post, mock_sleep):
        mock_post.side_effect = [
            httpx.RequestError("Connection refused", request=Mock()),
            _ok_response(),
        ]
        SlackClient().post_message("C123", "xoxb-token", "hello")
        assert mock_post.call_count == 2


class TestSlackNotifier:
    """Tests for SlackNotifier."""

    def test_send_nudge(self):
        """Test the recipient channel and PR link are used."""
        store = Mock()
        store.find_chat_recipient.return_value = ("U42", "xoxb-token")
        client = Mock()

        result = SlackNotifier(store, client).send_nudge(REPO, PR, REVIEWER)

        assert result.success is True
        store.find_chat_recipient.assert_called_once_with(5, "r1")
        channel, token, text = client.post_message.call_args.args
        assert (channel, token) == ("U42", "xoxb-token")
        assert text.startswith("Hello @r1.")
        assert text.endswith("https://github.com/acme/api/pull/7")

    def test_no_recipient(self):
        """Test installations without chat setup are skipped."""
        store = Mock()
        store.find_chat_recipient.return_value = None
        client = Mock()

        result = SlackNotifier(store, client).send_nudge(REPO, PR, AUTHOR)

        assert result.success is False
        client.post_message.assert_not_called()

    def test_lookup_failure(self):
        store = Mock()
        store.find_chat_recipient.side_effect = Exception("db locked")

        result = SlackNotifier(store, Mock()).send_nudge(REPO, PR, AUTHOR)
        assert result.success is False
        assert "lookup failed" in result.error

    def test_api_error_reported(self):
        """Test Slack rejections become a failed result."""
        store = Mock()
        store.find_chat_recipient.return_value = ("C1", "tok")
        client = Mock()
        client.post_message.side_effect = SlackAPIError("not_in_channel")

        result = SlackNotifier(store, client).send_nudge(REPO, PR, AUTHOR)

        assert result.success is False
        assert "not_in_channel" in result.error

    def test_http_error_reported(self):
        store = Mock()
        store.find_chat_recipient.return_value = ("C1", "tok")
        client = Mock()
        client.post_message.side_effect = httpx.RequestError("timeout", request=Mock())

        result = SlackNotifier(store, client).send_nudge(REPO, PR, AUTHOR)
        assert result.success is False

    def test_context_manager_closes_client(self):
        client = Mock()
        with SlackNotifier(Mock(), client) as notifier:
            assert notifier.channel_name == "Slack"
        client.close.assert_called_once()
