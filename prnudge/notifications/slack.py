"""Slack chat notification client."""

import logging

import httpx

from prnudge.models import ActorDetails, PullRequest, Repository
from prnudge.notifications.base import (
    BaseNotifier,
    NotificationResult,
    build_nudge_message,
    pull_request_url,
)
from prnudge.utils import retry

logger = logging.getLogger("prnudge.notifications.slack")

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"


class SlackAPIError(Exception):
    """Raised when Slack answers with ok=false."""


class SlackClient:
    """Minimal Slack Web API client for chat.postMessage."""

    def __init__(self, timeout: float = 5.0, base_url: str = SLACK_POST_MESSAGE_URL):
        """Initialize Slack client.

        Args:
            timeout: HTTP timeout in seconds.
            base_url: chat.postMessage endpoint.
        """
        self.url = base_url
        self._client = httpx.Client(timeout=timeout)

    @retry(max_attempts=3, delay=1.0, backoff=2.0,
           exceptions=(httpx.HTTPStatusError, httpx.RequestError))
    def post_message(self, channel: str, access_token: str, text: str) -> None:
        """Post a message to a channel or user.

        Raises:
            SlackAPIError: If Slack rejects the message.
            ValueError: On a non-retryable 4xx response.
            httpx.HTTPError: If the request keeps failing.
        """
        response = self._client.post(
            self.url,
            json={"channel": channel, "text": text},
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
        )
        # Fail fast on non-retryable 4xx (bad token, malformed payload, etc.)
        if 400 <= response.status_code < 500 and response.status_code != 429:
            raise ValueError(f"Slack HTTP {response.status_code}: {response.text[:200]}")
        response.raise_for_status()  # 429/5xx retried by decorator

        body = response.json()
        if not body.get("ok", False):
            raise SlackAPIError(body.get("error", "unknown_error"))

    def close(self) -> None:
        """Close the HTTP client."""
        if hasattr(self, "_client"):
            self._client.close()


class SlackNotifier(BaseNotifier):
    """Sends the nudge as a Slack message to the actor's mapped chat user."""

    def __init__(self, store, client: SlackClient):
        """Initialize Slack notifier.

        Args:
            store: Storage exposing find_chat_recipient(installation_id, login).
            client: Slack API client.
        """
        self.store = store
        self.client = client

    def send_nudge(self, repo: Repository, pr: PullRequest, actor: ActorDetails) -> NotificationResult:
        """Message the actor on Slack, linking the pull request."""
        try:
            recipient = self.store.find_chat_recipient(repo.installation_id, actor.identity)
        except Exception as e:
            error = f"Slack recipient lookup failed for @{actor.identity}: {e}"
            logger.error(error)
            return NotificationResult(success=False, error=error)

        if recipient is None:
            logger.debug(
                f"Slack not set up for installation {repo.installation_id}, skipping @{actor.identity}"
            )
            return NotificationResult(success=False, error="Slack not configured for installation")

        channel, access_token = recipient
        text = f"{build_nudge_message(actor)} {pull_request_url(repo, pr)}"

        try:
            self.client.post_message(channel, access_token, text)
        except httpx.HTTPStatusError as e:
            error = f"Slack HTTP error: {e.response.status_code}"
            logger.error(error)
            return NotificationResult(success=False, error=error)
        except httpx.RequestError as e:
            error = f"Slack request error: {e}"
            logger.error(error)
            return NotificationResult(success=False, error=error)
        except (SlackAPIError, ValueError) as e:
            error = f"Slack rejected message: {e}"
            logger.error(error)
            return NotificationResult(success=False, error=error)

        logger.info(f"Sent Slack nudge for {repo.full_name}#{pr.number} to {channel}")
        return NotificationResult(success=True)

    def is_configured(self) -> bool:
        return self.client is not None

    @property
    def channel_name(self) -> str:
        """Get channel name."""
        return "Slack"

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
