"""Notification channel implementations."""

from prnudge.notifications.base import (
    BaseNotifier,
    NotificationResult,
    build_nudge_message,
    pull_request_url,
)
from prnudge.notifications.github import GitHubCommentNotifier
from prnudge.notifications.slack import SlackAPIError, SlackClient, SlackNotifier

__all__ = [
    "BaseNotifier",
    "NotificationResult",
    "build_nudge_message",
    "pull_request_url",
    "GitHubCommentNotifier",
    "SlackAPIError",
    "SlackClient",
    "SlackNotifier",
]
