"""Base notification interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from prnudge.models import ActorDetails, PullRequest, Repository


@dataclass
class NotificationResult:
    """Result of sending a notification."""

    success: bool
    error: str | None = None


def build_nudge_message(actor: ActorDetails) -> str:
    """Build the nudge text addressed to a blocking actor.

    Args:
        actor: Actor blocking the pull request.

    Returns:
        Message text.
    """
    if actor.is_reviewer:
        return f"Hello @{actor.identity}. The PR is blocked on your approval. Please review it ASAP."
    return f"Hello @{actor.identity}. The PR is blocked on your changes. Please complete it ASAP."


def pull_request_url(repo: Repository, pr: PullRequest) -> str:
    return f"https://github.com/{repo.owner}/{repo.name}/pull/{pr.number}"


class BaseNotifier(ABC):
    """Abstract base class for notification channels."""

    @abstractmethod
    def send_nudge(self, repo: Repository, pr: PullRequest, actor: ActorDetails) -> NotificationResult:
        """Nudge the actor blocking a pull request.

        Delivery problems are reported through the result, never raised.

        Args:
            repo: Repository the pull request belongs to.
            pr: Stale pull request.
            actor: Actor to nudge.

        Returns:
            NotificationResult with success status.
        """
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the notifier is properly configured.

        Returns:
            True if configured and ready to send.
        """
        pass

    @property
    @abstractmethod
    def channel_name(self) -> str:
        """Get the name of this notification channel.

        Returns:
            Human-readable channel name.
        """
        pass

    def close(self) -> None:
        """Release resources held by the notifier."""
