"""GitHub pull request comment notifier."""

import logging

from prnudge.github.provider import GitHubProvider, ProviderError
from prnudge.github.rate_limiter import RateLimitExhausted
from prnudge.models import ActorDetails, PullRequest, Repository
from prnudge.notifications.base import BaseNotifier, NotificationResult, build_nudge_message

logger = logging.getLogger("prnudge.notifications.github")


class GitHubCommentNotifier(BaseNotifier):
    """Posts the nudge as a comment on the pull request."""

    def __init__(self, provider: GitHubProvider | None):
        """Initialize GitHub comment notifier.

        Args:
            provider: GitHub provider used to post comments.
        """
        self.provider = provider

    def send_nudge(self, repo: Repository, pr: PullRequest, actor: ActorDetails) -> NotificationResult:
        """Comment on the pull request, mentioning the blocking actor."""
        if not self.is_configured():
            return NotificationResult(success=False, error="GitHub provider not configured")

        try:
            self.provider.post_comment(
                repo.name,
                repo.owner,
                pr.number,
                build_nudge_message(actor),
                repo.installation_id,
            )
        except (ProviderError, RateLimitExhausted) as e:
            error = f"GitHub comment failed on {repo.full_name}#{pr.number}: {e}"
            logger.error(error)
            return NotificationResult(success=False, error=error)

        logger.info(f"Commented on {repo.full_name}#{pr.number} for @{actor.identity}")
        return NotificationResult(success=True)

    def is_configured(self) -> bool:
        return self.provider is not None

    @property
    def channel_name(self) -> str:
        """Get channel name."""
        return "GitHub"
