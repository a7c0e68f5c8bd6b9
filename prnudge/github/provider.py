"""GitHub provider - pull request details, branch protection and comments."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime

from github import Auth, Github, GithubException

from prnudge.github.rate_limiter import GitHubRateLimiter
from prnudge.utils import ensure_utc, utcnow

logger = logging.getLogger("prnudge.github.provider")


class ProviderError(Exception):
    """Raised when the GitHub API cannot be reached or refuses a request."""


class BranchNotProtected(ProviderError):
    """Raised when the requested branch has no protection rules."""


@dataclass
class PRDetails:
    """Live pull request details fetched from GitHub."""

    number: int
    author: str
    base_ref: str
    requested_reviewers: list[str] = field(default_factory=list)


@dataclass
class OpenPullRequest:
    """An open pull request as listed for a repository."""

    pr_id: int
    number: int
    author: str
    author_type: str
    created_at: datetime
    updated_at: datetime
    requested_reviewers: list[str] = field(default_factory=list)

    @property
    def is_bot(self) -> bool:
        return self.author_type.lower() == "bot"


@dataclass
class Protection:
    """Branch protection rules relevant to review requirements."""

    # None when the branch is protected but has no pull-request-review rule
    required_approving_review_count: int | None = None


class GitHubProvider:
    """Typed access to the GitHub REST API as an App installation."""

    def __init__(
        self,
        app_id: str,
        private_key: str,
        rate_limiter: GitHubRateLimiter | None = None,
        timeout: float = 5.0,
    ):
        """Initialize provider.

        Args:
            app_id: GitHub App ID.
            private_key: GitHub App private key (PEM).
            rate_limiter: Shared rate limiter instance.
            timeout: Per-request HTTP timeout in seconds.
        """
        self._app_auth = Auth.AppAuth(app_id, private_key)
        self._rate_limiter = rate_limiter or GitHubRateLimiter()
        self.timeout = timeout
        self._clients: dict[int, Github] = {}
        self._lock = threading.Lock()

    def _client(self, installation_id: int) -> Github:
        """Get (or create) the client for an installation.

        Installation tokens are minted and refreshed lazily by PyGithub on the
        first request made through the client.
        """
        with self._lock:
            client = self._clients.get(installation_id)
            if client is None:
                auth = self._app_auth.get_installation_auth(installation_id)
                client = Github(auth=auth, timeout=int(self.timeout))
                self._clients[installation_id] = client
            return client

    def get_pull_request(
        self, number: int, owner: str, repo: str, installation_id: int
    ) -> PRDetails:
        """Fetch live pull request details.

        Raises:
            ProviderError: On token exchange or API failure.
        """
        client = self._client(installation_id)
        self._rate_limiter.throttle(client)
        try:
            pull = client.get_repo(f"{owner}/{repo}", lazy=True).get_pull(number)
            return PRDetails(
                number=pull.number,
                author=pull.user.login,
                base_ref=pull.base.ref,
                requested_reviewers=[user.login for user in pull.requested_reviewers],
            )
        except (GithubException, OSError) as e:
            raise ProviderError(f"Failed to fetch PR {owner}/{repo}#{number}: {e}") from e

    def list_open_pull_requests(
        self, owner: str, repo: str, installation_id: int
    ) -> list[OpenPullRequest]:
        """List every open pull request of a repository.

        Raises:
            ProviderError: On token exchange or API failure.
        """
        client = self._client(installation_id)
        self._rate_limiter.throttle(client)
        try:
            pulls = client.get_repo(f"{owner}/{repo}", lazy=True).get_pulls(state="open")
            return [
                OpenPullRequest(
                    pr_id=pull.id,
                    number=pull.number,
                    author=pull.user.login if pull.user else "",
                    author_type=(pull.user.type or "") if pull.user else "",
                    created_at=ensure_utc(pull.created_at) or utcnow(),
                    updated_at=ensure_utc(pull.updated_at) or utcnow(),
                    requested_reviewers=[user.login for user in pull.requested_reviewers],
                )
                for pull in pulls
            ]
        except (GithubException, OSError) as e:
            raise ProviderError(f"Failed to list open PRs of {owner}/{repo}: {e}") from e

    def get_branch_protection(
        self, repo: str, branch: str, owner: str, installation_id: int
    ) -> Protection:
        """Fetch protection rules for a branch.

        Raises:
            BranchNotProtected: If the branch has no protection.
            ProviderError: On token exchange or API failure.
        """
        client = self._client(installation_id)
        self._rate_limiter.throttle(client)
        try:
            protection = (
                client.get_repo(f"{owner}/{repo}", lazy=True)
                .get_branch(branch)
                .get_protection()
            )
        except GithubException as e:
            if e.status == 404 and "not protected" in str(e.data).lower():
                raise BranchNotProtected(f"{owner}/{repo}@{branch} is not protected") from e
            raise ProviderError(
                f"Failed to fetch protection for {owner}/{repo}@{branch}: {e}"
            ) from e
        except OSError as e:
            raise ProviderError(
                f"Failed to fetch protection for {owner}/{repo}@{branch}: {e}"
            ) from e

        reviews = protection.required_pull_request_reviews
        if reviews is None:
            return Protection()
        return Protection(required_approving_review_count=reviews.required_approving_review_count)

    def post_comment(
        self, repo: str, owner: str, number: int, text: str, installation_id: int
    ) -> None:
        """Post a comment on a pull request's conversation.

        Raises:
            ProviderError: On token exchange or API failure.
        """
        client = self._client(installation_id)
        self._rate_limiter.throttle(client)
        try:
            client.get_repo(f"{owner}/{repo}", lazy=True).get_issue(number).create_comment(text)
        except (GithubException, OSError) as e:
            raise ProviderError(
                f"Failed to comment on {owner}/{repo}#{number}: {e}"
            ) from e
        logger.debug(f"Posted comment on {owner}/{repo}#{number}")

    def evict(self, installation_id: int) -> None:
        """Drop and close the cached client of an installation, if any."""
        with self._lock:
            client = self._clients.pop(installation_id, None)
        if client is not None:
            client.close()
            logger.debug(f"Evicted client for installation {installation_id}")

    def close(self) -> None:
        """Close all installation clients."""
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()
