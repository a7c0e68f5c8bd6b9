"""GitHub webhook events: typed decoding and storage updates.

Each supported (event, action) pair has one decoder turning the raw payload
into a frozen event value, and EventApplier has one handler per event type
writing it to storage. Unsupported pairs decode to None.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import singledispatchmethod
from typing import Callable

from prnudge import log_target
from prnudge.database.store import NotFoundError, NudgeStore
from prnudge.estimator import LifetimeEstimator
from prnudge.github.provider import GitHubProvider, ProviderError
from prnudge.github.rate_limiter import RateLimitExhausted
from prnudge.models import (
    PR_STATUS_CLOSED,
    PR_STATUS_OPEN,
    PRActivityUpdate,
    PRStatusUpdate,
    PullRequest,
    Repository,
    Review,
)
from prnudge.utils import ensure_utc, utcnow

logger = logging.getLogger("prnudge.events")

# Activity categories recorded on the pull request
CATEGORY_PULL = "pull"
CATEGORY_COMMENT = "comment"
CATEGORY_REVIEW_REQUEST = "review_request"
CATEGORY_REVIEW_THREAD = "review_thread"


class MalformedPayload(ValueError):
    """Raised when a supported event's payload is missing required fields."""


@dataclass(frozen=True)
class WebhookEvent:
    """Base class of all decoded webhook events."""


@dataclass(frozen=True)
class PullRequestOpened(WebhookEvent):
    pr_id: int
    number: int
    repo_id: int
    author: str
    created_at: datetime
    updated_at: datetime
    requested_reviewers: tuple[str, ...] = ()


@dataclass(frozen=True)
class PullRequestReopened(PullRequestOpened):
    pass


@dataclass(frozen=True)
class PullRequestClosed(WebhookEvent):
    pr_id: int


@dataclass(frozen=True)
class PullRequestSynchronized(WebhookEvent):
    """New commits pushed to the pull request branch."""

    pr_id: int
    at: datetime


@dataclass(frozen=True)
class ReviewRequested(WebhookEvent):
    pr_id: int
    reviewer: str
    at: datetime


@dataclass(frozen=True)
class ReviewRequestRemoved(WebhookEvent):
    pr_id: int
    reviewer: str
    at: datetime


@dataclass(frozen=True)
class ReviewSubmitted(WebhookEvent):
    pr_id: int
    review_id: int
    reviewer: str
    state: str
    submitted_at: datetime


@dataclass(frozen=True)
class ReviewDismissed(WebhookEvent):
    pr_id: int
    review_id: int
    at: datetime


@dataclass(frozen=True)
class ReviewThreadResolved(WebhookEvent):
    pr_id: int
    review_id: int
    at: datetime


@dataclass(frozen=True)
class CommentCreated(WebhookEvent):
    """A conversation or review comment on a pull request."""

    repo_id: int
    number: int
    author: str
    at: datetime


@dataclass(frozen=True)
class InstallationCreated(WebhookEvent):
    installation_id: int
    account_login: str
    repositories: tuple[Repository, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class InstallationDeleted(WebhookEvent):
    installation_id: int


@dataclass(frozen=True)
class RepositoriesAdded(WebhookEvent):
    installation_id: int
    repositories: tuple[Repository, ...]


@dataclass(frozen=True)
class RepositoriesRemoved(WebhookEvent):
    installation_id: int
    repo_ids: tuple[int, ...]


Decoder = Callable[[dict], WebhookEvent | None]

_DECODERS: dict[tuple[str, str], Decoder] = {}


def _decoder(event: str, *actions: str) -> Callable[[Decoder], Decoder]:
    def register(func: Decoder) -> Decoder:
        for action in actions:
            _DECODERS[(event, action)] = func
        return func
    return register


def supported_events() -> list[tuple[str, str]]:
    """Get the (event, action) pairs that have a decoder."""
    return sorted(_DECODERS)


def decode_event(event: str, payload: dict) -> WebhookEvent | None:
    """Decode a webhook payload into a typed event.

    Args:
        event: Value of the X-GitHub-Event header.
        payload: Parsed JSON body.

    Returns:
        The decoded event, or None if the event is not handled.

    Raises:
        MalformedPayload: If a handled event lacks required fields.
    """
    action = payload.get("action", "") if isinstance(payload, dict) else ""
    decoder = _DECODERS.get((event, action))
    if decoder is None:
        return None
    try:
        return decoder(payload)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedPayload(f"Malformed {event}.{action} payload: {e!r}") from e


def _parse_time(value: str | None) -> datetime:
    """Parse a GitHub ISO 8601 timestamp; missing values mean now."""
    if not value:
        return utcnow()
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def _repositories(entries: list[dict] | None, installation: dict) -> tuple[Repository, ...]:
    """Build Repositories from the repository entries of an installation payload."""
    installation_id = int(installation["id"])
    login = (installation.get("account") or {}).get("login", "")
    repos = []
    for entry in entries or []:
        owner, _, name = (entry.get("full_name") or "").partition("/")
        repos.append(
            Repository(
                repo_id=int(entry["id"]),
                installation_id=installation_id,
                owner=owner if name else login,
                name=name or entry["name"],
            )
        )
    return tuple(repos)


@_decoder("pull_request", "opened", "reopened")
def _decode_pull_request_opened(payload: dict) -> WebhookEvent:
    pr = payload["pull_request"]
    cls = PullRequestOpened if payload["action"] == "opened" else PullRequestReopened
    return cls(
        pr_id=int(pr["id"]),
        number=int(pr["number"]),
        repo_id=int(payload["repository"]["id"]),
        author=pr["user"]["login"],
        created_at=_parse_time(pr.get("created_at")),
        updated_at=_parse_time(pr.get("updated_at")),
        requested_reviewers=tuple(
            r["login"] for r in pr.get("requested_reviewers") or [] if r.get("login")
        ),
    )


@_decoder("pull_request", "closed")
def _decode_pull_request_closed(payload: dict) -> WebhookEvent:
    return PullRequestClosed(pr_id=int(payload["pull_request"]["id"]))


@_decoder("pull_request", "synchronize")
def _decode_pull_request_synchronize(payload: dict) -> WebhookEvent:
    pr = payload["pull_request"]
    return PullRequestSynchronized(pr_id=int(pr["id"]), at=_parse_time(pr.get("updated_at")))


@_decoder("pull_request", "review_requested", "review_request_removed")
def _decode_review_request(payload: dict) -> WebhookEvent | None:
    reviewer = payload.get("requested_reviewer")
    if not reviewer:
        # Team review requests carry requested_team instead
        return None
    pr = payload["pull_request"]
    cls = ReviewRequested if payload["action"] == "review_requested" else ReviewRequestRemoved
    return cls(
        pr_id=int(pr["id"]),
        reviewer=reviewer["login"],
        at=_parse_time(pr.get("updated_at")),
    )


@_decoder("pull_request_review", "submitted")
def _decode_review_submitted(payload: dict) -> WebhookEvent:
    review = payload["review"]
    return ReviewSubmitted(
        pr_id=int(payload["pull_request"]["id"]),
        review_id=int(review["id"]),
        reviewer=review["user"]["login"],
        state=str(review["state"]).lower(),
        submitted_at=_parse_time(review.get("submitted_at")),
    )


@_decoder("pull_request_review", "dismissed")
def _decode_review_dismissed(payload: dict) -> WebhookEvent:
    pr = payload["pull_request"]
    return ReviewDismissed(
        pr_id=int(pr["id"]),
        review_id=int(payload["review"]["id"]),
        at=_parse_time(pr.get("updated_at")),
    )


@_decoder("pull_request_review_thread", "resolved")
def _decode_review_thread_resolved(payload: dict) -> WebhookEvent | None:
    comments = payload["thread"].get("comments") or []
    review_id = comments[0].get("pull_request_review_id") if comments else None
    if review_id is None:
        return None
    pr = payload["pull_request"]
    return ReviewThreadResolved(
        pr_id=int(pr["id"]),
        review_id=int(review_id),
        at=_parse_time(pr.get("updated_at")),
    )


@_decoder("issue_comment", "created")
def _decode_issue_comment(payload: dict) -> WebhookEvent | None:
    issue = payload["issue"]
    if not issue.get("pull_request"):
        # Comment on a plain issue
        return None
    comment = payload["comment"]
    return CommentCreated(
        repo_id=int(payload["repository"]["id"]),
        number=int(issue["number"]),
        author=comment["user"]["login"],
        at=_parse_time(comment.get("created_at")),
    )


@_decoder("pull_request_review_comment", "created")
def _decode_review_comment(payload: dict) -> WebhookEvent:
    comment = payload["comment"]
    return CommentCreated(
        repo_id=int(payload["repository"]["id"]),
        number=int(payload["pull_request"]["number"]),
        author=comment["user"]["login"],
        at=_parse_time(comment.get("created_at")),
    )


@_decoder("installation", "created")
def _decode_installation_created(payload: dict) -> WebhookEvent:
    installation = payload["installation"]
    return InstallationCreated(
        installation_id=int(installation["id"]),
        account_login=(installation.get("account") or {}).get("login", ""),
        repositories=_repositories(payload.get("repositories"), installation),
    )


@_decoder("installation", "deleted")
def _decode_installation_deleted(payload: dict) -> WebhookEvent:
    return InstallationDeleted(installation_id=int(payload["installation"]["id"]))


@_decoder("installation_repositories", "added")
def _decode_repositories_added(payload: dict) -> WebhookEvent:
    installation = payload["installation"]
    return RepositoriesAdded(
        installation_id=int(installation["id"]),
        repositories=_repositories(payload.get("repositories_added"), installation),
    )


@_decoder("installation_repositories", "removed")
def _decode_repositories_removed(payload: dict) -> WebhookEvent:
    return RepositoriesRemoved(
        installation_id=int(payload["installation"]["id"]),
        repo_ids=tuple(int(r["id"]) for r in payload.get("repositories_removed") or []),
    )


class EventApplier:
    """Writes decoded webhook events to storage."""

    def __init__(
        self,
        store: NudgeStore,
        estimator: LifetimeEstimator,
        provider: GitHubProvider | None = None,
        ignore_bot_prs: bool = False,
    ):
        """Initialize event applier.

        Args:
            store: Workflow state storage.
            estimator: Predicts the lifetime of newly opened pull requests.
            provider: Lists open PRs of newly added repositories; None skips the backfill.
            ignore_bot_prs: Leave PRs authored by bot accounts out of the backfill.
        """
        self.store = store
        self.estimator = estimator
        self.provider = provider
        self.ignore_bot_prs = ignore_bot_prs

    def handle(self, event: WebhookEvent) -> bool:
        """Apply an event, tolerating events about untracked pull requests.

        Returns:
            True if storage was updated.
        """
        try:
            self.apply(event)
            return True
        except NotFoundError as e:
            logger.debug(f"Ignoring {type(event).__name__}: {e}")
            return False

    @singledispatchmethod
    def apply(self, event: WebhookEvent) -> None:
        """Apply an event to storage.

        Raises:
            NotFoundError: If the event refers to an untracked pull request.
            StoreError: If storage fails.
        """
        raise TypeError(f"No handler for event {type(event).__name__}")

    @apply.register
    def _(self, event: PullRequestOpened) -> None:
        pr = PullRequest(
            pr_id=event.pr_id,
            number=event.number,
            repo_id=event.repo_id,
            status=PR_STATUS_OPEN,
            created_at=event.created_at,
            updated_at=event.updated_at,
            author=event.author,
            requested_reviewers=list(event.requested_reviewers),
        )
        pr.lifetime_hours = self.estimator.estimate(pr)
        self.store.upsert_pr(pr)
        action = "Reopened" if isinstance(event, PullRequestReopened) else "Opened"
        logger.info(f"{action} PR {event.pr_id} (#{event.number}, repo {event.repo_id})")

    @apply.register
    def _(self, event: PullRequestClosed) -> None:
        self.store.update_pr_fields(event.pr_id, PRStatusUpdate(status=PR_STATUS_CLOSED))
        logger.info(f"Closed PR {event.pr_id}")

    @apply.register
    def _(self, event: PullRequestSynchronized) -> None:
        self.store.update_pr_fields(
            event.pr_id, PRActivityUpdate(action="synchronize", category=CATEGORY_PULL, at=event.at)
        )

    @apply.register
    def _(self, event: ReviewRequested) -> None:
        self.store.add_requested_reviewer(event.pr_id, event.reviewer)
        self.store.update_pr_fields(
            event.pr_id,
            PRActivityUpdate(action="review_requested", category=CATEGORY_REVIEW_REQUEST, at=event.at),
        )

    @apply.register
    def _(self, event: ReviewRequestRemoved) -> None:
        self.store.remove_requested_reviewer(event.pr_id, event.reviewer)
        self.store.update_pr_fields(
            event.pr_id,
            PRActivityUpdate(
                action="review_request_removed", category=CATEGORY_REVIEW_REQUEST, at=event.at
            ),
        )

    @apply.register
    def _(self, event: ReviewSubmitted) -> None:
        self.store.add_review(
            event.pr_id,
            Review(
                review_id=event.review_id,
                reviewer=event.reviewer,
                state=event.state,
                submitted_at=event.submitted_at,
            ),
        )
        # GitHub drops a reviewer from the requested list once they review
        self.store.remove_requested_reviewer(event.pr_id, event.reviewer)
        self.store.update_pr_fields(
            event.pr_id,
            PRActivityUpdate(action="submitted", category=event.state, at=event.submitted_at),
        )

    @apply.register
    def _(self, event: ReviewDismissed) -> None:
        self.store.remove_review(event.pr_id, event.review_id)
        self.store.update_pr_fields(
            event.pr_id, PRActivityUpdate(action="dismissed", category="dismissed", at=event.at)
        )

    @apply.register
    def _(self, event: ReviewThreadResolved) -> None:
        self.store.remove_review(event.pr_id, event.review_id)
        self.store.update_pr_fields(
            event.pr_id,
            PRActivityUpdate(action="resolved", category=CATEGORY_REVIEW_THREAD, at=event.at),
        )

    @apply.register
    def _(self, event: CommentCreated) -> None:
        pr = self.store.find_pr_by_number(event.repo_id, event.number)
        self.store.update_pr_fields(
            pr.pr_id, PRActivityUpdate(action="created", category=CATEGORY_COMMENT, at=event.at)
        )

    @apply.register
    def _(self, event: InstallationCreated) -> None:
        self.store.upsert_installation(event.installation_id, event.account_login)
        created = self.store.create_repositories(list(event.repositories))
        logger.info(
            f"Installation {event.installation_id} ({event.account_login}) created "
            f"with {created} repositories"
        )
        self._backfill_open_prs(event.repositories)

    @apply.register
    def _(self, event: InstallationDeleted) -> None:
        self.store.delete_installation(event.installation_id)
        if self.provider is not None:
            self.provider.evict(event.installation_id)
        logger.info(f"Installation {event.installation_id} deleted")

    @apply.register
    def _(self, event: RepositoriesAdded) -> None:
        self.store.upsert_installation(event.installation_id)
        created = self.store.create_repositories(list(event.repositories))
        logger.info(f"Installation {event.installation_id}: {created} repositories added")
        self._backfill_open_prs(event.repositories)

    @apply.register
    def _(self, event: RepositoriesRemoved) -> None:
        deleted = self.store.delete_repositories(event.installation_id, list(event.repo_ids))
        logger.info(f"Installation {event.installation_id}: {deleted} repositories removed")

    def _backfill_open_prs(self, repositories: tuple[Repository, ...]) -> None:
        """Store the PRs already open in newly monitored repositories.

        A repository whose PRs cannot be listed is logged and skipped.
        """
        if self.provider is None:
            return

        for repo in repositories:
            with log_target(repo.full_name):
                self._backfill_repository(repo)

    def _backfill_repository(self, repo: Repository) -> None:
        try:
            open_prs = self.provider.list_open_pull_requests(
                repo.owner, repo.name, repo.installation_id
            )
        except (ProviderError, RateLimitExhausted) as e:
            logger.warning(f"Failed to list open PRs of {repo.full_name}: {e}")
            return

        stored = 0
        for item in open_prs:
            if self.ignore_bot_prs and item.is_bot:
                logger.info(f"Ignoring #{item.number} opened by bot {item.author}")
                continue
            pr = PullRequest(
                pr_id=item.pr_id,
                number=item.number,
                repo_id=repo.repo_id,
                status=PR_STATUS_OPEN,
                created_at=item.created_at,
                updated_at=item.updated_at,
                author=item.author,
                requested_reviewers=list(item.requested_reviewers),
            )
            pr.lifetime_hours = self.estimator.estimate(pr)
            self.store.upsert_pr(pr)
            stored += 1
        logger.info(f"Backfilled {stored} open PRs of {repo.full_name}")
