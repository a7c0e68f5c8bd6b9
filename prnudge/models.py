"""Shared data models used across multiple layers."""

from dataclasses import dataclass, field
from datetime import datetime

PR_STATUS_OPEN = "open"
PR_STATUS_CLOSED = "closed"

REVIEW_APPROVED = "approved"
REVIEW_CHANGES_REQUESTED = "changes_requested"


@dataclass
class Review:
    """A single review submission on a pull request."""

    review_id: int
    reviewer: str
    state: str
    submitted_at: datetime


@dataclass
class PullRequest:
    """Workflow state of a pull request as tracked in storage."""

    pr_id: int
    number: int
    repo_id: int
    status: str = PR_STATUS_OPEN
    lifetime_hours: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    author: str | None = None
    workflow_last_activity_at: datetime | None = None
    last_workflow_action: str | None = None
    last_workflow_action_category: str | None = None
    requested_reviewers: list[str] = field(default_factory=list)
    reviews: list[Review] = field(default_factory=list)
    total_bot_comments: int = 0
    last_bot_comment_at: datetime | None = None


@dataclass
class Repository:
    """A monitored repository."""

    repo_id: int
    installation_id: int
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass
class BusinessHours:
    """Team-local business-hour window (inclusive hour-of-day bounds)."""

    start: int
    end: int


@dataclass
class ChatMapping:
    """Maps a GitHub login to a chat user."""

    github_login: str
    chat_user_id: str


@dataclass
class Installation:
    """A GitHub App installation (the tenant boundary)."""

    installation_id: int
    account_login: str = ""
    chat_access_token: str | None = None
    chat_default_channel: str | None = None
    timezone: str | None = None
    business_hours: BusinessHours | None = None
    chat_mappings: list[ChatMapping] = field(default_factory=list)


@dataclass(frozen=True)
class ActorDetails:
    """An actor currently blocking a pull request."""

    is_reviewer: bool
    identity: str


@dataclass(frozen=True)
class PRStatusUpdate:
    """Partial update of a pull request's lifecycle status."""

    status: str


@dataclass(frozen=True)
class PRActivityUpdate:
    """Partial update recording a state-changing event on a pull request."""

    action: str
    category: str
    at: datetime


@dataclass
class WorkflowSummary:
    """Outcome of one orchestrator run."""

    started_at: datetime
    finished_at: datetime | None = None
    repos_scanned: int = 0
    repos_failed: int = 0
    stale_prs: int = 0
    nudges_sent: int = 0
    resolution_errors: int = 0

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()
