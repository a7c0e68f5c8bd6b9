"""SQLAlchemy database models."""

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PullRequestRecord(Base):
    """Workflow state of a tracked pull request."""

    __tablename__ = "pull_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pr_id = Column(BigInteger, nullable=False, unique=True)
    number = Column(Integer, nullable=False)
    repo_id = Column(BigInteger, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="open", index=True)  # open, closed
    lifetime_hours = Column(Integer, nullable=False, default=0)
    author = Column(String(255), nullable=True)
    pr_created_at = Column(DateTime, nullable=True)
    pr_updated_at = Column(DateTime, nullable=True)
    workflow_last_activity_at = Column(DateTime, nullable=True)
    last_workflow_action = Column(String(100), nullable=True)
    last_workflow_action_category = Column(String(100), nullable=True)
    total_bot_comments = Column(Integer, nullable=False, default=0)
    last_bot_comment_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    requested_reviewers = relationship(
        "RequestedReviewerRecord",
        back_populates="pull_request",
        cascade="all, delete-orphan",
        order_by="RequestedReviewerRecord.id",
    )
    reviews = relationship(
        "ReviewRecord",
        back_populates="pull_request",
        cascade="all, delete-orphan",
        order_by="ReviewRecord.id",
    )

    def __repr__(self) -> str:
        return f"<PullRequestRecord(pr_id={self.pr_id}, number=#{self.number}, status={self.status})>"


class RequestedReviewerRecord(Base):
    """A reviewer whose review is still pending on a pull request."""

    __tablename__ = "requested_reviewers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pull_request_id = Column(Integer, ForeignKey("pull_requests.id"), nullable=False, index=True)
    login = Column(String(255), nullable=False)

    pull_request = relationship("PullRequestRecord", back_populates="requested_reviewers")

    __table_args__ = (
        UniqueConstraint("pull_request_id", "login", name="uq_requested_reviewers_pr_login"),
    )


class ReviewRecord(Base):
    """A submitted review. Row order is arrival order."""

    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pull_request_id = Column(Integer, ForeignKey("pull_requests.id"), nullable=False, index=True)
    review_id = Column(BigInteger, nullable=False)
    reviewer = Column(String(255), nullable=False)
    state = Column(String(50), nullable=False)
    submitted_at = Column(DateTime, nullable=False)

    pull_request = relationship("PullRequestRecord", back_populates="reviews")

    __table_args__ = (
        UniqueConstraint("pull_request_id", "review_id", name="uq_reviews_pr_review"),
    )

    def __repr__(self) -> str:
        return f"<ReviewRecord(review_id={self.review_id}, reviewer={self.reviewer}, state={self.state})>"


class RepositoryRecord(Base):
    """A repository the app has been granted access to."""

    __tablename__ = "repositories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo_id = Column(BigInteger, nullable=False, unique=True)
    installation_id = Column(BigInteger, nullable=False, index=True)
    owner = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<RepositoryRecord(repo_id={self.repo_id}, {self.owner}/{self.name})>"


class InstallationRecord(Base):
    """A GitHub App installation and the team preferences attached to it."""

    __tablename__ = "installations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    installation_id = Column(BigInteger, nullable=False, unique=True)
    account_login = Column(String(255), nullable=False, default="")
    chat_access_token = Column(Text, nullable=True)
    # Channel id or user id; receives messages for unmapped GitHub users
    chat_default_channel = Column(String(255), nullable=True)
    timezone = Column(String(64), nullable=True)
    business_hours_start = Column(Integer, nullable=True)
    business_hours_end = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    chat_mappings = relationship(
        "ChatMappingRecord",
        back_populates="installation",
        cascade="all, delete-orphan",
        order_by="ChatMappingRecord.id",
    )

    def __repr__(self) -> str:
        return f"<InstallationRecord(installation_id={self.installation_id}, account={self.account_login})>"


class ChatMappingRecord(Base):
    """Maps a GitHub login to a chat user within an installation."""

    __tablename__ = "chat_mappings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    installation_record_id = Column(
        Integer, ForeignKey("installations.id"), nullable=False, index=True
    )
    github_login = Column(String(255), nullable=False)
    chat_user_id = Column(String(255), nullable=False)

    installation = relationship("InstallationRecord", back_populates="chat_mappings")

    __table_args__ = (
        UniqueConstraint(
            "installation_record_id", "github_login", name="uq_chat_mappings_installation_login"
        ),
    )


class WorkflowRun(Base):
    """Record of one workflow tick."""

    __tablename__ = "workflow_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    started_at = Column(DateTime, nullable=False, default=_utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String(50), default="running", index=True)  # running, completed, failed
    repos_scanned = Column(Integer, default=0)
    repos_failed = Column(Integer, default=0)
    stale_prs = Column(Integer, default=0)
    nudges_sent = Column(Integer, default=0)
    error = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<WorkflowRun(id={self.id}, status={self.status}, nudges={self.nudges_sent})>"
