"""Database models and operations."""

from prnudge.database.models import Base, PullRequestRecord, RepositoryRecord, WorkflowRun
from prnudge.database.store import NotFoundError, NudgeStore, StoreError

__all__ = [
    "Base",
    "PullRequestRecord",
    "RepositoryRecord",
    "WorkflowRun",
    "NudgeStore",
    "StoreError",
    "NotFoundError",
]
