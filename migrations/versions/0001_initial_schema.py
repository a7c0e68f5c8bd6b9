"""Initial schema and indexes for pull request workflow state, repositories and installations.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

INDEXES = [
    ("ix_pull_requests_repo_id", "pull_requests", ["repo_id"]),
    ("ix_pull_requests_status", "pull_requests", ["status"]),
    ("ix_requested_reviewers_pull_request_id", "requested_reviewers", ["pull_request_id"]),
    ("ix_reviews_pull_request_id", "reviews", ["pull_request_id"]),
    ("ix_repositories_installation_id", "repositories", ["installation_id"]),
    ("ix_chat_mappings_installation_record_id", "chat_mappings", ["installation_record_id"]),
    ("ix_workflow_runs_started_at", "workflow_runs", ["started_at"]),
    ("ix_workflow_runs_status", "workflow_runs", ["status"]),
]


def upgrade() -> None:
    op.create_table(
        "pull_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("pr_id", sa.BigInteger, nullable=False, unique=True),
        sa.Column("number", sa.Integer, nullable=False),
        sa.Column("repo_id", sa.BigInteger, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, default="open"),
        sa.Column("lifetime_hours", sa.Integer, nullable=False, default=0),
        sa.Column("author", sa.String(255), nullable=True),
        sa.Column("pr_created_at", sa.DateTime, nullable=True),
        sa.Column("pr_updated_at", sa.DateTime, nullable=True),
        sa.Column("workflow_last_activity_at", sa.DateTime, nullable=True),
        sa.Column("last_workflow_action", sa.String(100), nullable=True),
        sa.Column("last_workflow_action_category", sa.String(100), nullable=True),
        sa.Column("total_bot_comments", sa.Integer, nullable=False, default=0),
        sa.Column("last_bot_comment_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_table(
        "requested_reviewers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("pull_request_id", sa.Integer, sa.ForeignKey("pull_requests.id"), nullable=False),
        sa.Column("login", sa.String(255), nullable=False),
        sa.UniqueConstraint("pull_request_id", "login", name="uq_requested_reviewers_pr_login"),
    )
    op.create_table(
        "reviews",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("pull_request_id", sa.Integer, sa.ForeignKey("pull_requests.id"), nullable=False),
        sa.Column("review_id", sa.BigInteger, nullable=False),
        sa.Column("reviewer", sa.String(255), nullable=False),
        sa.Column("state", sa.String(50), nullable=False),
        sa.Column("submitted_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("pull_request_id", "review_id", name="uq_reviews_pr_review"),
    )
    op.create_table(
        "repositories",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("repo_id", sa.BigInteger, nullable=False, unique=True),
        sa.Column("installation_id", sa.BigInteger, nullable=False),
        sa.Column("owner", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_table(
        "installations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("installation_id", sa.BigInteger, nullable=False, unique=True),
        sa.Column("account_login", sa.String(255), nullable=False, default=""),
        sa.Column("chat_access_token", sa.Text, nullable=True),
        sa.Column("chat_default_channel", sa.String(255), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("business_hours_start", sa.Integer, nullable=True),
        sa.Column("business_hours_end", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_table(
        "chat_mappings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "installation_record_id", sa.Integer, sa.ForeignKey("installations.id"), nullable=False
        ),
        sa.Column("github_login", sa.String(255), nullable=False),
        sa.Column("chat_user_id", sa.String(255), nullable=False),
        sa.UniqueConstraint(
            "installation_record_id", "github_login", name="uq_chat_mappings_installation_login"
        ),
    )
    op.create_table(
        "workflow_runs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("started_at", sa.DateTime, nullable=False),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("status", sa.String(50), default="running"),
        sa.Column("repos_scanned", sa.Integer, default=0),
        sa.Column("repos_failed", sa.Integer, default=0),
        sa.Column("stale_prs", sa.Integer, default=0),
        sa.Column("nudges_sent", sa.Integer, default=0),
        sa.Column("error", sa.Text, nullable=True),
    )

    for name, table, columns in INDEXES:
        op.create_index(name, table, columns)


def downgrade() -> None:
    for name, table, _ in reversed(INDEXES):
        op.drop_index(name, table)
    op.drop_table("workflow_runs")
    op.drop_table("chat_mappings")
    op.drop_table("installations")
    op.drop_table("repositories")
    op.drop_table("reviews")
    op.drop_table("requested_reviewers")
    op.drop_table("pull_requests")
