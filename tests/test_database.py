"""Tests for database operations."""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import inspect

from prnudge.database.store import NotFoundError, NudgeStore
from prnudge.models import (
    PR_STATUS_CLOSED,
    BusinessHours,
    ChatMapping,
    PRActivityUpdate,
    PRStatusUpdate,
    PullRequest,
    Repository,
    Review,
    WorkflowSummary,
)

CREATED = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _pr(pr_id: int = 1, number: int = 7, repo_id: int = 100, **kwargs) -> PullRequest:
    return PullRequest(
        pr_id=pr_id,
        number=number,
        repo_id=repo_id,
        lifetime_hours=48,
        created_at=CREATED,
        updated_at=CREATED,
        author="alice",
        **kwargs,
    )


class TestNudgeStore:
    """Tests for NudgeStore initialization and workflow runs."""

    def test_init_creates_tables(self):
        """Test initialization runs migrations."""
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = f"{tmpdir}/test.db"
            store = NudgeStore(db_path=db_path)

            assert Path(db_path).exists()
            tables = set(inspect(store.engine).get_table_names())
            assert {
                "pull_requests",
                "requested_reviewers",
                "reviews",
                "repositories",
                "installations",
                "chat_mappings",
                "workflow_runs",
            } <= tables
            store.close()

    def test_migrations_create_indexes(self):
        """Test the initial migration creates the query indexes."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            names = {idx["name"] for idx in inspect(store.engine).get_indexes("pull_requests")}
            assert "ix_pull_requests_repo_id" in names
            store.close()

    def test_reopen_existing_database(self):
        """Test migrations are idempotent across restarts."""
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = f"{tmpdir}/test.db"
            NudgeStore(db_path=db_path).close()
            store = NudgeStore(db_path=db_path)
            assert store.find_all_repositories() == []
            store.close()

    def test_start_and_complete_run(self):
        """Test recording a workflow run."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")

            run_id = store.start_run()
            assert store.get_run(run_id).status == "running"

            summary = WorkflowSummary(
                started_at=CREATED,
                finished_at=CREATED + timedelta(seconds=3),
                repos_scanned=3,
                repos_failed=1,
                stale_prs=2,
                nudges_sent=1,
            )
            assert store.complete_run(run_id, summary) is True

            run = store.get_run(run_id)
            assert run.status == "completed"
            assert run.repos_scanned == 3
            assert run.repos_failed == 1
            assert run.nudges_sent == 1
            assert run.completed_at is not None
            store.close()

    def test_complete_run_with_error(self):
        """Test completing a run with error."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")

            run_id = store.start_run()
            store.complete_run(run_id, WorkflowSummary(started_at=CREATED), error="Failed")

            run = store.get_run(run_id)
            assert run.status == "failed"
            assert run.error == "Failed"
            store.close()


class TestPullRequestStorage:
    """Tests for pull request records."""

    def test_upsert_and_get(self):
        """Test a PR round-trips with aware UTC timestamps."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            store.upsert_pr(_pr(requested_reviewers=["r1", "r2", "r1"]))

            pr = store.get_pr(1)
            assert pr.number == 7
            assert pr.author == "alice"
            assert pr.lifetime_hours == 48
            assert pr.created_at == CREATED
            assert pr.created_at.tzinfo is not None
            assert pr.requested_reviewers == ["r1", "r2"]
            assert pr.total_bot_comments == 0
            store.close()

    def test_get_missing_raises_not_found(self):
        """Test unknown PR ids raise NotFoundError."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            with pytest.raises(NotFoundError):
                store.get_pr(999)
            store.close()

    def test_reopen_upsert_keeps_reviews_and_counters(self):
        """Test upserting an existing PR refreshes status but keeps history."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            store.upsert_pr(_pr())
            store.add_review(1, Review(10, "r1", "approved", CREATED))
            store.increment_comment_counter(1, CREATED)
            store.update_pr_fields(1, PRStatusUpdate(status=PR_STATUS_CLOSED))

            store.upsert_pr(_pr())

            pr = store.get_pr(1)
            assert pr.status == "open"
            assert [r.review_id for r in pr.reviews] == [10]
            assert pr.total_bot_comments == 1
            store.close()

    def test_find_open_prs(self):
        """Test only open PRs of the repository are returned."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            store.upsert_pr(_pr(pr_id=1, number=1))
            store.upsert_pr(_pr(pr_id=2, number=2))
            store.upsert_pr(_pr(pr_id=3, number=3, repo_id=200))
            store.update_pr_fields(2, PRStatusUpdate(status=PR_STATUS_CLOSED))

            assert [pr.pr_id for pr in store.find_open_prs(100)] == [1]
            store.close()

    def test_find_pr_by_number(self):
        """Test lookup by repository and number."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            store.upsert_pr(_pr(pr_id=1, number=7))

            assert store.find_pr_by_number(100, 7).pr_id == 1
            with pytest.raises(NotFoundError):
                store.find_pr_by_number(100, 8)
            store.close()

    def test_activity_update(self):
        """Test activity updates stamp the PR."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            store.upsert_pr(_pr())
            at = CREATED + timedelta(hours=3)

            store.update_pr_fields(1, PRActivityUpdate(action="synchronize", category="pull", at=at))

            pr = store.get_pr(1)
            assert pr.workflow_last_activity_at == at
            assert pr.last_workflow_action == "synchronize"
            assert pr.last_workflow_action_category == "pull"
            store.close()

    def test_update_missing_pr_raises(self):
        """Test partial updates of unknown PRs raise NotFoundError."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            with pytest.raises(NotFoundError):
                store.update_pr_fields(5, PRStatusUpdate(status=PR_STATUS_CLOSED))
            with pytest.raises(NotFoundError):
                store.increment_comment_counter(5)
            store.close()

    def test_increment_comment_counter(self):
        """Test the nudge counter and timestamp."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            store.upsert_pr(_pr())
            at = CREATED + timedelta(days=3)

            store.increment_comment_counter(1, at)
            store.increment_comment_counter(1, at)

            pr = store.get_pr(1)
            assert pr.total_bot_comments == 2
            assert pr.last_bot_comment_at == at
            store.close()

    def test_requested_reviewers(self):
        """Test adding and removing pending reviewers."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            store.upsert_pr(_pr())

            store.add_requested_reviewer(1, "r1")
            store.add_requested_reviewer(1, "r1")
            store.add_requested_reviewer(1, "r2")
            store.remove_requested_reviewer(1, "r1")

            assert store.get_pr(1).requested_reviewers == ["r2"]
            store.close()

    def test_reviews_keep_arrival_order(self):
        """Test reviews are stored once, in arrival order."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            store.upsert_pr(_pr())

            store.add_review(1, Review(20, "r2", "commented", CREATED + timedelta(hours=2)))
            store.add_review(1, Review(10, "r1", "approved", CREATED + timedelta(hours=1)))
            store.add_review(1, Review(20, "r2", "commented", CREATED + timedelta(hours=2)))

            reviews = store.get_pr(1).reviews
            assert [r.review_id for r in reviews] == [20, 10]
            assert reviews[0].submitted_at == CREATED + timedelta(hours=2)

            assert store.remove_review(1, 20) is True
            assert store.remove_review(1, 20) is False
            assert [r.review_id for r in store.get_pr(1).reviews] == [10]
            store.close()


class TestInstallationStorage:
    """Tests for repositories, installations and chat mappings."""

    def test_create_and_delete_repositories(self):
        """Test repositories are created once and deleted per installation."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            repos = [
                Repository(repo_id=100, installation_id=5, owner="acme", name="api"),
                Repository(repo_id=101, installation_id=5, owner="acme", name="web"),
            ]

            assert store.create_repositories(repos) == 2
            assert store.create_repositories(repos) == 0
            assert [r.full_name for r in store.find_all_repositories()] == ["acme/api", "acme/web"]

            assert store.delete_repositories(5, [101]) == 1
            assert [r.repo_id for r in store.find_all_repositories()] == [100]
            store.close()

    def test_installation_timezone(self):
        """Test stored preferences are returned for the timezone lookup."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            store.upsert_installation(5, "acme")

            assert store.find_installation_timezone(5) == (None, None)

            store.set_installation_preferences(
                5, timezone="Europe/Berlin", business_hours=BusinessHours(8, 16)
            )
            assert store.find_installation_timezone(5) == ("Europe/Berlin", BusinessHours(8, 16))
            store.close()

    def test_unknown_installation_raises(self):
        """Test lookups of unknown installations raise NotFoundError."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            with pytest.raises(NotFoundError):
                store.find_installation_timezone(5)
            with pytest.raises(NotFoundError):
                store.set_installation_preferences(5, timezone="UTC")
            store.close()

    def test_delete_installation_removes_repositories(self):
        """Test uninstalling removes the installation and its repositories."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            store.upsert_installation(5, "acme")
            store.add_chat_mappings(5, [ChatMapping("alice", "U1")])
            store.create_repositories(
                [Repository(repo_id=100, installation_id=5, owner="acme", name="api")]
            )

            store.delete_installation(5)

            assert store.find_all_repositories() == []
            with pytest.raises(NotFoundError):
                store.get_installation(5)
            store.close()

    def test_chat_recipient(self):
        """Test mapped users win over the default channel."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = NudgeStore(db_path=f"{tmpdir}/test.db")
            store.upsert_installation(5, "acme")

            # No token configured
            assert store.find_chat_recipient(5, "alice") is None

            store.set_installation_preferences(
                5, chat_access_token="xoxb-1", chat_default_channel="C-general"
            )
            store.add_chat_mappings(5, [ChatMapping("alice", "U1")])
            store.add_chat_mappings(5, [ChatMapping("alice", "U2"), ChatMapping("bob", "U3")])

            assert store.find_chat_recipient(5, "alice") == ("U2", "xoxb-1")
            assert store.find_chat_recipient(5, "carol") == ("C-general", "xoxb-1")
            assert store.find_chat_recipient(6, "alice") is None
            assert len(store.get_installation(5).chat_mappings) == 2
            store.close()
