"""Tests for workflow orchestration."""

import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from prnudge import current_run_id, current_target
from prnudge.activity import ActivityDetector, StalenessGate
from prnudge.clock import TimezoneResolver
from prnudge.database.store import NudgeStore, StoreError
from prnudge.eligibility import NotificationPolicy
from prnudge.github.provider import ProviderError
from prnudge.github.rate_limiter import RateLimitExhausted
from prnudge.models import ActorDetails, BusinessHours, PullRequest, Repository
from prnudge.notifications.base import BaseNotifier, NotificationResult
from prnudge.workflow import WorkflowOrchestrator

# Wednesday, inside default business hours
NOW = datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc)
CREATED = NOW - timedelta(days=5)

REPO = Repository(repo_id=100, installation_id=5, owner="acme", name="api")
OTHER_REPO = Repository(repo_id=101, installation_id=5, owner="acme", name="web")


def _notifier(success: bool = True, name: str = "GitHub") -> Mock:
    notifier = Mock(spec=BaseNotifier)
    notifier.channel_name = name
    notifier.send_nudge.return_value = NotificationResult(
        success=success, error=None if success else "boom"
    )
    return notifier


def _pr(pr_id: int = 1, number: int = 7, repo_id: int = 100, **kwargs) -> PullRequest:
    fields = dict(lifetime_hours=48, created_at=CREATED, updated_at=CREATED, author="alice")
    fields.update(kwargs)
    return PullRequest(pr_id=pr_id, number=number, repo_id=repo_id, **fields)


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = NudgeStore(db_path=f"{tmpdir}/test.db")
        store.upsert_installation(5, "acme")
        store.create_repositories([REPO])
        yield store
        store.close()


def _orchestrator(store, resolver=None, notifiers=None, skip_days=None, **kwargs):
    if resolver is None:
        resolver = Mock()
        resolver.resolve.return_value = [ActorDetails(is_reviewer=True, identity="r1")]
    policy = NotificationPolicy(
        TimezoneResolver(store, "UTC", BusinessHours(9, 17)),
        skip_days=skip_days or [],
        follow_up_threshold=3,
        quiet_window=24.0,
        unit="h",
    )
    gate = StalenessGate(ActivityDetector(24.0, "h"))
    return WorkflowOrchestrator(
        store,
        gate,
        resolver,
        policy,
        notifiers if notifiers is not None else [_notifier()],
        max_workers=kwargs.pop("max_workers", 2),
        scan_timeout=kwargs.pop("scan_timeout", 10.0),
        **kwargs,
    )


class TestWorkflowOrchestrator:
    """Tests for WorkflowOrchestrator against a real store."""

    def test_nudges_stale_pr(self, store):
        """Test a stale PR is nudged and its counter recorded."""
        store.upsert_pr(_pr())
        notifier = _notifier()

        summary = _orchestrator(store, notifiers=[notifier]).run(NOW)

        assert summary.repos_scanned == 1
        assert summary.stale_prs == 1
        assert summary.nudges_sent == 1
        pr = store.get_pr(1)
        assert pr.total_bot_comments == 1
        assert pr.last_bot_comment_at == NOW
        repo, sent_pr, actor = notifier.send_nudge.call_args.args
        assert repo == REPO
        assert sent_pr.pr_id == 1
        assert actor == ActorDetails(is_reviewer=True, identity="r1")

    def test_second_run_is_idempotent(self, store):
        """Test a repeated tick inside the quiet window sends nothing more."""
        store.upsert_pr(_pr())
        notifier = _notifier()
        orchestrator = _orchestrator(store, notifiers=[notifier])

        orchestrator.run(NOW)
        second = orchestrator.run(NOW + timedelta(minutes=5))

        assert second.nudges_sent == 0
        assert notifier.send_nudge.call_count == 1
        assert store.get_pr(1).total_bot_comments == 1

    def test_fresh_pr_is_not_stale(self, store):
        store.upsert_pr(_pr(created_at=NOW - timedelta(hours=2)))
        notifier = _notifier()

        summary = _orchestrator(store, notifiers=[notifier]).run(NOW)

        assert summary.stale_prs == 0
        notifier.send_nudge.assert_not_called()

    def test_only_first_actor_nudged(self, store):
        store.upsert_pr(_pr())
        resolver = Mock()
        resolver.resolve.return_value = [
            ActorDetails(is_reviewer=True, identity="r1"),
            ActorDetails(is_reviewer=True, identity="r2"),
        ]
        notifier = _notifier()

        _orchestrator(store, resolver=resolver, notifiers=[notifier]).run(NOW)

        assert notifier.send_nudge.call_count == 1
        assert notifier.send_nudge.call_args.args[2].identity == "r1"

    @pytest.mark.parametrize("error", [ProviderError("404"), RateLimitExhausted(60)])
    def test_resolution_error_skips_pr(self, store, error):
        """Test a PR whose actors cannot be resolved is skipped, not the run."""
        store.upsert_pr(_pr(pr_id=1, number=7))
        store.upsert_pr(_pr(pr_id=2, number=8))
        resolver = Mock()
        resolver.resolve.side_effect = [error, [ActorDetails(is_reviewer=False, identity="alice")]]
        notifier = _notifier()

        summary = _orchestrator(store, resolver=resolver, notifiers=[notifier]).run(NOW)

        assert summary.resolution_errors == 1
        assert summary.nudges_sent == 1
        assert store.get_pr(1).total_bot_comments == 0
        assert store.get_pr(2).total_bot_comments == 1

    def test_no_actors(self, store):
        store.upsert_pr(_pr())
        resolver = Mock()
        resolver.resolve.return_value = []
        notifier = _notifier()

        summary = _orchestrator(store, resolver=resolver, notifiers=[notifier]).run(NOW)

        assert summary.nudges_sent == 0
        notifier.send_nudge.assert_not_called()

    def test_ineligible_pr_not_nudged(self, store):
        """Test a skip day vetoes the nudge without touching counters."""
        store.upsert_pr(_pr())
        notifier = _notifier()

        # 2024-03-06 is a Wednesday
        summary = _orchestrator(store, notifiers=[notifier], skip_days=[3]).run(NOW)

        assert summary.stale_prs == 1
        assert summary.nudges_sent == 0
        notifier.send_nudge.assert_not_called()
        assert store.get_pr(1).total_bot_comments == 0

    def test_dry_run(self, store):
        """Test dry run neither notifies nor counts."""
        store.upsert_pr(_pr())
        notifier = _notifier()

        summary = _orchestrator(store, notifiers=[notifier], dry_run=True).run(NOW)

        assert summary.nudges_sent == 0
        notifier.send_nudge.assert_not_called()
        assert store.get_pr(1).total_bot_comments == 0

    def test_notifier_failure_still_counts(self, store):
        """Test every channel is tried and the counter advances after the attempt."""
        store.upsert_pr(_pr())
        failing = _notifier(success=False, name="Slack")
        working = _notifier()

        summary = _orchestrator(store, notifiers=[failing, working]).run(NOW)

        failing.send_nudge.assert_called_once()
        working.send_nudge.assert_called_once()
        assert summary.nudges_sent == 1
        assert store.get_pr(1).total_bot_comments == 1

    def test_failed_repo_scan_does_not_stop_others(self, store):
        store.create_repositories([OTHER_REPO])
        store.upsert_pr(_pr(pr_id=1, repo_id=100))
        store.upsert_pr(_pr(pr_id=2, number=3, repo_id=101))
        real_find = store.find_open_prs

        def find_open_prs(repo_id):
            if repo_id == 100:
                raise StoreError("database is locked")
            return real_find(repo_id)

        store.find_open_prs = find_open_prs
        summary = _orchestrator(store).run(NOW)

        assert summary.repos_scanned == 2
        assert summary.repos_failed == 1
        assert summary.nudges_sent == 1
        assert store.get_pr(2).total_bot_comments == 1

    def test_slow_repo_scan_is_cut_off_at_deadline(self, store):
        """Test a hanging scan counts as failed without holding up the run."""
        store.create_repositories([OTHER_REPO])
        store.upsert_pr(_pr(pr_id=1, repo_id=100))
        store.upsert_pr(_pr(pr_id=2, number=3, repo_id=101))
        real_find = store.find_open_prs
        release = threading.Event()

        def find_open_prs(repo_id):
            if repo_id == 101:
                release.wait(5)
                return []
            return real_find(repo_id)

        store.find_open_prs = find_open_prs
        try:
            started = time.monotonic()
            summary = _orchestrator(store, scan_timeout=0.5).run(NOW)
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 3
        assert summary.repos_scanned == 2
        assert summary.repos_failed == 1
        assert summary.nudges_sent == 1
        assert store.get_pr(1).total_bot_comments == 1
        assert store.get_pr(2).total_bot_comments == 0

    def test_nudge_logs_carry_run_and_pr(self, store):
        """Test notifiers run with the run id and PR set in the log context."""
        store.upsert_pr(_pr())
        seen = []
        notifier = _notifier()

        def send_nudge(repo, pr, actor):
            seen.append((current_run_id.get(), current_target.get()))
            return NotificationResult(success=True)

        notifier.send_nudge.side_effect = send_nudge
        _orchestrator(store, notifiers=[notifier]).run(NOW)

        [(run_id, target)] = seen
        assert run_id != "-"
        assert target == "acme/api#7"
        assert current_run_id.get() == "-"
        assert current_target.get() == "-"

    def test_run_is_recorded(self, store):
        store.upsert_pr(_pr())
        orchestrator = _orchestrator(store)
        run_id = store.start_run()

        orchestrator.run(NOW)

        run = store.get_run(run_id + 1)
        assert run.status == "completed"
        assert run.nudges_sent == 1
        assert run.stale_prs == 1

    def test_repository_lookup_failure(self):
        """Test an unreadable repository list ends the run as failed."""
        store = Mock()
        store.start_run.return_value = 1
        store.find_all_repositories.side_effect = StoreError("locked")

        summary = _orchestrator(store).run(NOW)

        assert summary.repos_scanned == 0
        args = store.complete_run.call_args.args
        assert args[0] == 1
        assert "Failed to fetch repositories" in args[2]

    def test_shutdown_stops_processing(self, store):
        store.upsert_pr(_pr())
        event = threading.Event()
        event.set()
        notifier = _notifier()

        summary = _orchestrator(store, notifiers=[notifier], shutdown_event=event).run(NOW)

        assert summary.stale_prs == 1
        notifier.send_nudge.assert_not_called()
