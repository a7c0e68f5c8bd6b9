"""Workflow orchestration: one tick of scan, resolve, check and nudge."""

import contextvars
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime

from prnudge import current_run_id, log_target
from prnudge.activity import StalenessGate
from prnudge.actor import ActorResolver
from prnudge.database.store import NudgeStore, StoreError
from prnudge.eligibility import NotificationPolicy
from prnudge.github.provider import ProviderError
from prnudge.github.rate_limiter import RateLimitExhausted
from prnudge.models import PullRequest, Repository, WorkflowSummary
from prnudge.notifications.base import BaseNotifier, build_nudge_message
from prnudge.utils import utcnow

logger = logging.getLogger("prnudge.workflow")


@dataclass
class RepoScan:
    """Result of the staleness check for one repository."""

    repo: Repository
    stale: list[PullRequest] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class WorkflowOrchestrator:
    """Drives one workflow tick.

    Repositories are scanned concurrently, each worker returning its own
    result. Everything after the join (resolution, eligibility, notification
    and counter updates) runs sequentially on the calling thread.
    """

    def __init__(
        self,
        store: NudgeStore,
        gate: StalenessGate,
        resolver: ActorResolver,
        policy: NotificationPolicy,
        notifiers: list[BaseNotifier],
        max_workers: int = 4,
        scan_timeout: float = 30.0,
        dry_run: bool = False,
        shutdown_event: threading.Event | None = None,
    ):
        """Initialize workflow orchestrator.

        Args:
            store: Workflow state storage.
            gate: Staleness gate applied to each open PR.
            resolver: Resolves the actors blocking a stale PR.
            policy: Notification eligibility policy.
            notifiers: Channels a nudge is delivered through, independently.
            max_workers: Concurrent repository scans.
            scan_timeout: Seconds to wait for all repository scans.
            dry_run: Log nudges without sending them or updating counters.
            shutdown_event: Stops processing further PRs when set.
        """
        self.store = store
        self.gate = gate
        self.resolver = resolver
        self.policy = policy
        self.notifiers = notifiers
        self.max_workers = max_workers
        self.scan_timeout = scan_timeout
        self.dry_run = dry_run
        self._shutdown_event = shutdown_event or threading.Event()

    def run(self, now: datetime | None = None) -> WorkflowSummary:
        """Run one workflow tick.

        Args:
            now: Evaluation time; defaults to the current UTC time.

        Returns:
            Summary of what the tick did.
        """
        now = now or utcnow()
        summary = WorkflowSummary(started_at=utcnow())

        try:
            run_id = self.store.start_run()
        except StoreError as e:
            logger.error(f"Could not record workflow run: {e}")
            run_id = None
        run_id_token = current_run_id.set(str(run_id) if run_id is not None else "-")

        error = None
        try:
            logger.info("Starting workflow run")
            try:
                repos = self.store.find_all_repositories()
            except StoreError as e:
                error = f"Failed to fetch repositories: {e}"
                logger.error(error)
                return summary

            if not repos:
                logger.info("No repositories monitored")
                return summary

            scans = self._scan_repositories(repos, now)
            for scan in scans:
                summary.repos_scanned += 1
                if not scan.ok:
                    summary.repos_failed += 1
                    logger.warning(f"Skipping {scan.repo.full_name}: {scan.error}")
                    continue
                summary.stale_prs += len(scan.stale)

            for scan in scans:
                for pr in scan.stale:
                    if self._shutdown_event.is_set():
                        logger.info("Shutdown requested, stopping workflow run")
                        return summary
                    self._process_pr(scan.repo, pr, now, summary)

            return summary
        finally:
            summary.finished_at = utcnow()
            logger.info(
                f"Workflow run complete: {summary.repos_scanned} repos "
                f"({summary.repos_failed} failed), {summary.stale_prs} stale PRs, "
                f"{summary.nudges_sent} nudges in {summary.duration_seconds:.1f}s"
            )
            if run_id is not None and not self.store.complete_run(run_id, summary, error):
                logger.warning(f"Failed to record completion of run #{run_id}")
            current_run_id.reset(run_id_token)

    def _scan_repositories(self, repos: list[Repository], now: datetime) -> list[RepoScan]:
        """Check every repository for stale PRs concurrently.

        Returns:
            One result per repository, in input order.
        """
        results: dict[int, RepoScan] = {}
        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            futures = {}
            for index, repo in enumerate(repos):
                # Each thread needs its own context copy for run_id propagation
                ctx = contextvars.copy_context()
                futures[executor.submit(ctx.run, self._scan_repository, repo, now)] = index

            try:
                for future in as_completed(futures, timeout=self.scan_timeout):
                    index = futures[future]
                    try:
                        results[index] = future.result()
                    except Exception as e:
                        results[index] = RepoScan(repo=repos[index], error=str(e))
            except FuturesTimeoutError:
                logger.warning(
                    f"Repository scan exceeded {self.scan_timeout:.0f}s, "
                    f"{len(repos) - len(results)} repos pending"
                )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return [
            results.get(index) or RepoScan(repo=repo, error="scan timed out")
            for index, repo in enumerate(repos)
        ]

    def _scan_repository(self, repo: Repository, now: datetime) -> RepoScan:
        """List a repository's open PRs and keep the stale ones."""
        with log_target(repo.full_name):
            try:
                prs = self.store.find_open_prs(repo.repo_id)
            except StoreError as e:
                return RepoScan(repo=repo, error=str(e))

            stale = [pr for pr in prs if self.gate.is_stale(pr, now)]
            logger.debug(f"{len(stale)}/{len(prs)} open PRs stale")
            return RepoScan(repo=repo, stale=stale)

    def _process_pr(
        self, repo: Repository, pr: PullRequest, now: datetime, summary: WorkflowSummary
    ) -> None:
        with log_target(f"{repo.full_name}#{pr.number}"):
            self._nudge_pr(repo, pr, now, summary)

    def _nudge_pr(
        self, repo: Repository, pr: PullRequest, now: datetime, summary: WorkflowSummary
    ) -> None:
        """Resolve, check and nudge a single stale PR."""
        try:
            actors = self.resolver.resolve(pr, repo)
        except (ProviderError, RateLimitExhausted) as e:
            summary.resolution_errors += 1
            logger.warning(f"Could not resolve actors for {repo.full_name}#{pr.number}: {e}")
            return

        if not actors:
            return
        # Only the first blocking actor is nudged per run
        actor = actors[0]

        if not self.policy.is_eligible(pr, repo.installation_id, now):
            logger.debug(f"{repo.full_name}#{pr.number}: not eligible for a nudge")
            return

        if self.dry_run:
            logger.info(
                f"[DRY RUN] Would nudge {repo.full_name}#{pr.number}: {build_nudge_message(actor)}"
            )
            return

        for notifier in self.notifiers:
            result = notifier.send_nudge(repo, pr, actor)
            if not result.success:
                logger.warning(
                    f"{notifier.channel_name} nudge failed for {repo.full_name}#{pr.number}: "
                    f"{result.error}"
                )

        try:
            self.store.increment_comment_counter(pr.pr_id, now)
        except StoreError as e:
            logger.error(f"Failed to update nudge counter for PR {pr.pr_id}: {e}")

        summary.nudges_sent += 1
        logger.info(f"Nudged @{actor.identity} on {repo.full_name}#{pr.number}")
