"""Main entry point and service wiring for PRNudge."""

import argparse
import logging
import signal
import sys
import threading
from typing import Optional

import uvicorn

from prnudge import setup_logging
from prnudge.activity import ActivityDetector, StalenessGate
from prnudge.actor import ActorResolver
from prnudge.clock import TimezoneResolver
from prnudge.config import Settings, load_settings
from prnudge.database import NudgeStore
from prnudge.eligibility import NotificationPolicy
from prnudge.estimator import LifetimeEstimator
from prnudge.events import EventApplier
from prnudge.github import GitHubProvider, GitHubRateLimiter
from prnudge.models import BusinessHours, WorkflowSummary
from prnudge.notifications import GitHubCommentNotifier, SlackClient, SlackNotifier
from prnudge.scheduler import WorkflowScheduler
from prnudge.server import create_app
from prnudge.workflow import WorkflowOrchestrator

logger = logging.getLogger("prnudge.main")


class PRNudge:
    """Wires storage, GitHub, notifiers, the webhook server and the scheduler."""

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize PRNudge.

        Args:
            settings: Optional settings override.

        Raises:
            ValueError: If the GitHub App private key is not configured.
        """
        self.settings = settings or load_settings()
        s = self.settings

        # Shutdown coordination
        self._shutdown_event = threading.Event()

        self.store = NudgeStore(s.db_path, timeout=s.db_timeout_seconds)

        self._rate_limiter = GitHubRateLimiter(shutdown_event=self._shutdown_event)
        self.provider = GitHubProvider(
            app_id=s.github_app_id,
            private_key=s.get_private_key(),
            rate_limiter=self._rate_limiter,
            timeout=s.http_timeout_seconds,
        )

        self.slack_client = SlackClient(timeout=s.http_timeout_seconds)
        self.notifiers = [
            GitHubCommentNotifier(self.provider),
            SlackNotifier(self.store, self.slack_client),
        ]

        # Decision engine
        detector = ActivityDetector(s.quiet_window, s.quiet_window_unit)
        timezones = TimezoneResolver(
            self.store,
            default_timezone=s.default_timezone,
            default_business_hours=BusinessHours(
                start=s.business_hours_start, end=s.business_hours_end
            ),
        )
        self.orchestrator = WorkflowOrchestrator(
            store=self.store,
            gate=StalenessGate(detector),
            resolver=ActorResolver(
                self.provider, required_approvals_default=s.required_approvals_default
            ),
            policy=NotificationPolicy(
                timezones,
                skip_days=s.skip_day_list,
                follow_up_threshold=s.follow_up_threshold,
                quiet_window=s.quiet_window,
                unit=s.quiet_window_unit,
            ),
            notifiers=self.notifiers,
            max_workers=s.max_workers,
            scan_timeout=s.scan_timeout_seconds,
            dry_run=s.dry_run,
            shutdown_event=self._shutdown_event,
        )

        # Webhook ingestion
        self.applier = EventApplier(
            self.store,
            LifetimeEstimator(s.default_lifetime_hours),
            provider=self.provider,
            ignore_bot_prs=s.ignore_bot_prs,
        )
        self.app = create_app(s, self.store, self.applier)
        self._server: Optional[uvicorn.Server] = None
        self._server_thread: Optional[threading.Thread] = None

        self.scheduler = WorkflowScheduler(timezone=s.default_timezone)

    def run_workflow(self) -> WorkflowSummary:
        """Run one workflow tick."""
        return self.orchestrator.run()

    def start_server(self) -> None:
        """Serve the webhook app from a daemon thread."""
        config = uvicorn.Config(
            self.app,
            host=self.settings.host,
            port=self.settings.port,
            log_config=None,
        )
        self._server = uvicorn.Server(config)
        self._server_thread = threading.Thread(
            target=self._server.run, name="webhook-server", daemon=True
        )
        self._server_thread.start()
        logger.info(f"Webhook server listening on {self.settings.host}:{self.settings.port}")

    def stop_server(self) -> None:
        """Ask the webhook server to exit and wait briefly for it."""
        if self._server is not None:
            self._server.should_exit = True
        if self._server_thread is not None:
            self._server_thread.join(timeout=5)
            self._server_thread = None

    def start(self, serve: bool = True) -> None:
        """Start the PRNudge service."""
        logger.info("Starting PRNudge service")

        if not self.settings.github_app_id:
            logger.error("GitHub App not configured - set GITHUB_APP_ID")
            sys.exit(1)

        # Set up signal handlers
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        if serve:
            self.start_server()

        self.scheduler.schedule_workflow(
            interval=self.settings.poll_interval,
            unit=self.settings.poll_interval_unit,
            workflow_func=self.run_workflow,
        )

        next_run = self.scheduler.get_next_run_time()
        if next_run:
            logger.info(f"Next workflow run scheduled at: {next_run}")

        # Start scheduler (blocking, returns when scheduler is stopped)
        self.scheduler.start()
        self.close()

    def _signal_handler(self, signum: int, frame: object) -> None:
        """Handle shutdown signals gracefully.

        Sets flags and stops the scheduler; start() does the cleanup.
        """
        logger.info(f"Received signal {signum}, shutting down...")
        self._shutdown_event.set()
        self.scheduler.stop()

    def close(self) -> None:
        """Clean up all resources."""
        logger.debug("Closing PRNudge resources")

        self.stop_server()

        if hasattr(self, "slack_client"):
            self.slack_client.close()

        if hasattr(self, "provider"):
            self.provider.close()

        # Close database engine
        if hasattr(self, "store"):
            self.store.close()

    def __enter__(self) -> "PRNudge":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="PRNudge - Nudge whoever is blocking a stale pull request"
    )
    parser.add_argument(
        "--run-now",
        action="store_true",
        help="Run the workflow once immediately and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log nudges that would be sent without sending them",
    )
    parser.add_argument(
        "--health-check",
        action="store_true",
        help="Check heartbeat and exit with 0 (healthy) or 1 (unhealthy)",
    )
    parser.add_argument(
        "--no-server",
        action="store_true",
        help="Do not start the webhook server",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    # Health check only needs the schedule, exit early
    if args.health_check:
        from prnudge.scheduler import check_heartbeat, heartbeat_max_age
        settings = load_settings()
        max_age = heartbeat_max_age(
            settings.poll_interval,
            settings.poll_interval_unit,
            settings.health_check_grace_seconds,
        )
        sys.exit(0 if check_heartbeat(max_age_seconds=max_age) else 1)

    # Load settings once and thread through
    settings = load_settings()
    if args.dry_run:
        settings.dry_run = True
    log_level = "DEBUG" if args.debug else settings.log_level
    setup_logging(log_level, log_format=settings.log_format)

    logger.info("PRNudge starting up")

    try:
        agent = PRNudge(settings)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        if args.run_now:
            logger.info("Running workflow immediately")
            agent.run_workflow()
        else:
            agent.start(serve=not args.no_server)
    finally:
        agent.close()


if __name__ == "__main__":
    main()
