"""Shared GitHub API rate limiter."""

import logging
import threading
import time

from github import Github

logger = logging.getLogger("prnudge.github.rate_limiter")

LOW_QUOTA_WARNING = 10


class RateLimitExhausted(Exception):
    """Raised when GitHub API rate limit is exhausted."""

    def __init__(self, wait_seconds: float):
        self.wait_seconds = wait_seconds
        super().__init__(f"GitHub rate limit exhausted, reset in {wait_seconds:.0f}s")


class GitHubRateLimiter:
    """Spaces out GitHub API calls and refuses to call into an empty quota.

    Installation tokens each carry their own quota, so the quota check runs
    against the client that is about to make the call. Raises
    RateLimitExhausted instead of sleeping; the workflow skips the PR and the
    next tick tries again.
    """

    def __init__(
        self,
        min_delay: float = 0.25,
        shutdown_event: threading.Event | None = None,
    ):
        """Initialize rate limiter.

        Args:
            min_delay: Minimum delay between API calls in seconds.
            shutdown_event: Optional event to interrupt waits on shutdown.
        """
        self._min_delay = min_delay
        self._last_call = 0.0
        self._lock = threading.Lock()
        self._shutdown_event = shutdown_event or threading.Event()

    def throttle(self, github: Github) -> None:
        """Enforce minimum delay between calls and check quota.

        Args:
            github: Client whose quota will be spent by the next call.

        Raises:
            RateLimitExhausted: If API quota is exhausted.
        """
        with self._lock:
            elapsed = time.time() - self._last_call
            if elapsed < self._min_delay:
                # Use event wait so shutdown can interrupt
                self._shutdown_event.wait(timeout=self._min_delay - elapsed)
            self._last_call = time.time()

        self._check_quota(github)

    def _check_quota(self, github: Github) -> None:
        """Check remaining GitHub API quota.

        Raises:
            RateLimitExhausted: If quota is exhausted (remaining == 0).
        """
        try:
            core = github.get_rate_limit().rate
        except Exception as e:
            logger.debug(f"Could not check rate limit: {e}")
            return

        if core.remaining >= LOW_QUOTA_WARNING:
            return

        wait_seconds = max(core.reset.timestamp() - time.time(), 0) + 5
        if core.remaining == 0:
            logger.warning(f"GitHub rate limit exhausted. Reset in {wait_seconds:.0f}s.")
            raise RateLimitExhausted(wait_seconds)
        logger.info(
            f"GitHub rate limit low ({core.remaining} remaining). "
            f"Reset in {wait_seconds:.0f}s."
        )
