"""Activity detection and the staleness gate.

A pull request becomes a candidate for nudging only after its age crosses the
predicted lifetime. Past that point, recent activity (a review, a push, a
comment) within the quiet window still keeps it out of the workflow.
"""

import logging
from datetime import datetime

from prnudge.models import PullRequest
from prnudge.utils import elapsed_in_unit

logger = logging.getLogger("prnudge.activity")


class ActivityDetector:
    """Decides whether a pull request is still moving."""

    def __init__(self, quiet_window: float, unit: str = "h"):
        """Initialize activity detector.

        Args:
            quiet_window: Length of the quiet window.
            unit: 'h' for hours or 'm' for minutes.
        """
        if unit not in ("h", "m"):
            raise ValueError(f"Unsupported quiet window unit '{unit}', expected 'h' or 'm'")
        self.quiet_window = quiet_window
        self.unit = unit

    def is_active(self, last_activity_at: datetime | None, now: datetime) -> bool:
        """Check for activity within the quiet window.

        Args:
            last_activity_at: Last state-changing event, or None if never seen.
            now: Current time.

        Returns:
            True if the last activity is strictly within the quiet window.
        """
        if last_activity_at is None:
            return False
        return elapsed_in_unit(last_activity_at, now, self.unit) < self.quiet_window


class StalenessGate:
    """Admits a pull request to actor resolution once it is overdue and quiet."""

    def __init__(self, detector: ActivityDetector):
        self.detector = detector

    def is_stale(self, pr: PullRequest, now: datetime) -> bool:
        """Check whether a pull request is overdue and inactive.

        The activity detector is consulted only once the PR has outlived its
        predicted lifetime.

        Args:
            pr: Pull request workflow state.
            now: Current time.

        Returns:
            True if the PR should proceed to actor resolution.
        """
        if pr.created_at is None:
            logger.debug(f"PR {pr.pr_id} has no creation time, skipping")
            return False

        elapsed_hours = int((now - pr.created_at).total_seconds() // 3600)
        if elapsed_hours <= pr.lifetime_hours:
            return False

        return not self.detector.is_active(pr.workflow_last_activity_at, now)
