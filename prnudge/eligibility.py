"""Notification eligibility: whether a nudge may be sent right now."""

import logging
from datetime import datetime

from prnudge.clock import TimezoneResolver
from prnudge.models import PullRequest
from prnudge.utils import elapsed_in_unit

logger = logging.getLogger("prnudge.eligibility")


def local_weekday(local: datetime) -> int:
    """Day of week with Sunday = 0 through Saturday = 6."""
    return (local.weekday() + 1) % 7


class NotificationPolicy:
    """Applies the notification vetoes in order; the first veto wins.

    1. Today is a skip day in the team's timezone.
    2. The follow-up threshold has been reached.
    3. The last nudge is still within the quiet window.
    4. The team-local hour is outside business hours.
    """

    def __init__(
        self,
        resolver: TimezoneResolver,
        skip_days: list[int],
        follow_up_threshold: int,
        quiet_window: float,
        unit: str = "h",
    ):
        """Initialize notification policy.

        Args:
            resolver: Timezone and business hours per installation.
            skip_days: Days of week with no nudges (0 = Sunday).
            follow_up_threshold: Maximum nudges ever sent for one PR.
            quiet_window: Minimum gap between two nudges on one PR.
            unit: Unit of quiet_window, 'h' or 'm'.
        """
        self.resolver = resolver
        self.skip_days = set(skip_days)
        self.follow_up_threshold = follow_up_threshold
        self.quiet_window = quiet_window
        self.unit = unit

    def is_eligible(self, pr: PullRequest, installation_id: int, now: datetime) -> bool:
        """Check whether a nudge for a pull request may be sent.

        Args:
            pr: Pull request workflow state.
            installation_id: Installation owning the PR's repository.
            now: Current time (aware UTC).

        Returns:
            True if no veto applies.
        """
        zone, hours = self.resolver.resolve(installation_id)
        local = now.astimezone(zone)

        if local_weekday(local) in self.skip_days:
            logger.debug(f"PR {pr.pr_id}: skip day {local_weekday(local)}")
            return False

        if pr.total_bot_comments >= self.follow_up_threshold:
            logger.debug(f"PR {pr.pr_id}: follow-up threshold reached ({pr.total_bot_comments})")
            return False

        if pr.last_bot_comment_at is not None:
            since_last = elapsed_in_unit(pr.last_bot_comment_at, now, self.unit)
            if since_last < self.quiet_window:
                logger.debug(f"PR {pr.pr_id}: last nudge {since_last:.1f}{self.unit} ago")
                return False

        if not hours.start <= local.hour <= hours.end:
            logger.debug(
                f"PR {pr.pr_id}: local hour {local.hour} outside {hours.start}-{hours.end}"
            )
            return False

        return True
