"""Pull request lifetime estimation."""

from prnudge.models import PullRequest


class LifetimeEstimator:
    """Predicts how many hours a pull request should stay open.

    The bundled estimator returns a configured constant for every PR.
    """

    def __init__(self, default_hours: int = 48):
        self.default_hours = default_hours

    def estimate(self, pr: PullRequest) -> int:
        """Get the predicted lifetime of a PR in hours."""
        return self.default_hours
