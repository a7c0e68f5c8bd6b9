"""GitHub integration."""

from prnudge.github.provider import (
    BranchNotProtected,
    GitHubProvider,
    OpenPullRequest,
    PRDetails,
    Protection,
    ProviderError,
)
from prnudge.github.rate_limiter import GitHubRateLimiter, RateLimitExhausted

__all__ = [
    "BranchNotProtected",
    "GitHubProvider",
    "GitHubRateLimiter",
    "OpenPullRequest",
    "PRDetails",
    "Protection",
    "ProviderError",
    "RateLimitExhausted",
]
