"""Actor identification - who is blocking a pull request right now.

The decision tree runs in a fixed order and the first matching branch wins:

1. Review requested but not given: the pending reviewers are blocking.
2. Reviewed and approved: the author only needs to merge.
3. Reviewed, not approved, feedback for the author outstanding: the author
   has to act.
4. Otherwise the reviewers who have not approved are blocking, falling back
   to the author when none can be named.
"""

import logging

from prnudge.github.provider import BranchNotProtected, GitHubProvider
from prnudge.models import (
    REVIEW_APPROVED,
    REVIEW_CHANGES_REQUESTED,
    ActorDetails,
    PullRequest,
    Repository,
    Review,
)

logger = logging.getLogger("prnudge.actor")

# Lower rank sorts first when two reviews share a submission time
_STATE_RANK = {REVIEW_CHANGES_REQUESTED: 0, REVIEW_APPROVED: 2}
_OTHER_STATE_RANK = 1


def _recency_key(review: Review) -> tuple:
    return (-review.submitted_at.timestamp(), _STATE_RANK.get(review.state, _OTHER_STATE_RANK))


def group_reviews_by_reviewer(reviews: list[Review]) -> dict[str, list[Review]]:
    """Group reviews per reviewer, most recent first.

    Reviewers keep the order in which their first review arrived.
    """
    grouped: dict[str, list[Review]] = {}
    for review in reviews:
        grouped.setdefault(review.reviewer, []).append(review)
    for reviewer_reviews in grouped.values():
        reviewer_reviews.sort(key=_recency_key)
    return grouped


def is_pr_reviewed(requested_reviewers: list[str], required_approvals: int) -> bool:
    """A PR is reviewed once nobody is left in the requested-reviewers list.

    GitHub drops a reviewer from the requested list as soon as they submit a
    review, so an empty list means every requested review was given. The
    answer is the same whether or not approvals are required.
    """
    return len(requested_reviewers) == 0


def is_pr_approved(reviews: list[Review], required_approvals: int) -> bool:
    """Aggregate per-reviewer review state into an approval decision.

    For each reviewer, the most recent review with a decisive state
    (approved or changes requested) decides their vote. Any reviewer whose
    vote is changes requested blocks approval.
    """
    if required_approvals == 0:
        return True
    if len(reviews) < required_approvals:
        return False

    for reviewer_reviews in group_reviews_by_reviewer(reviews).values():
        for review in reviewer_reviews:
            if review.state == REVIEW_CHANGES_REQUESTED:
                return False
            if review.state == REVIEW_APPROVED:
                break
    return True


def has_pending_author_items(reviews: list[Review]) -> bool:
    """Check whether any stored review still asks something of the author.

    Resolved review threads are pruned from storage when the resolution event
    arrives, so any remaining review that is not an approval is treated as
    outstanding feedback.
    """
    return any(review.state != REVIEW_APPROVED for review in reviews)


def author_feedback(reviews: list[Review]) -> list[Review]:
    """Reviews that represent feedback for the author.

    A reviewer's standing verdict of changes requested (their most recent
    review) puts the next move on that reviewer and is left out; superseded
    reviews and comment reviews stay in.
    """
    standing = {
        reviewer_reviews[0].review_id
        for reviewer_reviews in group_reviews_by_reviewer(reviews).values()
        if reviewer_reviews[0].state == REVIEW_CHANGES_REQUESTED
    }
    return [review for review in reviews if review.review_id not in standing]


def resolve_blocking_actors(
    requested_reviewers: list[str],
    reviews: list[Review],
    author: str,
    required_approvals: int,
) -> list[ActorDetails]:
    """Determine the ordered list of actors blocking a pull request.

    Args:
        requested_reviewers: Reviewers whose review is still pending.
        reviews: Submitted reviews in arrival order.
        author: Login of the pull request author.
        required_approvals: Approvals required by branch protection.

    Returns:
        Non-empty list of blocking actors.
    """
    if not is_pr_reviewed(requested_reviewers, required_approvals):
        return [ActorDetails(is_reviewer=True, identity=login) for login in requested_reviewers]

    author_actor = ActorDetails(is_reviewer=False, identity=author)

    if is_pr_approved(reviews, required_approvals):
        return [author_actor]

    if has_pending_author_items(author_feedback(reviews)):
        return [author_actor]

    actors = [
        ActorDetails(is_reviewer=True, identity=reviewer)
        for reviewer, reviewer_reviews in group_reviews_by_reviewer(reviews).items()
        if reviewer_reviews[0].state != REVIEW_APPROVED
    ]
    if not actors:
        # More approvals required than reviewers who have acted
        return [author_actor]
    return actors


class ActorResolver:
    """Resolves blocking actors using live GitHub state and stored reviews."""

    def __init__(self, provider: GitHubProvider, required_approvals_default: int = 0):
        """Initialize actor resolver.

        Args:
            provider: GitHub provider for PR details and branch protection.
            required_approvals_default: Used when the base branch is protected
                without a pull-request-review rule.
        """
        self.provider = provider
        self.required_approvals_default = required_approvals_default

    def required_approvals(self, repo: Repository, branch: str) -> int:
        """Look up the number of approving reviews branch protection requires.

        Raises:
            ProviderError: If protection cannot be fetched for any reason other
                than the branch being unprotected.
        """
        try:
            protection = self.provider.get_branch_protection(
                repo.name, branch, repo.owner, repo.installation_id
            )
        except BranchNotProtected:
            return 0

        if protection.required_approving_review_count is None:
            return self.required_approvals_default
        return protection.required_approving_review_count

    def resolve(self, pr: PullRequest, repo: Repository) -> list[ActorDetails]:
        """Resolve the actors currently blocking a pull request.

        Raises:
            ProviderError: If GitHub cannot be reached.
            RateLimitExhausted: If the installation's API quota is spent.
        """
        details = self.provider.get_pull_request(
            pr.number, repo.owner, repo.name, repo.installation_id
        )
        required = self.required_approvals(repo, details.base_ref)

        actors = resolve_blocking_actors(
            requested_reviewers=details.requested_reviewers,
            reviews=pr.reviews,
            author=details.author,
            required_approvals=required,
        )
        logger.debug(
            f"{repo.full_name}#{pr.number}: required approvals {required}, "
            f"blocking {[a.identity for a in actors]}"
        )
        return actors
