"""Persistent storage for pull request workflow state, repositories and installations."""

import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from prnudge.database.models import (
    ChatMappingRecord,
    InstallationRecord,
    PullRequestRecord,
    RepositoryRecord,
    RequestedReviewerRecord,
    ReviewRecord,
    WorkflowRun,
)
from prnudge.models import (
    PR_STATUS_OPEN,
    BusinessHours,
    ChatMapping,
    Installation,
    PRActivityUpdate,
    PRStatusUpdate,
    PullRequest,
    Repository,
    Review,
    WorkflowSummary,
)
from prnudge.utils import ensure_utc, utcnow

logger = logging.getLogger("prnudge.database.store")


class StoreError(Exception):
    """Raised when a storage operation fails."""


class NotFoundError(StoreError):
    """Raised when a requested record does not exist."""


def _naive_utc(value: datetime | None) -> datetime | None:
    """SQLite DateTime columns hold naive UTC."""
    value = ensure_utc(value)
    return value.replace(tzinfo=None) if value is not None else None


def _to_pull_request(record: PullRequestRecord) -> PullRequest:
    return PullRequest(
        pr_id=record.pr_id,
        number=record.number,
        repo_id=record.repo_id,
        status=record.status,
        lifetime_hours=record.lifetime_hours,
        created_at=ensure_utc(record.pr_created_at),
        updated_at=ensure_utc(record.pr_updated_at),
        author=record.author,
        workflow_last_activity_at=ensure_utc(record.workflow_last_activity_at),
        last_workflow_action=record.last_workflow_action,
        last_workflow_action_category=record.last_workflow_action_category,
        requested_reviewers=[r.login for r in record.requested_reviewers],
        reviews=[
            Review(
                review_id=r.review_id,
                reviewer=r.reviewer,
                state=r.state,
                submitted_at=ensure_utc(r.submitted_at),
            )
            for r in record.reviews
        ],
        total_bot_comments=record.total_bot_comments or 0,
        last_bot_comment_at=ensure_utc(record.last_bot_comment_at),
    )


def _to_repository(record: RepositoryRecord) -> Repository:
    return Repository(
        repo_id=record.repo_id,
        installation_id=record.installation_id,
        owner=record.owner,
        name=record.name,
    )


def _to_installation(record: InstallationRecord) -> Installation:
    hours = None
    if record.business_hours_start is not None and record.business_hours_end is not None:
        hours = BusinessHours(start=record.business_hours_start, end=record.business_hours_end)
    return Installation(
        installation_id=record.installation_id,
        account_login=record.account_login,
        chat_access_token=record.chat_access_token,
        chat_default_channel=record.chat_default_channel,
        timezone=record.timezone,
        business_hours=hours,
        chat_mappings=[
            ChatMapping(github_login=m.github_login, chat_user_id=m.chat_user_id)
            for m in record.chat_mappings
        ],
    )


class NudgeStore:
    """Manages workflow state in a SQLite database.

    Every public operation runs in its own short session and raises
    StoreError (or NotFoundError) instead of leaking SQLAlchemy exceptions.
    """

    def __init__(self, db_path: str = "data/prnudge.db", timeout: float = 3.0):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file.
            timeout: Seconds a statement waits on a locked database before failing.
        """
        self.db_path = db_path

        # Ensure directory exists
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_url = f"sqlite:///{db_path}"
        self.engine = create_engine(
            self.db_url,
            echo=False,
            connect_args={"timeout": timeout, "check_same_thread": False},
        )
        busy_timeout_ms = int(timeout * 1000)

        # WAL lets the scan workers read while the webhook server writes
        @event.listens_for(self.engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        # expire_on_commit=False prevents detached instance errors when accessing
        # ORM objects after the session closes
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        self._run_migrations()
        logger.debug(f"Database initialized at {db_path}")

    def _run_migrations(self) -> None:
        """Run Alembic migrations to bring the schema up to date."""
        from alembic import command
        from alembic.config import Config

        try:
            alembic_cfg = Config()
            migrations_dir = str(Path(__file__).parent.parent.parent / "migrations")
            alembic_cfg.set_main_option("script_location", migrations_dir)
            alembic_cfg.set_main_option("sqlalchemy.url", self.db_url)
            alembic_cfg.attributes["engine"] = self.engine
            command.upgrade(alembic_cfg, "head")
        except Exception as e:
            logger.error(f"Database migration failed: {e}")
            raise RuntimeError(
                f"Failed to run database migrations: {e}. "
                f"Check database at {self.db_path} for corruption."
            ) from e

    @staticmethod
    def _get_pr_record(session: Session, pr_id: int) -> PullRequestRecord:
        record = (
            session.query(PullRequestRecord)
            .filter(PullRequestRecord.pr_id == pr_id)
            .first()
        )
        if record is None:
            raise NotFoundError(f"Pull request {pr_id} not found")
        return record

    @staticmethod
    def _get_installation_record(session: Session, installation_id: int) -> InstallationRecord:
        record = (
            session.query(InstallationRecord)
            .filter(InstallationRecord.installation_id == installation_id)
            .first()
        )
        if record is None:
            raise NotFoundError(f"Installation {installation_id} not found")
        return record

    # Pull requests

    def find_open_prs(self, repo_id: int) -> list[PullRequest]:
        """Get all open pull requests of a repository."""
        try:
            with self.SessionLocal() as session:
                records = (
                    session.query(PullRequestRecord)
                    .options(
                        selectinload(PullRequestRecord.requested_reviewers),
                        selectinload(PullRequestRecord.reviews),
                    )
                    .filter(
                        PullRequestRecord.repo_id == repo_id,
                        PullRequestRecord.status == PR_STATUS_OPEN,
                    )
                    .order_by(PullRequestRecord.number)
                    .all()
                )
                return [_to_pull_request(r) for r in records]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch open PRs for repo {repo_id}: {e}") from e

    def get_pr(self, pr_id: int) -> PullRequest:
        """Get a pull request by its GitHub id.

        Raises:
            NotFoundError: If the pull request is not tracked.
        """
        try:
            with self.SessionLocal() as session:
                return _to_pull_request(self._get_pr_record(session, pr_id))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch PR {pr_id}: {e}") from e

    def find_pr_by_number(self, repo_id: int, number: int) -> PullRequest:
        """Get a pull request by repository and number, preferring the open record.

        Raises:
            NotFoundError: If no such pull request is tracked.
        """
        try:
            with self.SessionLocal() as session:
                records = (
                    session.query(PullRequestRecord)
                    .filter(
                        PullRequestRecord.repo_id == repo_id,
                        PullRequestRecord.number == number,
                    )
                    .order_by(PullRequestRecord.id.desc())
                    .all()
                )
                if not records:
                    raise NotFoundError(f"Pull request #{number} of repo {repo_id} not found")
                open_records = [r for r in records if r.status == PR_STATUS_OPEN]
                return _to_pull_request((open_records or records)[0])
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch PR #{number} of repo {repo_id}: {e}") from e

    def upsert_pr(self, pr: PullRequest) -> None:
        """Insert a pull request, or refresh identity and lifecycle fields of an existing one.

        Reviews, activity and nudge counters of an existing record are kept.
        Requested reviewers are replaced by the given list.
        """
        try:
            with self.SessionLocal() as session:
                record = (
                    session.query(PullRequestRecord)
                    .filter(PullRequestRecord.pr_id == pr.pr_id)
                    .first()
                )
                if record is None:
                    record = PullRequestRecord(
                        pr_id=pr.pr_id,
                        total_bot_comments=pr.total_bot_comments,
                        last_bot_comment_at=_naive_utc(pr.last_bot_comment_at),
                        workflow_last_activity_at=_naive_utc(pr.workflow_last_activity_at),
                        last_workflow_action=pr.last_workflow_action,
                        last_workflow_action_category=pr.last_workflow_action_category,
                    )
                    session.add(record)
                    action = "Created"
                else:
                    action = "Updated"

                record.number = pr.number
                record.repo_id = pr.repo_id
                record.status = pr.status
                record.lifetime_hours = pr.lifetime_hours
                record.author = pr.author
                record.pr_created_at = _naive_utc(pr.created_at)
                record.pr_updated_at = _naive_utc(pr.updated_at)
                # Reuse rows for logins already pending to keep the unique constraint happy
                pending = {r.login: r for r in record.requested_reviewers}
                record.requested_reviewers = [
                    pending.get(login) or RequestedReviewerRecord(login=login)
                    for login in dict.fromkeys(pr.requested_reviewers)
                ]
                session.commit()
                logger.debug(f"{action} PR {pr.pr_id} (#{pr.number}, repo {pr.repo_id})")
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to upsert PR {pr.pr_id}: {e}") from e

    def update_pr_fields(self, pr_id: int, update: PRStatusUpdate | PRActivityUpdate) -> None:
        """Apply a typed partial update to a pull request.

        Raises:
            NotFoundError: If the pull request is not tracked.
            TypeError: If the update type is not supported.
        """
        try:
            with self.SessionLocal() as session:
                record = self._get_pr_record(session, pr_id)
                if isinstance(update, PRStatusUpdate):
                    record.status = update.status
                elif isinstance(update, PRActivityUpdate):
                    record.workflow_last_activity_at = _naive_utc(update.at)
                    record.last_workflow_action = update.action
                    record.last_workflow_action_category = update.category
                else:
                    raise TypeError(f"Unsupported PR update: {type(update).__name__}")
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update PR {pr_id}: {e}") from e

    def increment_comment_counter(self, pr_id: int, at: datetime | None = None) -> None:
        """Count a nudge against a pull request and stamp when it was sent.

        Raises:
            NotFoundError: If the pull request is not tracked.
        """
        try:
            with self.SessionLocal() as session:
                updated = (
                    session.query(PullRequestRecord)
                    .filter(PullRequestRecord.pr_id == pr_id)
                    .update(
                        {
                            PullRequestRecord.total_bot_comments: PullRequestRecord.total_bot_comments + 1,
                            PullRequestRecord.last_bot_comment_at: _naive_utc(at or utcnow()),
                        },
                        synchronize_session=False,
                    )
                )
                if not updated:
                    raise NotFoundError(f"Pull request {pr_id} not found")
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to increment comment counter for PR {pr_id}: {e}") from e

    def add_requested_reviewer(self, pr_id: int, login: str) -> None:
        """Add a pending reviewer; adding an already pending reviewer is a no-op."""
        try:
            with self.SessionLocal() as session:
                record = self._get_pr_record(session, pr_id)
                if login not in {r.login for r in record.requested_reviewers}:
                    record.requested_reviewers.append(RequestedReviewerRecord(login=login))
                    session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to add reviewer {login} to PR {pr_id}: {e}") from e

    def remove_requested_reviewer(self, pr_id: int, login: str) -> None:
        """Remove a pending reviewer if present."""
        try:
            with self.SessionLocal() as session:
                record = self._get_pr_record(session, pr_id)
                record.requested_reviewers = [
                    r for r in record.requested_reviewers if r.login != login
                ]
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to remove reviewer {login} from PR {pr_id}: {e}") from e

    def add_review(self, pr_id: int, review: Review) -> None:
        """Append a review; a review id seen before is ignored."""
        try:
            with self.SessionLocal() as session:
                record = self._get_pr_record(session, pr_id)
                if review.review_id in {r.review_id for r in record.reviews}:
                    logger.debug(f"Review {review.review_id} already stored for PR {pr_id}")
                    return
                record.reviews.append(
                    ReviewRecord(
                        review_id=review.review_id,
                        reviewer=review.reviewer,
                        state=review.state,
                        submitted_at=_naive_utc(review.submitted_at),
                    )
                )
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to add review {review.review_id} to PR {pr_id}: {e}") from e

    def remove_review(self, pr_id: int, review_id: int) -> bool:
        """Remove a review.

        Returns:
            True if a review was removed.
        """
        try:
            with self.SessionLocal() as session:
                record = self._get_pr_record(session, pr_id)
                remaining = [r for r in record.reviews if r.review_id != review_id]
                removed = len(remaining) != len(record.reviews)
                record.reviews = remaining
                session.commit()
                return removed
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to remove review {review_id} from PR {pr_id}: {e}") from e

    # Repositories

    def find_all_repositories(self) -> list[Repository]:
        """Get every monitored repository."""
        try:
            with self.SessionLocal() as session:
                records = session.query(RepositoryRecord).order_by(RepositoryRecord.id).all()
                return [_to_repository(r) for r in records]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch repositories: {e}") from e

    def create_repositories(self, repos: list[Repository]) -> int:
        """Start monitoring repositories; already known repository ids are skipped.

        Returns:
            Number of repositories created.
        """
        try:
            with self.SessionLocal() as session:
                known = {
                    repo_id
                    for (repo_id,) in session.query(RepositoryRecord.repo_id).filter(
                        RepositoryRecord.repo_id.in_([r.repo_id for r in repos])
                    )
                }
                created = 0
                for repo in repos:
                    if repo.repo_id in known:
                        continue
                    session.add(
                        RepositoryRecord(
                            repo_id=repo.repo_id,
                            installation_id=repo.installation_id,
                            owner=repo.owner,
                            name=repo.name,
                        )
                    )
                    known.add(repo.repo_id)
                    created += 1
                session.commit()
                return created
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create repositories: {e}") from e

    def delete_repositories(self, installation_id: int, repo_ids: list[int] | None = None) -> int:
        """Stop monitoring repositories of an installation.

        Args:
            installation_id: Owning installation.
            repo_ids: Specific repositories to delete, or None for all of them.

        Returns:
            Number of repositories deleted.
        """
        try:
            with self.SessionLocal() as session:
                query = session.query(RepositoryRecord).filter(
                    RepositoryRecord.installation_id == installation_id
                )
                if repo_ids is not None:
                    query = query.filter(RepositoryRecord.repo_id.in_(repo_ids))
                deleted = query.delete(synchronize_session=False)
                session.commit()
                return deleted
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete repositories of installation {installation_id}: {e}") from e

    # Installations

    def upsert_installation(self, installation_id: int, account_login: str = "") -> None:
        """Create an installation, or refresh its account login."""
        try:
            with self.SessionLocal() as session:
                record = (
                    session.query(InstallationRecord)
                    .filter(InstallationRecord.installation_id == installation_id)
                    .first()
                )
                if record is None:
                    session.add(
                        InstallationRecord(installation_id=installation_id, account_login=account_login)
                    )
                elif account_login:
                    record.account_login = account_login
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to upsert installation {installation_id}: {e}") from e

    def delete_installation(self, installation_id: int) -> None:
        """Delete an installation together with its repositories."""
        try:
            with self.SessionLocal() as session:
                session.query(RepositoryRecord).filter(
                    RepositoryRecord.installation_id == installation_id
                ).delete(synchronize_session=False)
                record = (
                    session.query(InstallationRecord)
                    .filter(InstallationRecord.installation_id == installation_id)
                    .first()
                )
                if record is not None:
                    session.delete(record)
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete installation {installation_id}: {e}") from e

    def get_installation(self, installation_id: int) -> Installation:
        """Get an installation with its preferences and chat mappings.

        Raises:
            NotFoundError: If the installation does not exist.
        """
        try:
            with self.SessionLocal() as session:
                record = self._get_installation_record(session, installation_id)
                return _to_installation(record)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch installation {installation_id}: {e}") from e

    def find_installation_timezone(
        self, installation_id: int
    ) -> tuple[str | None, BusinessHours | None]:
        """Get the stored timezone and business hours of an installation.

        Raises:
            NotFoundError: If the installation does not exist.
        """
        installation = self.get_installation(installation_id)
        return installation.timezone, installation.business_hours

    def set_installation_preferences(
        self,
        installation_id: int,
        timezone: str | None = None,
        business_hours: BusinessHours | None = None,
        chat_access_token: str | None = None,
        chat_default_channel: str | None = None,
    ) -> None:
        """Update team preferences; fields passed as None are left unchanged.

        Raises:
            NotFoundError: If the installation does not exist.
        """
        try:
            with self.SessionLocal() as session:
                record = self._get_installation_record(session, installation_id)
                if timezone is not None:
                    record.timezone = timezone
                if business_hours is not None:
                    record.business_hours_start = business_hours.start
                    record.business_hours_end = business_hours.end
                if chat_access_token is not None:
                    record.chat_access_token = chat_access_token
                if chat_default_channel is not None:
                    record.chat_default_channel = chat_default_channel
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update preferences of installation {installation_id}: {e}") from e

    def add_chat_mappings(self, installation_id: int, mappings: list[ChatMapping]) -> None:
        """Add or replace GitHub login to chat user mappings.

        Raises:
            NotFoundError: If the installation does not exist.
        """
        try:
            with self.SessionLocal() as session:
                record = self._get_installation_record(session, installation_id)
                existing = {m.github_login: m for m in record.chat_mappings}
                for mapping in mappings:
                    if mapping.github_login in existing:
                        existing[mapping.github_login].chat_user_id = mapping.chat_user_id
                    else:
                        new = ChatMappingRecord(
                            github_login=mapping.github_login,
                            chat_user_id=mapping.chat_user_id,
                        )
                        record.chat_mappings.append(new)
                        existing[mapping.github_login] = new
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to add chat mappings to installation {installation_id}: {e}") from e

    def find_chat_recipient(
        self, installation_id: int, github_login: str
    ) -> tuple[str, str] | None:
        """Find where to send a chat message for a GitHub user.

        A mapped chat user wins over the installation's default channel.

        Returns:
            (channel, access_token), or None if chat is not set up.
        """
        try:
            installation = self.get_installation(installation_id)
        except NotFoundError:
            return None

        if not installation.chat_access_token:
            return None

        for mapping in installation.chat_mappings:
            if mapping.github_login == github_login:
                return mapping.chat_user_id, installation.chat_access_token

        if installation.chat_default_channel:
            return installation.chat_default_channel, installation.chat_access_token
        return None

    # Workflow runs

    def start_run(self) -> int:
        """Start a new workflow run.

        Returns:
            The ID of the created WorkflowRun record.
        """
        try:
            with self.SessionLocal() as session:
                run = WorkflowRun(started_at=_naive_utc(utcnow()), status="running")
                session.add(run)
                session.commit()
                session.refresh(run)
                return run.id
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to start workflow run: {e}") from e

    def complete_run(
        self,
        run_id: int,
        summary: WorkflowSummary,
        error: str | None = None,
    ) -> bool:
        """Complete a workflow run.

        Returns:
            True if the database write succeeded.
        """
        try:
            with self.SessionLocal() as session:
                run = session.query(WorkflowRun).filter(WorkflowRun.id == run_id).first()
                if run:
                    run.completed_at = _naive_utc(summary.finished_at or utcnow())
                    run.repos_scanned = summary.repos_scanned
                    run.repos_failed = summary.repos_failed
                    run.stale_prs = summary.stale_prs
                    run.nudges_sent = summary.nudges_sent
                    run.status = "failed" if error else "completed"
                    run.error = error
                    session.commit()
                    logger.info(f"Completed workflow run #{run_id}: {run.status}")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to complete run #{run_id}: {e}")
            return False

    def get_run(self, run_id: int) -> WorkflowRun | None:
        """Get a specific workflow run by ID."""
        with self.SessionLocal() as session:
            return session.query(WorkflowRun).filter(WorkflowRun.id == run_id).first()

    def close(self) -> None:
        """Close the database engine and release connections."""
        if hasattr(self, "engine"):
            self.engine.dispose()
            logger.debug("Database engine disposed")
