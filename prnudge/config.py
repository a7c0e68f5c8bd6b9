"""Configuration management for PRNudge."""

from pathlib import Path
from typing import Literal

import pytz
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

TimeUnit = Literal["h", "m"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # GitHub App
    github_app_id: str = Field(
        default="",
        description="GitHub App ID used to mint installation tokens",
    )
    github_private_key: str = Field(
        default="",
        description="GitHub App private key (PEM contents)",
    )
    github_private_key_path: str = Field(
        default="",
        description="Path to the GitHub App private key PEM file",
    )
    github_webhook_secret: str = Field(
        default="",
        description="Secret used to verify X-Hub-Signature-256 on webhooks",
    )

    # Activity detection
    quiet_window: float = Field(
        default=24.0,
        description="No activity within this window means the PR is inactive",
        gt=0,
    )
    quiet_window_unit: TimeUnit = Field(
        default="h",
        description="Unit of quiet_window: 'h' for hours, 'm' for minutes",
    )
    default_lifetime_hours: int = Field(
        default=48,
        description="Predicted PR lifetime used by the default estimator",
        ge=0,
    )

    # Backfill
    ignore_bot_prs: bool = Field(
        default=False,
        description="Skip PRs opened by bot accounts when backfilling newly added repositories",
    )

    # Actor identification
    required_approvals_default: int = Field(
        default=0,
        description="Required approvals when branch protection has no review rule",
        ge=0,
    )

    # Notification policy
    follow_up_threshold: int = Field(
        default=3,
        description="Maximum number of nudges ever sent for a single PR",
        ge=0,
    )
    skip_days: str = Field(
        default="",
        description="Comma-separated days of week to stay silent (0=Sunday .. 6=Saturday)",
    )
    default_timezone: str = Field(
        default="UTC",
        description="Timezone used when a team has none stored",
    )
    business_hours_start: int = Field(
        default=9,
        description="Default start of business hours (hour of day, team-local)",
        ge=0,
        le=23,
    )
    business_hours_end: int = Field(
        default=17,
        description="Default end of business hours (hour of day, team-local)",
        ge=0,
        le=23,
    )

    # Schedule
    poll_interval: int = Field(
        default=1,
        description="Interval between workflow runs",
        ge=1,
    )
    poll_interval_unit: TimeUnit = Field(
        default="h",
        description="Unit of poll_interval: 'h' for hours, 'm' for minutes",
    )

    health_check_grace_seconds: int = Field(
        default=600,
        description="Seconds allowed past one poll interval before --health-check reports a stale heartbeat",
        ge=0,
    )

    # Concurrency and timeouts
    max_workers: int = Field(
        default=4,
        description="Number of concurrent repository scan workers",
        ge=1,
        le=32,
    )
    scan_timeout_seconds: float = Field(
        default=30.0,
        description="Deadline for joining the concurrent repository scan",
        gt=0,
    )
    http_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for each GitHub / Slack HTTP call",
        gt=0,
    )
    db_timeout_seconds: float = Field(
        default=3.0,
        description="SQLite busy timeout for each store operation",
        gt=0,
    )

    # Storage
    db_path: str = Field(
        default="data/prnudge.db",
        description="Path to the SQLite database file",
    )

    # Webhook server
    host: str = Field(default="0.0.0.0", description="Webhook server bind address")
    port: int = Field(default=8080, description="Webhook server port", ge=1, le=65535)
    admin_token: str = Field(
        default="",
        description="Bearer token required by the installation preference endpoints (empty disables the check)",
    )

    # Runtime flags
    dry_run: bool = Field(
        default=False,
        description="Log nudges that would be sent without sending them",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["text", "json"] = Field(
        default="text",
        description="Log output format: 'text' for human-readable, 'json' for structured",
    )

    @field_validator("default_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate timezone is a valid IANA timezone name."""
        try:
            pytz.timezone(v)
            return v
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Invalid timezone: {v}. Must be a valid IANA timezone name.")

    @field_validator("skip_days")
    @classmethod
    def validate_skip_days(cls, v: str) -> str:
        """Validate skip days are integers between 0 and 6."""
        for part in v.split(","):
            part = part.strip()
            if not part:
                continue
            if not part.isdigit() or not 0 <= int(part) <= 6:
                raise ValueError(
                    f"Invalid skip day: {part}. Must be 0 (Sunday) through 6 (Saturday)."
                )
        return v

    @model_validator(mode="after")
    def validate_business_hours(self) -> "Settings":
        """Validate the default business-hour window is not inverted."""
        if self.business_hours_start > self.business_hours_end:
            raise ValueError(
                f"business_hours_start ({self.business_hours_start}) must not be after "
                f"business_hours_end ({self.business_hours_end})"
            )
        return self

    @property
    def skip_day_list(self) -> list[int]:
        """Get skip days as a list of integers."""
        return sorted({int(d.strip()) for d in self.skip_days.split(",") if d.strip()})

    def get_private_key(self) -> str:
        """Get the GitHub App private key.

        Raises:
            ValueError: If neither an inline key nor a readable key path is configured.
        """
        if self.github_private_key:
            return self.github_private_key

        if self.github_private_key_path:
            key_path = Path(self.github_private_key_path).expanduser()
            if key_path.exists():
                return key_path.read_text()

        raise ValueError(
            "GitHub App private key not configured. "
            "Set GITHUB_PRIVATE_KEY or GITHUB_PRIVATE_KEY_PATH"
        )


def load_settings() -> Settings:
    """Load and return application settings.

    Returns:
        Settings instance with values from environment.
    """
    return Settings()
