"""Configuration management for Mod-Director."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from moddirector.errors import ConfigurationError

DEFAULT_GEMINI_API_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "gemini-3-flash-preview:generateContent"
)


class RegexPatternConfig(BaseModel):
    """Raw Layer 1 pattern lists, one per category."""

    slurs: list[str] = Field(default_factory=list)
    invite_links: list[str] = Field(default_factory=list)
    phishing_urls: list[str] = Field(default_factory=list)


def default_patterns() -> RegexPatternConfig:
    """Patterns used when nothing is configured.

    Slurs are left empty; server admins are expected to supply their own.
    """
    return RegexPatternConfig(
        slurs=[],
        invite_links=[
            r"discord\.gg/[a-zA-Z0-9]+",
            r"discord\.com/invite/[a-zA-Z0-9]+",
            r"discordapp\.com/invite/[a-zA-Z0-9]+",
        ],
        phishing_urls=[
            r"discord-?nitro.*\.(?:com|net|org|xyz|ru)",
            r"steam-?community.*\.(?:com|net|org|xyz|ru)",
            r"free-?nitro.*\.(?:com|net|org|xyz|ru)",
        ],
    )


def parse_pattern_list(value: str | None) -> list[str]:
    """Split a comma-separated pattern list, dropping blanks."""
    if value is None:
        return []
    return [p.strip() for p in value.split(",") if p.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Remote classifier
    gemini_api_key: SecretStr | None = Field(
        default=None, description="Gemini API key; unset means regex-only moderation"
    )
    gemini_api_url: str = Field(
        default=DEFAULT_GEMINI_API_URL, description="Gemini generateContent endpoint"
    )
    gemini_timeout: float = Field(default=30.0, description="Classifier HTTP timeout (seconds)")
    gemini_requests_per_minute: int = Field(
        default=60, description="Outbound classifier request quota"
    )

    # Notifications
    mod_role_id: int | None = Field(
        default=None, description="Role mentioned on high-severity violation notices"
    )

    # Message buffer
    buffer_flush_threshold: int = Field(default=10, description="Messages before a count flush")
    buffer_timeout_secs: float = Field(default=30.0, description="Seconds before a timeout flush")

    # Background sweeps
    flush_poll_interval: float = Field(default=5.0, description="Timeout-flush poll interval")
    raid_check_interval: float = Field(default=60.0, description="Raid expiry sweep interval")
    decay_interval: float = Field(default=3600.0, description="Warning decay sweep interval")

    # Raid detection
    raid_join_window_secs: float = Field(default=60.0, description="Join tracking window")
    raid_join_threshold: int = Field(default=10, description="Joins in window to trigger")
    raid_new_account_days: int = Field(default=7, description="Account age counted as new")
    raid_new_account_ratio: float = Field(default=0.7, description="Minimum new-account share")
    raid_message_window_secs: float = Field(default=30.0, description="Flood tracking window")
    raid_message_threshold: int = Field(
        default=5, description="Distinct authors posting the same content to trigger"
    )
    raid_similarity_threshold: float = Field(
        default=0.8, description="Minimum share of windowed messages with that content"
    )
    raid_expiry_secs: float = Field(default=600.0, description="Raid mode auto-expiry")

    # Layer 1 patterns
    regex_patterns_path: str | None = Field(
        default=None, description="JSON file with slurs/invite_links/phishing_urls lists"
    )
    regex_slurs: str | None = Field(default=None, description="Comma-separated slur patterns")
    regex_invite_links: str | None = Field(
        default=None, description="Comma-separated invite link patterns"
    )
    regex_phishing_urls: str | None = Field(
        default=None, description="Comma-separated phishing URL patterns"
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Logging Configuration
    log_to_file: bool = Field(default=False, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=52428800,  # 50MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=10, description="Number of rotated log files to keep"
    )
    log_file_prefix: str = Field(default="moddirector", description="Prefix for log file names")

    @field_validator("raid_new_account_ratio", "raid_similarity_threshold")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        """Validate ratios are between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError(f"Value must be between 0 and 1, got: {v}")
        return v

    @field_validator("gemini_requests_per_minute", "buffer_flush_threshold")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate counters that must be at least one."""
        if v < 1:
            raise ValueError(f"Value must be at least 1, got: {v}")
        return v

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}.log"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    def load_patterns(self) -> RegexPatternConfig:
        """Resolve Layer 1 patterns: file first, then env lists, then defaults.

        Raises:
            ConfigurationError: If the pattern file is missing or malformed.
        """
        if self.regex_patterns_path:
            return load_patterns_from_file(self.regex_patterns_path)

        slurs = parse_pattern_list(self.regex_slurs)
        invite_links = parse_pattern_list(self.regex_invite_links)
        phishing_urls = parse_pattern_list(self.regex_phishing_urls)
        if not (slurs or invite_links or phishing_urls):
            return default_patterns()

        return RegexPatternConfig(
            slurs=slurs, invite_links=invite_links, phishing_urls=phishing_urls
        )


def load_patterns_from_file(path: str | Path) -> RegexPatternConfig:
    """Load a :class:`RegexPatternConfig` from a JSON file."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read patterns file: {e}") from e

    try:
        return RegexPatternConfig.model_validate_json(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Failed to parse patterns file: {e}") from e


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
