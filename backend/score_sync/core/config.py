from pydantic_settings import BaseSettings
from pydantic import BaseModel, Field, validator
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Outcome Score Sync"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # Canvas settings
    CANVAS_BASE_URL: str = "https://canvas.instructure.com"
    CANVAS_API_TOKEN: str = ""
    CANVAS_TIMEOUT_SECONDS: int = 30

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./score_sync.db"
    DATABASE_ECHO: bool = False

    # Provisioned resource names
    AVG_OUTCOME_NAME: str = "Current Score"
    AVG_ASSIGNMENT_NAME: str = "Current Score Assignment"
    AVG_RUBRIC_NAME: str = "Current Score Rubric"
    DEFAULT_MAX_POINTS: float = 4
    DEFAULT_MASTERY_THRESHOLD: float = 3
    OUTCOME_AND_RUBRIC_RATINGS: List[Dict[str, Any]] = [
        {"description": "Exemplary", "points": 4},
        {"description": "Beyond Target", "points": 3.5},
        {"description": "Target", "points": 3},
        {"description": "Approaching Target", "points": 2.5},
        {"description": "Developing", "points": 2},
        {"description": "Beginning", "points": 1.5},
        {"description": "Needs Partial Support", "points": 1},
        {"description": "Needs Full Support", "points": 0.5},
        {"description": "No Evidence", "points": 0},
    ]
    AUTO_CONFIRM_PROVISIONING: bool = True

    # Calculation settings
    EXCLUDED_OUTCOME_KEYWORDS: List[str] = ["Homework Completion"]

    # Submission settings
    PER_RECORD_UPDATE_THRESHOLD: int = 25
    PER_RECORD_MAX_ATTEMPTS: int = 3
    DEFERRED_PASS_DELAY_SECONDS: float = 1.0
    BATCH_POLL_INTERVAL_SECONDS: float = 2.0
    BATCH_POLL_TIMEOUT_SECONDS: float = 1200.0

    # Verification settings
    VERIFY_TOLERANCE: float = 1e-3
    VERIFY_MAX_ATTEMPTS: int = 50
    VERIFY_WAIT_SECONDS: float = 5.0

    # Override channel settings
    ENABLE_GRADE_OVERRIDE: bool = True
    OVERRIDE_SCALE_FACTOR: float = 25.0
    OVERRIDE_TOLERANCE: float = 0.01
    OVERRIDE_VERIFY_MAX_RETRIES: int = 3
    OVERRIDE_VERIFY_RETRY_DELAY_SECONDS: float = 2.0

    @validator("EXCLUDED_OUTCOME_KEYWORDS", pre=True)
    def parse_keywords(cls, v):
        if isinstance(v, str):
            return [keyword.strip() for keyword in v.split(",") if keyword.strip()]
        return v

    @validator("DATABASE_URL")
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @validator("CANVAS_BASE_URL")
    def validate_canvas_base_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("CANVAS_BASE_URL must start with http:// or https://")
        return v.rstrip("/")

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()


def round_half_up(value: float, places: int = 2) -> float:
    """Round the exact binary value of ``value`` half-up to ``places`` decimals."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def make_override_scale(factor: float) -> Callable[[float], float]:
    """Build the pure transform mapping a derived value onto the override scale."""
    def scale(value: float) -> float:
        return round_half_up(value * factor, 2)
    return scale


class FlowConfig(BaseModel):
    """Budgets and switches for one synchronization flow."""

    outcome_name: str = "Current Score"
    assignment_name: str = "Current Score Assignment"
    rubric_name: str = "Current Score Rubric"
    excluded_keywords: List[str] = Field(default_factory=lambda: ["Homework Completion"])

    per_record_threshold: int = 25
    per_record_max_attempts: int = 3
    deferred_pass_delay: float = 1.0

    poll_interval: float = 2.0
    poll_timeout: float = 1200.0

    verify_tolerance: float = 1e-3
    verify_max_attempts: int = 50
    verify_wait: float = 5.0

    enable_override: bool = True
    override_scale_factor: float = 25.0
    override_tolerance: float = 0.01
    override_verify_max_retries: int = 3
    override_verify_retry_delay: float = 2.0

    auto_confirm_provisioning: bool = True
    max_provisioning_rounds: int = 3

    @validator("per_record_threshold")
    def validate_threshold(cls, v):
        if v < 1:
            raise ValueError("per_record_threshold must be at least 1")
        return v

    @validator(
        "per_record_max_attempts",
        "verify_max_attempts",
        "override_verify_max_retries",
        "max_provisioning_rounds",
    )
    def validate_budget(cls, v):
        if v < 1:
            raise ValueError("attempt budgets must be at least 1")
        return v

    @validator(
        "deferred_pass_delay",
        "poll_interval",
        "poll_timeout",
        "verify_wait",
        "override_verify_retry_delay",
        "verify_tolerance",
        "override_tolerance",
    )
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("delays and tolerances cannot be negative")
        return v

    @property
    def override_scale(self) -> Callable[[float], float]:
        return make_override_scale(self.override_scale_factor)

    @classmethod
    def from_settings(cls, source: Settings) -> "FlowConfig":
        return cls(
            outcome_name=source.AVG_OUTCOME_NAME,
            assignment_name=source.AVG_ASSIGNMENT_NAME,
            rubric_name=source.AVG_RUBRIC_NAME,
            excluded_keywords=list(source.EXCLUDED_OUTCOME_KEYWORDS),
            per_record_threshold=source.PER_RECORD_UPDATE_THRESHOLD,
            per_record_max_attempts=source.PER_RECORD_MAX_ATTEMPTS,
            deferred_pass_delay=source.DEFERRED_PASS_DELAY_SECONDS,
            poll_interval=source.BATCH_POLL_INTERVAL_SECONDS,
            poll_timeout=source.BATCH_POLL_TIMEOUT_SECONDS,
            verify_tolerance=source.VERIFY_TOLERANCE,
            verify_max_attempts=source.VERIFY_MAX_ATTEMPTS,
            verify_wait=source.VERIFY_WAIT_SECONDS,
            enable_override=source.ENABLE_GRADE_OVERRIDE,
            override_scale_factor=source.OVERRIDE_SCALE_FACTOR,
            override_tolerance=source.OVERRIDE_TOLERANCE,
            override_verify_max_retries=source.OVERRIDE_VERIFY_MAX_RETRIES,
            override_verify_retry_delay=source.OVERRIDE_VERIFY_RETRY_DELAY_SECONDS,
            auto_confirm_provisioning=source.AUTO_CONFIRM_PROVISIONING,
        )
