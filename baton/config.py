"""Baton configuration — loaded from .env via pydantic-settings."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class BatonSettings(BaseSettings):
    """All Baton configuration. Reads from .env file and BATON_* environment variables."""

    # --- Execution engine ---
    max_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum number of tasks running at the same time",
    )
    provider_deadline_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Deadline for a single provider invocation (expiry falls back to the next provider)",
    )
    cancel_grace_seconds: float = Field(
        default=5.0,
        ge=0,
        description="How long a cancelled provider call may take to acknowledge before force-cancel",
    )
    event_queue_size: int = Field(
        default=256,
        ge=1,
        description="Bound of every event queue (engine and subscribers) — backpressure point",
    )

    # --- Budget ---
    budget_ceiling: float | None = Field(
        default=None,
        description="Hard spend ceiling (USD) per budget window; None = unlimited",
    )
    budget_window_seconds: float = Field(
        default=30 * 24 * 3600,
        gt=0,
        description="Length of the budget window (default: 30 days)",
    )
    budget_warn_percent: float = Field(
        default=80.0,
        description="Log a warning once window spend crosses this share of the ceiling",
    )

    # --- Routing ---
    routing_mode: str = Field(
        default="auto",
        description="Routing preset: auto | pinned | unified",
    )
    unified_provider: str = Field(
        default="",
        description="Provider id used for every task when routing_mode=unified",
    )
    pinned_providers: dict[str, str] = Field(
        default_factory=dict,
        description="capability → provider id, used when routing_mode=pinned",
    )
    high_complexity_threshold: int = Field(
        default=8,
        ge=1,
        le=10,
        description="Complexity at or above which high-tier providers are preferred",
    )
    allow_general_fallback: bool = Field(
        default=True,
        description="Let general-purpose providers serve tasks whose capability they don't declare",
    )

    # --- Providers ---
    providers_file: Path | None = Field(
        default=None,
        description="JSON file listing provider configurations",
    )
    planner_provider: str = Field(
        default="",
        description="Provider id used by the planner; empty = keyword planner",
    )

    # --- Persistence side observer ---
    persist_records: bool = Field(
        default=False,
        description="Append orchestration records to JSONL files under trace_dir",
    )
    trace_dir: Path = Field(
        default=Path.home() / ".baton" / "records",
        description="Directory for persisted orchestration records",
    )
    chunk_batch_size: int = Field(
        default=16,
        ge=1,
        description="Output chunks per persisted output_chunk record",
    )

    # --- Logging ---
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="console",
        description="Log format: 'console' for dev, 'json' for production",
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "BATON_",
        "extra": "ignore",
    }


# Import this singleton everywhere
settings = BatonSettings()
