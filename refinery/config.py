# ============================================================================
# Refinery - Service Configuration
# ============================================================================
"""
Service configuration module using Pydantic Settings.

This module defines all configuration parameters for the refinement worker,
including:
- Database connection and pool sizing
- Worker loop timing (baseline interval, idle backoff, heartbeats)
- Shutdown drain and hard timeout
- Batch sizes for each step of a worker tick
- Retry bounds for pipeline tasks and transformation jobs
- Import paths of the semantic mapper, content transformer and quality gates

Environment Variables:
    Every field can be overridden by an environment variable of the same
    name (case-insensitive), e.g. LOOP_INTERVAL_MS=2000.

Usage:
    from refinery.config import settings
    interval = settings.loop_interval_ms
"""

from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # =========================================================================
    # SERVICE SETTINGS
    # =========================================================================
    service_name: str = Field(
        default="refinement_service",
        description="Name under which checkpoints and error checkpoints are stored",
    )
    debug: bool = Field(default=False, description="Enable verbose logging & SQL echo")
    log_level: str = Field(default="INFO", description="Root log level for CLI entry points")

    # =========================================================================
    # DATABASE CONFIGURATION
    # =========================================================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/refinery.db",
        description="SQLAlchemy async database URL (aiosqlite or asyncpg)",
    )
    db_pool_size: int = Field(default=5, description="Connection pool size (PostgreSQL)")
    db_max_overflow: int = Field(default=0, description="Extra connections beyond pool size")
    db_pool_recycle: int = Field(default=3600, description="Recycle connections after N seconds")

    # =========================================================================
    # WORKER LOOP TIMING
    # =========================================================================
    loop_interval_ms: int = Field(default=5000, description="Baseline sleep between ticks")
    min_loop_interval_ms: int = Field(default=1000, description="Lower clamp for the baseline")
    max_loop_interval_ms: int = Field(default=30000, description="Upper cap for idle backoff")
    idle_backoff_multiplier: float = Field(
        default=1.5, description="Interval multiplier per consecutive idle tick"
    )
    idle_backoff_max_exponent: int = Field(
        default=5, description="Consecutive idle ticks after which backoff stops growing"
    )
    heartbeat_interval_seconds: int = Field(
        default=120, description="Idle time after which a heartbeat checkpoint is written"
    )
    healthy_checkpoint_age_seconds: int = Field(
        default=300, description="Checkpoint age beyond which the worker is reported unhealthy"
    )

    # =========================================================================
    # SHUTDOWN
    # =========================================================================
    shutdown_drain_seconds: float = Field(
        default=2.0, description="Delay after the last tick before the pool is closed"
    )
    shutdown_timeout_seconds: float = Field(
        default=60.0, description="Hard limit for the whole shutdown sequence"
    )

    # =========================================================================
    # BATCH SIZES (per tick)
    # =========================================================================
    active_pipeline_batch_size: int = Field(default=10, description="Processing pipelines advanced")
    parked_pipeline_batch_size: int = Field(
        default=10, description="Pipelines in mapping/transforming/completed rescanned"
    )
    pending_pipeline_batch_size: int = Field(default=5, description="Pending pipelines started")
    promotion_batch_size: int = Field(default=10, description="Candidates gated per batch")
    pending_document_batch_size: int = Field(
        default=5, description="Raw documents without a pipeline processed"
    )

    # =========================================================================
    # RETRIES AND THRESHOLDS
    # =========================================================================
    max_task_retries: int = Field(default=3, description="Failed task attempts before giving up")
    max_transformation_retries: int = Field(
        default=3, description="Failed transformation attempts allowed per mapping"
    )
    min_mapping_confidence: float = Field(
        default=0.3, description="Mapping proposals below this confidence are discarded"
    )
    stale_work_hours: int = Field(
        default=24, description="Work queue claims older than this are released"
    )

    # =========================================================================
    # EXTRACTION / CHUNKING DEFAULTS
    # =========================================================================
    uploads_dir: str = Field(default="./data/uploads", description="Where uploaded documents live")
    chunk_max_words: int = Field(default=400, description="Target words per chunk")
    chunk_min_words: int = Field(default=5, description="Chunks shorter than this are dropped")

    # =========================================================================
    # CONTENT DEFAULTS
    # =========================================================================
    default_language: str = Field(default="EN", description="Language used when none is known")
    default_level: str = Field(default="A1", description="CEFR level used when none is known")
    transformer_model: Optional[str] = Field(
        default=None, description="Model name recorded on transformation jobs"
    )

    # =========================================================================
    # COLLABORATORS
    # =========================================================================
    # Import paths, "package.module:Name" or "package.module.Name". A class is
    # instantiated without arguments; any other object is used as is.
    semantic_mapper_class: Optional[str] = Field(
        default=None, description="Semantic mapper; without one pipelines stop after chunking"
    )
    content_transformer_class: Optional[str] = Field(
        default=None, description="Content transformer used by transform tasks"
    )
    quality_gate_classes: List[str] = Field(
        default_factory=list,
        description="Quality gates for promotion (JSON list); empty uses the structural defaults",
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    # -------- Path helpers --------
    @property
    def uploads_path(self) -> Path:
        return Path(self.uploads_dir)


settings = Settings()
