"""
Configuration schema using Pydantic for validation.

Single source of truth for all engine parameters.
Validates on load, fails fast on invalid config.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from typing import Optional, Dict, Any
from pathlib import Path
from enum import Enum

import pytz


# ============================================================================
# ENUMS
# ============================================================================

class StoreBackend(str, Enum):
    """Supported transaction store backends."""
    SQLITE = "sqlite"
    MEMORY = "memory"


class LogLevel(str, Enum):
    """Log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ============================================================================
# NEGOTIATION CONFIGURATION
# ============================================================================

class NegotiationConfig(BaseModel):
    """
    Decision windows for offers and swaps.

    RULES:
    - Offers always carry a deadline (window reopens on every counter)
    - Swaps carry a deadline only when swap_ttl_hours is set
    """

    offer_ttl_hours: float = Field(
        gt=0,
        le=24 * 30,
        default=48.0,
        description="Hours the responder has to answer an offer or counter"
    )

    swap_ttl_hours: Optional[float] = Field(
        default=None,
        gt=0,
        description="Hours the counterparty has to answer a swap proposal (None = no deadline)"
    )

    counter_resets_expiry: bool = Field(
        default=True,
        description="A counter-offer reopens the full decision window"
    )


# ============================================================================
# FULFILLMENT CONFIGURATION
# ============================================================================

class FulfillmentConfig(BaseModel):
    """Post-acceptance fulfillment parameters."""

    max_merge_attempts: int = Field(
        ge=1,
        le=50,
        default=5,
        description="Re-read/re-apply attempts for per-party writes on version conflict"
    )

    stall_after_hours: Optional[float] = Field(
        default=24 * 14,
        gt=0,
        description="Flag fulfillment idle for longer than this (None = never flag)"
    )

    default_timezone: str = Field(
        default="Europe/Madrid",
        description="Timezone used to interpret naive meetup times"
    )

    @field_validator("default_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        if value not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {value}")
        return value


# ============================================================================
# SWEEPER CONFIGURATION
# ============================================================================

class SweeperConfig(BaseModel):
    """Expiry sweeper parameters."""

    enabled: bool = Field(default=True, description="Run the periodic sweeper")

    interval_s: float = Field(
        gt=0,
        le=86_400,
        default=300.0,
        description="Seconds between sweeps"
    )

    batch_size: int = Field(
        ge=1,
        le=100_000,
        default=500,
        description="Maximum records expired per sweep"
    )


# ============================================================================
# PERSISTENCE CONFIGURATION
# ============================================================================

class StoreConfig(BaseModel):
    """Transaction record store."""

    backend: StoreBackend = Field(default=StoreBackend.SQLITE)

    db_path: Path = Field(
        default=Path("data/deals/deals.db"),
        description="SQLite database file"
    )

    busy_timeout_ms: int = Field(
        ge=0,
        le=120_000,
        default=5_000,
        description="SQLite busy timeout"
    )


class JournalConfig(BaseModel):
    """Append-only transition journal."""

    enabled: bool = Field(default=True)

    path: Path = Field(
        default=Path("data/deals/transitions.log"),
        description="NDJSON journal file"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    log_dir: Path = Field(
        default=Path("logs"),
        description="Base log directory"
    )

    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="File logging level"
    )

    console_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Console logging level"
    )

    json_logs: bool = Field(
        default=True,
        description="Use JSON formatting"
    )

    max_bytes: int = Field(
        ge=1_000_000,
        le=100_000_000,
        default=10_000_000,
        description="Max bytes per log file"
    )

    backup_count: int = Field(
        ge=1,
        le=20,
        default=5,
        description="Number of backup files"
    )


class EventsConfig(BaseModel):
    """Event bus configuration."""

    max_queue_size: int = Field(ge=1, default=10_000)

    synchronous: bool = Field(
        default=False,
        description="Dispatch events inline instead of on the bus thread"
    )


# ============================================================================
# MASTER CONFIGURATION
# ============================================================================

class DealDeskConfig(BaseModel):
    """
    Master configuration schema.

    Every block has defaults, so an empty YAML document is a valid config.
    """

    negotiation: NegotiationConfig = Field(default_factory=NegotiationConfig)
    fulfillment: FulfillmentConfig = Field(default_factory=FulfillmentConfig)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    journal: JournalConfig = Field(default_factory=JournalConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(validate_assignment=True)

    @model_validator(mode="after")
    def _journal_apart_from_db(self):
        if self.journal.enabled and self.store.backend == StoreBackend.SQLITE:
            if self.journal.path.resolve() == self.store.db_path.resolve():
                raise ValueError("journal.path must differ from store.db_path")
        return self

    def ensure_directories(self) -> None:
        """Create directories for configured files."""
        if self.store.backend == StoreBackend.SQLITE:
            self.store.db_path.parent.mkdir(parents=True, exist_ok=True)
        if self.journal.enabled:
            self.journal.path.parent.mkdir(parents=True, exist_ok=True)
        self.logging.log_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_yaml(cls, path: Path) -> "DealDeskConfig":
        """Load config from YAML file."""
        import yaml
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DealDeskConfig":
        return cls(**data)

    def to_yaml(self, path: Path) -> None:
        """Save config to YAML file."""
        import yaml
        data = self.model_dump(mode="json")
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
