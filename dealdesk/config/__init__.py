"""
Configuration system with Pydantic validation.
"""

from .schema import (
    DealDeskConfig,
    NegotiationConfig,
    FulfillmentConfig,
    SweeperConfig,
    StoreConfig,
    JournalConfig,
    EventsConfig,
    LoggingConfig,
    StoreBackend,
    LogLevel,
)

from .loader import (
    ConfigLoader,
    load_config,
)

from .env import load_env, env_flag, env_path

__all__ = [
    "DealDeskConfig",
    "NegotiationConfig",
    "FulfillmentConfig",
    "SweeperConfig",
    "StoreConfig",
    "JournalConfig",
    "EventsConfig",
    "LoggingConfig",
    "StoreBackend",
    "LogLevel",
    "ConfigLoader",
    "load_config",
    "load_env",
    "env_flag",
    "env_path",
]
