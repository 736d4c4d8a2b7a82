"""
Configuration loader with environment variable handling.

Loads configuration from:
1. config.yaml (main config, optional)
2. .env.local (loaded into process env, never overriding it)
3. DEALDESK_* environment variables (highest priority)
"""

import os
from pathlib import Path
from typing import Dict, Any, Callable, Tuple

from dotenv import load_dotenv
import yaml


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_optional_float(value: str):
    value = value.strip().lower()
    if value in {"", "none", "null", "off"}:
        return None
    return float(value)


class ConfigLoader:
    """
    Loads and merges configuration from multiple sources.

    Priority (highest to lowest):
    1. OS environment variables
    2. .env.local file
    3. config.yaml
    4. Schema defaults
    """

    # env var -> (section, key, parser)
    ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
        "DEALDESK_DB_PATH": ("store", "db_path", str),
        "DEALDESK_STORE_BACKEND": ("store", "backend", str),
        "DEALDESK_JOURNAL_PATH": ("journal", "path", str),
        "DEALDESK_JOURNAL_ENABLED": ("journal", "enabled", _as_bool),
        "DEALDESK_OFFER_TTL_HOURS": ("negotiation", "offer_ttl_hours", float),
        "DEALDESK_SWAP_TTL_HOURS": ("negotiation", "swap_ttl_hours", _as_optional_float),
        "DEALDESK_SWEEP_INTERVAL_S": ("sweeper", "interval_s", float),
        "DEALDESK_SWEEP_BATCH_SIZE": ("sweeper", "batch_size", int),
        "DEALDESK_SWEEPER_ENABLED": ("sweeper", "enabled", _as_bool),
        "DEALDESK_STALL_AFTER_HOURS": ("fulfillment", "stall_after_hours", _as_optional_float),
        "DEALDESK_TIMEZONE": ("fulfillment", "default_timezone", str),
        "DEALDESK_LOG_DIR": ("logging", "log_dir", str),
        "DEALDESK_LOG_LEVEL": ("logging", "log_level", str),
    }

    def __init__(self, config_dir: Path = Path("config")):
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "config.yaml"
        self.secrets_file = self.config_dir / ".env.local"

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from all sources.

        Returns:
            Merged configuration dictionary

        Raises:
            ValueError: If config.yaml is not a mapping or an override is malformed
        """
        config: Dict[str, Any] = {}

        if self.config_file.exists():
            with open(self.config_file, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
            if loaded is not None:
                if not isinstance(loaded, dict):
                    raise ValueError(f"Configuration file must contain a mapping: {self.config_file}")
                config = loaded

        # Do NOT override already-set OS env vars
        if self.secrets_file.exists():
            load_dotenv(self.secrets_file, override=False)

        for env_name, (section, key, parser) in self.ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            try:
                value = parser(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {env_name}: {raw!r}") from e
            block = config.setdefault(section, {})
            if not isinstance(block, dict):
                raise ValueError(f"Configuration section '{section}' must be a mapping")
            block[key] = value

        return config

    def load_and_validate(self):
        """
        Load and validate configuration.

        Returns:
            DealDeskConfig instance
        """
        from .schema import DealDeskConfig

        config_dict = self.load()

        try:
            return DealDeskConfig(**config_dict)
        except Exception as e:
            raise ValueError(f"Configuration validation failed: {e}") from e


def load_config(config_dir: Path = Path("config")):
    """
    Convenience function to load and validate configuration.

    Args:
        config_dir: Directory containing config files

    Returns:
        Validated DealDeskConfig instance
    """
    return ConfigLoader(config_dir).load_and_validate()
