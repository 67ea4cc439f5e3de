"""
Pipeline configuration management.

Configuration is loaded from multiple sources with a clear priority order:

    1. Environment variables (highest priority) - for containerized deployments
    2. Config file (config/eventchain.ini) - for static deployments
    3. Built-in defaults (lowest priority) - sensible fallbacks

Unlike a module-level singleton, configuration is loaded explicitly with
:func:`load_config` and handed to the components that need it.  Required
fields (topic id, operator credentials) have no usable default, so
:meth:`PipelineConfig.validate` fails fast when they are missing.

Usage:
    from eventchain.config import load_config

    cfg = load_config()
    cfg.validate()
    print(cfg.log.topic_id)
    print(cfg.retry.max_retries)

Environment Variable Mapping:
    EVENTCHAIN_TOPIC_ID              -> log.topic_id
    EVENTCHAIN_OPERATOR_ID           -> log.operator_id
    EVENTCHAIN_OPERATOR_KEY          -> log.operator_key
    EVENTCHAIN_NETWORK               -> log.network_type
    EVENTCHAIN_MIRROR_NODE_URL       -> log.mirror_node_url
    EVENTCHAIN_MESSAGE_TIMEOUT_MS    -> log.message_timeout_ms
    EVENTCHAIN_MAX_RETRIES           -> retry.max_retries
    EVENTCHAIN_BASE_DELAY_MS         -> retry.base_delay_ms
    EVENTCHAIN_MAX_DELAY_MS          -> retry.max_delay_ms
    EVENTCHAIN_CONFIRMATION_BUDGET_MS -> confirmation.budget_ms
    EVENTCHAIN_MAX_PAYLOAD_BYTES     -> codec.max_payload_bytes
    EVENTCHAIN_DEAD_LETTER_PATH      -> dead_letter.path
    EVENTCHAIN_LOG_LEVEL             -> logging.level
"""

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from eventchain.errors import ConfigError

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root directory (contains src/, config/, data/)
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Config file paths
CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_FILE = CONFIG_DIR / "eventchain.ini"
CONFIG_EXAMPLE = CONFIG_DIR / "eventchain.example.ini"

# Read-side query endpoints, per network.
MIRROR_NODE_URLS = {
    "testnet": "https://testnet.mirrornode.hedera.com",
    "mainnet": "https://mainnet-public.mirrornode.hedera.com",
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================


@dataclass
class LogSettings:
    """Connection to the external append-only log and its query API."""

    topic_id: str = ""
    operator_id: str = ""
    operator_key: str = ""
    network_type: str = "testnet"
    mirror_node_url: str = ""  # empty = derive from network_type
    message_timeout_ms: int = 30_000
    page_limit: int = 100
    max_pages: int = 10

    @property
    def query_base_url(self) -> str:
        """Base URL of the read-side query API, without trailing slash."""
        url = self.mirror_node_url or MIRROR_NODE_URLS.get(self.network_type, "")
        return url.rstrip("/")


@dataclass
class RetrySettings:
    """Bounded exponential backoff for submissions."""

    max_retries: int = 3
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 10_000.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.0  # fraction of the delay added at random, 0 = none


@dataclass
class ConfirmationSettings:
    """Latency budget for confirmation and retrieval."""

    budget_ms: int = 30_000
    initial_poll_interval_ms: int = 500
    max_poll_interval_ms: int = 1000


@dataclass
class CodecSettings:
    """Transport payload limits."""

    max_payload_bytes: int = 1024


@dataclass
class IntegritySettings:
    """Chain validation thresholds."""

    min_signature_length: int = 10


@dataclass
class DeadLetterSettings:
    """Where failed submissions are set aside."""

    path: str = "data/dead_letters.jsonl"

    @property
    def absolute_path(self) -> Path:
        """Get absolute path to the dead-letter file."""
        p = Path(self.path)
        if p.is_absolute():
            return p
        return PROJECT_ROOT / p


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["simple", "detailed", "json"] = "detailed"

    def validate(self) -> None:
        """Raise ConfigError unless ``level`` names a standard logging level."""
        if self.level.upper() not in LOG_LEVELS:
            raise ConfigError(
                "Unknown logging level",
                detail=f"{self.level!r} (expected one of {', '.join(LOG_LEVELS)})",
            )


@dataclass
class PipelineConfig:
    """
    Complete pipeline configuration.

    Aggregates all settings sections.  Build it with :func:`load_config` and
    call :meth:`validate` before handing it to the pipeline.
    """

    log: LogSettings = field(default_factory=LogSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    confirmation: ConfirmationSettings = field(default_factory=ConfirmationSettings)
    codec: CodecSettings = field(default_factory=CodecSettings)
    integrity: IntegritySettings = field(default_factory=IntegritySettings)
    dead_letter: DeadLetterSettings = field(default_factory=DeadLetterSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def validate(self) -> None:
        """
        Check that every required field is present and every number is sane.

        Raises:
            ConfigError: On the first problem found.
        """
        if not self.log.topic_id or not self.log.topic_id.strip():
            raise ConfigError("Log topic id is required", detail="set log.topic_id")
        if not self.log.operator_id or not self.log.operator_key:
            raise ConfigError(
                "Operator identity and key are required",
                detail="set log.operator_id and log.operator_key",
            )
        if self.log.network_type not in MIRROR_NODE_URLS:
            raise ConfigError(
                "Unknown network type",
                detail=f"{self.log.network_type!r} (expected one of {sorted(MIRROR_NODE_URLS)})",
            )
        if self.log.message_timeout_ms <= 0:
            raise ConfigError("message_timeout_ms must be positive")
        if self.log.page_limit <= 0 or self.log.max_pages <= 0:
            raise ConfigError("page_limit and max_pages must be positive")
        if self.retry.max_retries < 0:
            raise ConfigError("max_retries cannot be negative")
        if self.retry.base_delay_ms < 0 or self.retry.max_delay_ms < 0:
            raise ConfigError("Retry delays cannot be negative")
        if self.retry.backoff_multiplier < 1:
            raise ConfigError("backoff_multiplier must be at least 1")
        if self.confirmation.budget_ms <= 0:
            raise ConfigError("Confirmation budget must be positive")
        if (
            self.confirmation.initial_poll_interval_ms <= 0
            or self.confirmation.max_poll_interval_ms <= 0
        ):
            raise ConfigError("Poll intervals must be positive")
        if self.codec.max_payload_bytes <= 0:
            raise ConfigError("max_payload_bytes must be positive")
        if self.integrity.min_signature_length < 1:
            raise ConfigError("min_signature_length must be at least 1")
        self.logging.validate()


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def _parse_float(value: str, name: str) -> float:
    """Parse a numeric setting, reporting bad input as a ConfigError."""
    try:
        return float(value)
    except ValueError as e:
        raise ConfigError(f"Invalid number for {name}", detail=repr(value)) from e


def _parse_int(value: str, name: str) -> int:
    """Parse an integer setting, reporting bad input as a ConfigError."""
    try:
        return int(value)
    except ValueError as e:
        raise ConfigError(f"Invalid integer for {name}", detail=repr(value)) from e


def _load_from_ini(parser: configparser.ConfigParser, cfg: PipelineConfig) -> None:
    """Load configuration from parsed INI file into PipelineConfig."""
    # Log section
    if parser.has_section("log"):
        for key in ("topic_id", "operator_id", "operator_key", "mirror_node_url"):
            if parser.has_option("log", key):
                setattr(cfg.log, key, parser.get("log", key).strip())
        if parser.has_option("log", "network_type"):
            cfg.log.network_type = parser.get("log", "network_type").strip().lower()
        for key in ("message_timeout_ms", "page_limit", "max_pages"):
            if parser.has_option("log", key):
                setattr(cfg.log, key, _parse_int(parser.get("log", key), key))

    # Retry section
    if parser.has_section("retry"):
        if parser.has_option("retry", "max_retries"):
            cfg.retry.max_retries = _parse_int(parser.get("retry", "max_retries"), "max_retries")
        for key in ("base_delay_ms", "max_delay_ms", "backoff_multiplier", "jitter"):
            if parser.has_option("retry", key):
                setattr(cfg.retry, key, _parse_float(parser.get("retry", key), key))

    # Confirmation section
    if parser.has_section("confirmation"):
        for key in ("budget_ms", "initial_poll_interval_ms", "max_poll_interval_ms"):
            if parser.has_option("confirmation", key):
                setattr(cfg.confirmation, key, _parse_int(parser.get("confirmation", key), key))

    # Codec section
    if parser.has_section("codec") and parser.has_option("codec", "max_payload_bytes"):
        cfg.codec.max_payload_bytes = _parse_int(
            parser.get("codec", "max_payload_bytes"), "max_payload_bytes"
        )

    # Integrity section
    if parser.has_section("integrity") and parser.has_option("integrity", "min_signature_length"):
        cfg.integrity.min_signature_length = _parse_int(
            parser.get("integrity", "min_signature_length"), "min_signature_length"
        )

    # Dead-letter section
    if parser.has_section("dead_letter") and parser.has_option("dead_letter", "path"):
        cfg.dead_letter.path = parser.get("dead_letter", "path")

    # Logging section
    if parser.has_section("logging"):
        if parser.has_option("logging", "level"):
            cfg.logging.level = parser.get("logging", "level").upper()
        if parser.has_option("logging", "format"):
            val = parser.get("logging", "format").lower()
            if val in ("simple", "detailed", "json"):
                cfg.logging.format = val  # type: ignore[assignment]


def _apply_env_overrides(cfg: PipelineConfig) -> None:
    """Apply environment variable overrides to configuration."""
    # Log settings
    if env_topic := os.getenv("EVENTCHAIN_TOPIC_ID"):
        cfg.log.topic_id = env_topic
    if env_operator := os.getenv("EVENTCHAIN_OPERATOR_ID"):
        cfg.log.operator_id = env_operator
    if env_key := os.getenv("EVENTCHAIN_OPERATOR_KEY"):
        cfg.log.operator_key = env_key
    if env_network := os.getenv("EVENTCHAIN_NETWORK"):
        cfg.log.network_type = env_network.lower()
    if env_url := os.getenv("EVENTCHAIN_MIRROR_NODE_URL"):
        cfg.log.mirror_node_url = env_url
    if env_timeout := os.getenv("EVENTCHAIN_MESSAGE_TIMEOUT_MS"):
        cfg.log.message_timeout_ms = _parse_int(env_timeout, "EVENTCHAIN_MESSAGE_TIMEOUT_MS")

    # Retry settings
    if env_retries := os.getenv("EVENTCHAIN_MAX_RETRIES"):
        cfg.retry.max_retries = _parse_int(env_retries, "EVENTCHAIN_MAX_RETRIES")
    if env_base := os.getenv("EVENTCHAIN_BASE_DELAY_MS"):
        cfg.retry.base_delay_ms = _parse_float(env_base, "EVENTCHAIN_BASE_DELAY_MS")
    if env_max := os.getenv("EVENTCHAIN_MAX_DELAY_MS"):
        cfg.retry.max_delay_ms = _parse_float(env_max, "EVENTCHAIN_MAX_DELAY_MS")

    # Confirmation and codec settings
    if env_budget := os.getenv("EVENTCHAIN_CONFIRMATION_BUDGET_MS"):
        cfg.confirmation.budget_ms = _parse_int(env_budget, "EVENTCHAIN_CONFIRMATION_BUDGET_MS")
    if env_size := os.getenv("EVENTCHAIN_MAX_PAYLOAD_BYTES"):
        cfg.codec.max_payload_bytes = _parse_int(env_size, "EVENTCHAIN_MAX_PAYLOAD_BYTES")

    # Dead-letter settings
    if env_dlq := os.getenv("EVENTCHAIN_DEAD_LETTER_PATH"):
        cfg.dead_letter.path = env_dlq

    # Logging settings
    if env_log := os.getenv("EVENTCHAIN_LOG_LEVEL"):
        cfg.logging.level = env_log.upper()


def load_config(config_file: Path | str | None = None) -> PipelineConfig:
    """
    Load configuration from all sources with proper priority.

    Priority (highest wins):
        1. Environment variables
        2. ``config_file`` if given, else config/eventchain.ini
        3. config/eventchain.example.ini (fallback for development)
        4. Built-in defaults

    The result is not validated; call :meth:`PipelineConfig.validate`.

    Args:
        config_file: Explicit INI file to read.  Must exist when given.

    Returns:
        PipelineConfig: Fully populated configuration object.

    Raises:
        ConfigError: If ``config_file`` is given but missing, or a numeric
                     value cannot be parsed.
    """
    cfg = PipelineConfig()

    path: Path | None = None
    if config_file is not None:
        path = Path(config_file)
        if not path.exists():
            raise ConfigError("Config file not found", detail=str(path))
    elif CONFIG_FILE.exists():
        path = CONFIG_FILE
    elif CONFIG_EXAMPLE.exists():
        # Use example as fallback for development
        path = CONFIG_EXAMPLE

    if path:
        parser = configparser.ConfigParser()
        parser.read(path)
        _load_from_ini(parser, cfg)

    # Apply environment variable overrides (highest priority)
    _apply_env_overrides(cfg)

    return cfg


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def _mask(secret: str) -> str:
    """Hide all but the last four characters of a credential."""
    if not secret:
        return "(not set)"
    if len(secret) <= 4:
        return "****"
    return "*" * (len(secret) - 4) + secret[-4:]


def get_config_status(cfg: PipelineConfig) -> dict:
    """
    Get configuration status for diagnostics.

    Credentials are masked so the result is safe to print or log.
    """
    return {
        "config_file_exists": CONFIG_FILE.exists(),
        "config_file_path": str(CONFIG_FILE),
        "using_example": not CONFIG_FILE.exists() and CONFIG_EXAMPLE.exists(),
        "topic_id": cfg.log.topic_id or "(not set)",
        "network_type": cfg.log.network_type,
        "query_base_url": cfg.log.query_base_url,
        "operator_id": cfg.log.operator_id or "(not set)",
        "operator_key": _mask(cfg.log.operator_key),
        "max_retries": cfg.retry.max_retries,
        "confirmation_budget_ms": cfg.confirmation.budget_ms,
        "max_payload_bytes": cfg.codec.max_payload_bytes,
        "dead_letter_path": str(cfg.dead_letter.absolute_path),
    }


def print_config_summary(cfg: PipelineConfig) -> None:
    """Print a summary of the given configuration to stdout."""
    status = get_config_status(cfg)
    print("\n" + "=" * 60)
    print("EVENTCHAIN CONFIGURATION")
    print("=" * 60)
    print(f"Config file: {status['config_file_path']}")
    print(f"File exists: {status['config_file_exists']}")
    if status["using_example"]:
        print("WARNING: Using example config (copy to eventchain.ini for production)")
    print("-" * 60)
    print(f"Topic:        {status['topic_id']}")
    print(f"Network:      {status['network_type']} ({status['query_base_url']})")
    print(f"Operator:     {status['operator_id']} / {status['operator_key']}")
    print(f"Max retries:  {status['max_retries']}")
    print(f"Budget:       {status['confirmation_budget_ms']} ms")
    print(f"Max payload:  {status['max_payload_bytes']} bytes")
    print(f"Dead letters: {status['dead_letter_path']}")
    print("=" * 60 + "\n")
