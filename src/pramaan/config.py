"""
Configuration management for the Pramaan core.

This module loads settings from environment variables and ``.env`` files,
wires structured logging, and assembles the immutable ``ProtocolConfig``
that every component receives at construction time. Cryptographic
parameters are resolved once here and never mutated afterwards.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from dotenv import load_dotenv

from .constants import (
    ARGON2_MEMORY_COST as DEFAULT_ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST as DEFAULT_ARGON2_TIME_COST,
    DEFAULT_CHALLENGE_TTL_SECONDS,
    DEFAULT_DATABASE_FILE,
    DEFAULT_GEOFENCE_MAX_ACCURACY_M,
    DEFAULT_MIN_SALT_BYTES,
    DEFAULT_SECURITY_LOG_FILE,
    MAX_CHALLENGE_TTL_SECONDS,
    PROOF_SYSTEM_ID,
)
from .exceptions import ConfigurationError
from .group import DEFAULT_GROUP, GroupParameters

# Load environment variables from .env file if it exists
load_dotenv()

# =============================================================================
# Base Paths
# =============================================================================
BASE_DIR: Path = Path(__file__).resolve().parent.parent

# Project root directory (parent of src/)
PROJECT_ROOT: Path = BASE_DIR.parent

# Log files directory
OUTPUT_LOG_PATH: Path = Path(os.getenv("OUTPUT_LOG_PATH", str(PROJECT_ROOT / "logs")))

# =============================================================================
# Persistence
# =============================================================================
DATABASE_URL: str = os.getenv(
    "PRAMAAN_DATABASE_URL", f"sqlite:///{PROJECT_ROOT / DEFAULT_DATABASE_FILE}"
)

# Echo SQL statements (development only)
DATABASE_ECHO: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"

# =============================================================================
# Protocol Settings
# =============================================================================
CHALLENGE_TTL_SECONDS: int = int(
    os.getenv("CHALLENGE_TTL_SECONDS", str(DEFAULT_CHALLENGE_TTL_SECONDS))
)

# Minimum salt length in bytes
MIN_SALT_BYTES: int = int(os.getenv("MIN_SALT_BYTES", str(DEFAULT_MIN_SALT_BYTES)))

# Server-side key for template tags; must be stable across restarts
REGISTRY_PEPPER: str = os.getenv("REGISTRY_PEPPER", "")

# Require a reported location inside the challenge geofence
ENFORCE_GEOFENCE: bool = os.getenv("ENFORCE_GEOFENCE", "true").lower() == "true"

# Largest GPS accuracy radius accepted when a geofence omits its own
GEOFENCE_MAX_ACCURACY_M: float = float(
    os.getenv("GEOFENCE_MAX_ACCURACY_M", str(DEFAULT_GEOFENCE_MAX_ACCURACY_M))
)

# =============================================================================
# Verification Worker Pool
# =============================================================================
# Maximum number of parallel proof verifications
MAX_WORKERS: int = int(os.getenv("MAX_WORKERS", str(os.cpu_count() or 4)))

# Executor flavour: "thread" or "process"
VERIFIER_POOL: str = os.getenv("VERIFIER_POOL", "thread").lower()

# =============================================================================
# Template Hashing (client side)
# =============================================================================
ARGON2_TIME_COST: int = int(os.getenv("ARGON2_TIME_COST", str(DEFAULT_ARGON2_TIME_COST)))
ARGON2_MEMORY_COST: int = int(
    os.getenv("ARGON2_MEMORY_COST", str(DEFAULT_ARGON2_MEMORY_COST))
)

# =============================================================================
# Logging Configuration
# =============================================================================
# Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Render logs as JSON instead of the console format
STRUCTURED_LOGGING: bool = os.getenv("STRUCTURED_LOGGING", "true").lower() == "true"

# JSON Lines file receiving security events (empty disables the file sink)
SECURITY_LOG_PATH: Optional[Path] = None
if security_path := os.getenv("SECURITY_LOG_PATH", str(OUTPUT_LOG_PATH / DEFAULT_SECURITY_LOG_FILE)):
    SECURITY_LOG_PATH = Path(security_path)

# =============================================================================
# Development and Debugging Configuration
# =============================================================================
DEBUG_MODE: bool = os.getenv("DEBUG_MODE", "false").lower() == "true"

# Pepper used only when REGISTRY_PEPPER is unset in debug mode
DEVELOPMENT_PEPPER = "pramaan-development-pepper"


# =============================================================================
# Logging Setup
# =============================================================================
def configure_logging(level: Optional[str] = None, structured: Optional[bool] = None) -> None:
    """
    Configure structlog for the process.

    Parameters
    ----------
    level : str, optional
        Log level name. Defaults to ``LOG_LEVEL``.
    structured : bool, optional
        Emit JSON lines instead of console output. Defaults to
        ``STRUCTURED_LOGGING``.
    """
    level_name = (level or LOG_LEVEL).upper()
    structured = STRUCTURED_LOGGING if structured is None else structured

    renderer = (
        structlog.processors.JSONRenderer()
        if structured
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# Protocol Configuration Object
# =============================================================================
@dataclass(frozen=True)
class ProtocolConfig:
    """
    Immutable protocol configuration, built once per process.

    Parameters
    ----------
    database_url : str
        SQLAlchemy URL of the persistent store.
    challenge_ttl_seconds : int
        Default challenge lifetime.
    min_salt_bytes : int
        Minimum enrollment salt length.
    registry_pepper : bytes
        HMAC key for template tags.
    enforce_geofence : bool
        Whether geofenced challenges require a reported location.
    geofence_max_accuracy_m : float
        Default accuracy limit for geofences.
    max_workers : int
        Size of the verification worker pool.
    verifier_pool : str
        ``"thread"`` or ``"process"``.
    argon2_time_cost, argon2_memory_cost, argon2_parallelism : int
        Client template hashing cost parameters.
    group : GroupParameters
        Resolved commitment group.
    proof_system : str
        Proof system identifier accepted by the verifier.
    """

    database_url: str = DATABASE_URL
    database_echo: bool = DATABASE_ECHO
    challenge_ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS
    min_salt_bytes: int = DEFAULT_MIN_SALT_BYTES
    registry_pepper: bytes = DEVELOPMENT_PEPPER.encode("utf-8")
    enforce_geofence: bool = True
    geofence_max_accuracy_m: float = DEFAULT_GEOFENCE_MAX_ACCURACY_M
    max_workers: int = 4
    verifier_pool: str = "thread"
    argon2_time_cost: int = DEFAULT_ARGON2_TIME_COST
    argon2_memory_cost: int = DEFAULT_ARGON2_MEMORY_COST
    argon2_parallelism: int = ARGON2_PARALLELISM
    security_log_path: Optional[Path] = None
    group: GroupParameters = field(default=DEFAULT_GROUP, repr=False)
    proof_system: str = PROOF_SYSTEM_ID

    def __post_init__(self) -> None:
        errors = []

        if not 1 <= self.challenge_ttl_seconds <= MAX_CHALLENGE_TTL_SECONDS:
            errors.append(
                f"challenge_ttl_seconds must be within 1..{MAX_CHALLENGE_TTL_SECONDS}"
            )
        if self.min_salt_bytes < 16:
            errors.append("min_salt_bytes must be at least 16")
        if len(self.registry_pepper) < 16:
            errors.append("registry_pepper must be at least 16 bytes")
        if self.max_workers < 1:
            errors.append("max_workers must be at least 1")
        if self.verifier_pool not in ("thread", "process"):
            errors.append("verifier_pool must be 'thread' or 'process'")
        if self.geofence_max_accuracy_m <= 0:
            errors.append("geofence_max_accuracy_m must be positive")
        if self.argon2_time_cost < 1 or self.argon2_memory_cost < 8:
            errors.append("argon2 costs are below the library minimum")

        if errors:
            raise ConfigurationError(
                "Protocol configuration invalid: " + "; ".join(errors),
                context={"errors": errors},
            )

    @classmethod
    def from_env(cls, **overrides: Any) -> "ProtocolConfig":
        """
        Build the configuration from module-level environment settings.

        Raises
        ------
        ConfigurationError
            If ``REGISTRY_PEPPER`` is missing outside debug mode, or any
            value is out of range.
        """
        pepper = REGISTRY_PEPPER
        if not pepper:
            if not DEBUG_MODE:
                raise ConfigurationError(
                    "REGISTRY_PEPPER must be set outside debug mode",
                    config_key="REGISTRY_PEPPER",
                )
            pepper = DEVELOPMENT_PEPPER

        config = cls(
            database_url=DATABASE_URL,
            database_echo=DATABASE_ECHO,
            challenge_ttl_seconds=CHALLENGE_TTL_SECONDS,
            min_salt_bytes=MIN_SALT_BYTES,
            registry_pepper=pepper.encode("utf-8"),
            enforce_geofence=ENFORCE_GEOFENCE,
            geofence_max_accuracy_m=GEOFENCE_MAX_ACCURACY_M,
            max_workers=MAX_WORKERS,
            verifier_pool=VERIFIER_POOL,
            argon2_time_cost=ARGON2_TIME_COST,
            argon2_memory_cost=ARGON2_MEMORY_COST,
            security_log_path=SECURITY_LOG_PATH,
        )
        return replace(config, **overrides) if overrides else config

    def summary(self) -> Dict[str, Any]:
        """Log-safe view of the configuration (the pepper is omitted)."""
        return {
            "database_url": self.database_url,
            "challenge_ttl_seconds": self.challenge_ttl_seconds,
            "min_salt_bytes": self.min_salt_bytes,
            "enforce_geofence": self.enforce_geofence,
            "geofence_max_accuracy_m": self.geofence_max_accuracy_m,
            "max_workers": self.max_workers,
            "verifier_pool": self.verifier_pool,
            "proof_system": self.proof_system,
            "group": self.group.summary(),
            "security_log_path": str(self.security_log_path) if self.security_log_path else None,
        }


# =============================================================================
# Configuration Validation
# =============================================================================
def validate_configuration() -> bool:
    """
    Validate the current environment settings.

    Returns
    -------
    bool
        True if configuration is valid.

    Raises
    ------
    ValueError
        If critical configuration parameters are invalid.
    """
    errors = []

    if MAX_WORKERS < 1:
        errors.append("MAX_WORKERS must be at least 1")

    if VERIFIER_POOL not in ("thread", "process"):
        errors.append("VERIFIER_POOL must be 'thread' or 'process'")

    if not 1 <= CHALLENGE_TTL_SECONDS <= MAX_CHALLENGE_TTL_SECONDS:
        errors.append(f"CHALLENGE_TTL_SECONDS must be within 1..{MAX_CHALLENGE_TTL_SECONDS}")

    if MIN_SALT_BYTES < 16:
        errors.append("MIN_SALT_BYTES must be at least 16")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if LOG_LEVEL not in valid_log_levels:
        errors.append(f"LOG_LEVEL must be one of {valid_log_levels}")

    if errors:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"- {error}" for error in errors)
        )

    return True


def get_config_summary() -> dict:
    """
    Get a summary of the current environment configuration.

    Returns
    -------
    dict
        Dictionary containing key configuration parameters.
    """
    return {
        "persistence": {
            "database_url": DATABASE_URL,
            "echo": DATABASE_ECHO,
        },
        "protocol": {
            "challenge_ttl_seconds": CHALLENGE_TTL_SECONDS,
            "min_salt_bytes": MIN_SALT_BYTES,
            "registry_pepper_set": bool(REGISTRY_PEPPER),
            "enforce_geofence": ENFORCE_GEOFENCE,
            "geofence_max_accuracy_m": GEOFENCE_MAX_ACCURACY_M,
            "proof_system": PROOF_SYSTEM_ID,
        },
        "processing": {
            "max_workers": MAX_WORKERS,
            "verifier_pool": VERIFIER_POOL,
        },
        "logging": {
            "level": LOG_LEVEL,
            "structured": STRUCTURED_LOGGING,
            "security_log_path": str(SECURITY_LOG_PATH) if SECURITY_LOG_PATH else None,
        },
        "debug_mode": DEBUG_MODE,
    }


# Validate configuration on import
if not DEBUG_MODE:
    validate_configuration()
