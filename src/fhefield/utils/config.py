"""
fhefield Configuration Module

Provides centralized configuration management with:
- Environment variable loading (FHE_ prefix)
- Type validation via Pydantic
- Development overrides via .env file

The algebraic constants of the ciphertext model (base noise, growth factors,
maximum noise, maximum ciphertext size) live in ``fhefield.he.constants`` and
are not configurable here.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FheFieldSettings(BaseSettings):
    """
    Runtime settings for the field encryption service.

    Usage:
        from fhefield.utils.config import settings

        pool = ComputePool(max_workers=settings.WORKER_POOL_SIZE)
    """

    model_config = SettingsConfigDict(
        env_prefix="FHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # GENERAL
    # ==========================================================================
    ENVIRONMENT: str = Field(default="development", description="Runtime environment: development, staging, production")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level: DEBUG, INFO, WARNING, ERROR")

    # ==========================================================================
    # SCHEME DEFAULTS
    # ==========================================================================
    DEFAULT_SCHEME: str = Field(default="tfhe", description="Scheme used when a request names none")
    DEFAULT_SECURITY_LEVEL: int = Field(default=192, description="Security level in bits (128, 192, 256)")

    # ==========================================================================
    # WORKER POOL / BATCHING
    # ==========================================================================
    WORKER_POOL_SIZE: int = Field(default=4, ge=1, description="Threads in the cryptographic worker pool")
    MAX_BATCH_SIZE: int = Field(default=50, ge=1, description="Maximum fields per batch request")
    BATCH_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0, description="Timeout for a whole batch")

    # ==========================================================================
    # CACHES
    # ==========================================================================
    KEY_CACHE_TTL_SECONDS: float = Field(default=3600.0, gt=0, description="Key pair cache TTL (1 hour)")
    BOOTSTRAP_KEY_CACHE_TTL_SECONDS: float = Field(default=7200.0, gt=0, description="Bootstrapping key cache TTL (2 hours)")

    # ==========================================================================
    # CIRCUITS
    # ==========================================================================
    MAX_CIRCUIT_DEPTH: int = Field(default=20, ge=1, description="Maximum multiplicative depth of a circuit")

    # ==========================================================================
    # BRING-UP / RETRIES
    # ==========================================================================
    INIT_MAX_RETRIES: int = Field(default=3, ge=0, description="Initialization retries before failing")
    INIT_RETRY_BASE_DELAY_SECONDS: float = Field(default=0.5, ge=0, description="Base backoff delay for initialization")
    CUSTODIAN_MAX_RETRIES: int = Field(default=2, ge=0, description="Key custodian I/O retries")

    # ==========================================================================
    # KEY WRAPPING
    # ==========================================================================
    MASTER_KEY_HEX: Optional[str] = Field(default=None, description="Hex-encoded 32-byte key wrapping custody material")

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    def master_key(self) -> Optional[bytes]:
        """Decode MASTER_KEY_HEX, if set."""
        if not self.MASTER_KEY_HEX:
            return None
        return bytes.fromhex(self.MASTER_KEY_HEX)

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production readiness.

        Returns:
            List of configuration warnings/errors
        """
        issues = []

        if self.is_production():
            if not self.MASTER_KEY_HEX:
                issues.append("CRITICAL: FHE_MASTER_KEY_HEX not set")
            if self.LOG_LEVEL.upper() == "DEBUG":
                issues.append("WARNING: FHE_LOG_LEVEL=DEBUG in production")

        if self.MASTER_KEY_HEX:
            try:
                if len(bytes.fromhex(self.MASTER_KEY_HEX)) != 32:
                    issues.append("CRITICAL: FHE_MASTER_KEY_HEX must decode to 32 bytes")
            except ValueError:
                issues.append("CRITICAL: FHE_MASTER_KEY_HEX is not valid hex")

        return issues


# Global settings instance
settings = FheFieldSettings()

if settings.is_production():
    _issues = settings.validate_production_config()
    if _issues:
        import logging

        _logger = logging.getLogger(__name__)
        for issue in _issues:
            if issue.startswith("CRITICAL"):
                _logger.critical(issue)
            else:
                _logger.warning(issue)
