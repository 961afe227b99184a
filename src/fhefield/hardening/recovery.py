"""
Retry policies with backoff.

Used where a failure is transient rather than the caller's fault: engine
bring-up (InitializationFailed) and key custodian I/O. Structural caller
errors are configured as non-retryable and surface on the first attempt.

Supports deterministic jitter (FHE_DETERMINISTIC=true) so retry timing is
reproducible in tests.
"""

import asyncio
import functools
import hashlib
import logging
import os
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def _is_deterministic_mode() -> bool:
    return os.getenv("FHE_DETERMINISTIC", "false").lower() == "true"


def _compute_deterministic_jitter(
    func_name: str,
    attempt: int,
    jitter_factor: float,
    base_delay: float,
) -> float:
    """Hash-derived jitter in [-base_delay*jitter_factor, +base_delay*jitter_factor]."""
    digest = hashlib.sha256(f"{func_name}:{attempt}".encode()).digest()
    normalized = int.from_bytes(digest[:8], byteorder="big") / (2**64 - 1)
    jitter_range = base_delay * jitter_factor
    return (normalized * 2 - 1) * jitter_range


class BackoffStrategy(Enum):
    """Backoff strategies for retry logic."""

    CONSTANT = "constant"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    EXPONENTIAL_JITTER = "exponential_jitter"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.25
    retryable_exceptions: tuple = (Exception,)
    non_retryable_exceptions: tuple = ()


class RetryPolicy:
    """
    Configurable retry policy with multiple backoff strategies.

    ``execute`` blocks between attempts; ``execute_async`` awaits
    ``asyncio.sleep`` so the event loop keeps serving other requests.
    """

    def __init__(self, config: Optional[RetryConfig] = None, func_name: Optional[str] = None):
        self.config = config or RetryConfig()
        self._func_name = func_name or "unknown"

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before retry number ``attempt`` (0-based)."""
        cfg = self.config
        strategy = cfg.backoff_strategy

        if strategy == BackoffStrategy.CONSTANT:
            delay = cfg.base_delay_seconds
        elif strategy == BackoffStrategy.LINEAR:
            delay = cfg.base_delay_seconds * (attempt + 1)
        elif strategy == BackoffStrategy.EXPONENTIAL:
            delay = cfg.base_delay_seconds * (cfg.backoff_multiplier ** attempt)
        elif strategy == BackoffStrategy.EXPONENTIAL_JITTER:
            base_delay = cfg.base_delay_seconds * (cfg.backoff_multiplier ** attempt)
            if _is_deterministic_mode():
                jitter = _compute_deterministic_jitter(self._func_name, attempt, cfg.jitter_factor, base_delay)
            else:
                jitter_range = base_delay * cfg.jitter_factor
                jitter = random.uniform(-jitter_range, jitter_range)
            delay = base_delay + jitter
        else:
            delay = cfg.base_delay_seconds

        return max(0.0, min(delay, cfg.max_delay_seconds))

    def should_retry(self, exception: BaseException) -> bool:
        """Determine if an exception should trigger a retry."""
        if isinstance(exception, self.config.non_retryable_exceptions):
            return False
        return isinstance(exception, self.config.retryable_exceptions)

    def _on_failure(self, attempt: int, exc: Exception) -> float:
        """Return the delay before the next attempt, or re-raise if exhausted."""
        if not self.should_retry(exc):
            logger.debug(f"Non-retryable exception in {self._func_name}: {type(exc).__name__}")
            raise exc
        if attempt >= self.config.max_retries:
            logger.warning(f"All {self.config.max_retries} retries exhausted for {self._func_name}")
            raise exc
        delay = self.calculate_delay(attempt)
        logger.info(
            f"Retry {attempt + 1}/{self.config.max_retries} for {self._func_name} "
            f"after {delay:.2f}s: {exc}"
        )
        return delay

    def execute(self, func: Callable, *args, **kwargs) -> Any:
        """Call ``func`` with retries, sleeping between attempts."""
        self._func_name = getattr(func, "__name__", "anonymous")
        for attempt in range(self.config.max_retries + 1):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                delay = self._on_failure(attempt, e)
                time.sleep(delay)
        raise RuntimeError("unreachable")

    async def execute_async(self, func: Callable, *args, **kwargs) -> Any:
        """Await coroutine function ``func`` with retries."""
        self._func_name = getattr(func, "__name__", "anonymous")
        for attempt in range(self.config.max_retries + 1):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                delay = self._on_failure(attempt, e)
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")

    def wrap(self, func: Callable) -> Callable:
        """Decorator to wrap a function with retry logic."""

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return self.execute(func, *args, **kwargs)

        return wrapper
