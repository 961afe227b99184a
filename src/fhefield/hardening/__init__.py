"""Retry and backoff policies for bring-up and custodian I/O."""

from .recovery import BackoffStrategy, RetryConfig, RetryPolicy

__all__ = ["BackoffStrategy", "RetryConfig", "RetryPolicy"]
