"""
Core utilities and configuration for the record enrichment backend.

Modules:
    config: Application configuration and environment variable management
    database: Engine and session factories, connectivity check
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import ConflictError, ProviderError
    from core.logging import setup_logging
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "EnrichmentException",
    "ValidationError",
    "BatchTooLargeError",
    "ProviderError",
    "ProviderTimeoutError",
    "ProviderAuthError",
    "MalformedResponseError",
    "ProviderUnavailableError",
    "AllProvidersFailedError",
    "ConflictError",
    "RunNotFoundError",
    "RecordNotFoundError",
    "QuotaExhaustedError",
    "PersistenceError",
    "RetryableError",
    "NonRetryableError",
]
