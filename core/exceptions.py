"""
Custom exceptions for the enrichment engine with structured error context.

Every exception carries a context dict so failures can be logged, stored on
an enrichment run, or returned to API clients without losing detail.

Exception Hierarchy:
    EnrichmentException (base)
    ├── ValidationError
    │   └── BatchTooLargeError
    ├── ProviderError
    │   ├── ProviderTimeoutError
    │   ├── ProviderAuthError
    │   ├── MalformedResponseError
    │   ├── ProviderUnavailableError
    │   └── AllProvidersFailedError
    ├── ConflictError
    │   └── RunNotFoundError
    ├── RecordNotFoundError
    ├── QuotaExhaustedError
    ├── PersistenceError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class EnrichmentException(Exception):
    """
    Base exception for all enrichment-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (record id, provider, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(EnrichmentException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 503)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(EnrichmentException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Unparsable provider output
    - Invalid caller input
    """
    pass


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(NonRetryableError):
    """
    Raised for malformed input, before any side effect takes place.

    Context should include:
        - field_name: Name of the offending field (if applicable)
        - field_value: Value that failed validation
    """
    pass


class BatchTooLargeError(ValidationError):
    """Raised when a bulk request exceeds the configured maximum size."""
    pass


# ============================================================================
# Provider Errors
# ============================================================================

class ProviderError(EnrichmentException):
    """
    One information provider failed. Isolated and recorded, never fatal
    for the enrichment as a whole.
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.provider = provider
        if provider:
            self.context["provider"] = provider


class ProviderTimeoutError(ProviderError, RetryableError):
    """Provider did not answer within its own timeout."""
    pass


class ProviderAuthError(NonRetryableError, ProviderError):
    """Provider rejected our credentials (HTTP 401, 403) or is not configured."""
    pass


class MalformedResponseError(NonRetryableError, ProviderError):
    """Provider answered with something that cannot be read as field candidates."""
    pass


class ProviderUnavailableError(ProviderError):
    """Provider circuit breaker is open or the service keeps failing."""
    pass


class AllProvidersFailedError(ProviderError):
    """Every provider tried in quick mode failed."""
    pass


# ============================================================================
# Review Errors
# ============================================================================

class ConflictError(NonRetryableError):
    """
    Review action on a run or field that is not PENDING.

    Context should include:
        - record_id: Record being reviewed
        - run_id: Enrichment run id (if known)
        - run_status / field_statuses: Current state that caused the conflict
    """
    pass


class RunNotFoundError(ConflictError):
    """No enrichment run matches the review request."""
    pass


class RecordNotFoundError(NonRetryableError):
    """The record to enrich or review does not exist."""
    pass


# ============================================================================
# Quota Errors
# ============================================================================

class QuotaExhaustedError(EnrichmentException):
    """
    Daily allowance of an external service is used up. The stage that needed
    it is skipped and the skip is reported alongside the result.
    """

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.service = service
        if service:
            self.context["service"] = service


# ============================================================================
# Persistence Errors
# ============================================================================

class PersistenceError(RetryableError):
    """
    Store unavailable or a write failed. Fatal for the current operation.

    Context should include:
        - operation: Store operation (create_run, update_record, ...)
        - table_name: Name of the table (if applicable)
    """
    pass
