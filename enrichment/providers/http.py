"""
JSON-over-HTTP provider adapter with retry and circuit breaker.

The adapter POSTs the record context and requested fields to a provider
endpoint and expects ``{"fields": {name: {"value", "confidence"}}}`` back.

Resilience:
- Exponential backoff retry for 5xx, 429 and network errors
- Circuit breaker after repeated failures
- 401/403 reported as ProviderAuthError, never retried
- Timeouts reported as ProviderTimeoutError
"""

import asyncio
import logging
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from core.config import settings
from core.exceptions import (
    MalformedResponseError,
    ProviderAuthError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from enrichment.providers.base import ProviderAdapter, ProviderRegistry, parse_candidates
from enrichment.types import Candidate, EnrichmentContext
from models.base import ReviewableField

logger = logging.getLogger(__name__)


class HttpJsonProvider(ProviderAdapter):
    """
    Provider reachable through a JSON endpoint.

    Attributes:
        max_retries: Attempts per call (default from settings)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default from settings)
        circuit_breaker_threshold: Failures before circuit opens (default: 5)
        circuit_breaker_timeout: Seconds before circuit reset (default: 60)
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        api_key: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: float = 1.0,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.name = name
        self.endpoint = endpoint
        self.api_key = api_key
        self.max_retries = max_retries if max_retries is not None else settings.PROVIDER_MAX_RETRIES
        self.retry_delay = retry_delay
        self.timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS
        self._client = client

        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = 5
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = 60  # seconds

    def _is_circuit_open(self) -> bool:
        if self._circuit_breaker_open_until is None:
            return False

        if datetime.utcnow() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for provider {self.name}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for provider {self.name}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post_with_retry(self, client: httpx.AsyncClient, body: Dict[str, Any]) -> httpx.Response:
        if self._is_circuit_open():
            raise ProviderUnavailableError(
                f"Circuit breaker is open for {self.name}",
                provider=self.name,
                context={"open_until": self._circuit_breaker_open_until.isoformat()}
            )

        attempts = max(1, self.max_retries)
        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            delay = self.retry_delay * (2 ** attempt)
            try:
                response = await client.post(
                    self.endpoint, json=body, headers=self._headers(), timeout=self.timeout
                )
            except httpx.TimeoutException as e:
                if not last_attempt:
                    logger.warning(f"{self.name} timed out. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise ProviderTimeoutError(
                    f"{self.name} timed out after {attempts} attempts",
                    provider=self.name,
                    context={"timeout": self.timeout, "retry_count": attempt + 1},
                    original_exception=e
                )
            except httpx.HTTPError as e:
                if not last_attempt:
                    logger.warning(f"{self.name} network error. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise ProviderUnavailableError(
                    f"{self.name} unreachable after {attempts} attempts",
                    provider=self.name,
                    context={"retry_count": attempt + 1},
                    original_exception=e
                )

            if response.status_code in (401, 403):
                self._record_failure()
                raise ProviderAuthError(
                    f"Authentication failed for {self.name}",
                    provider=self.name,
                    context={"status_code": response.status_code}
                )

            if response.status_code == 429 or response.status_code >= 500:
                if not last_attempt:
                    retry_after = response.headers.get("Retry-After")
                    wait = float(retry_after) if retry_after and retry_after.isdigit() else delay
                    logger.warning(
                        f"{self.name} answered {response.status_code}. "
                        f"Retrying in {wait} seconds (attempt {attempt + 1}/{attempts})"
                    )
                    await asyncio.sleep(wait)
                    continue
                self._record_failure()
                raise ProviderUnavailableError(
                    f"{self.name} answered {response.status_code} after {attempts} attempts",
                    provider=self.name,
                    context={
                        "status_code": response.status_code,
                        "retry_count": attempt + 1,
                        "response_body": response.text[:500]
                    }
                )

            if response.status_code >= 400:
                self._record_failure()
                raise ProviderError(
                    f"{self.name} rejected the request",
                    provider=self.name,
                    context={"status_code": response.status_code, "response_body": response.text[:500]}
                )

            self._record_success()
            return response

        raise ProviderUnavailableError("Max retries exceeded", provider=self.name)

    async def call(
        self,
        context: EnrichmentContext,
        fields: List[ReviewableField],
    ) -> Dict[ReviewableField, Candidate]:
        body = {"record": asdict(context), "fields": [name.value for name in fields]}

        if self._client is not None:
            response = await self._post_with_retry(self._client, body)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await self._post_with_retry(client, body)

        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                "Failed to parse JSON response",
                provider=self.name,
                context={"response_body": response.text[:500]},
                original_exception=e
            )

        return parse_candidates(self.name, payload, fields)


def registry_from_settings() -> ProviderRegistry:
    """One HttpJsonProvider per configured endpoint."""
    registry = ProviderRegistry()
    for name, endpoint in settings.PROVIDER_ENDPOINTS.items():
        registry.register(HttpJsonProvider(
            name=name,
            endpoint=endpoint,
            api_key=settings.PROVIDER_API_KEYS.get(name),
        ))
    if not registry:
        logger.warning("No enrichment providers configured (PROVIDER_ENDPOINTS is empty)")
    return registry
