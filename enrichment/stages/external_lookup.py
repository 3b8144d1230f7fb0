"""
Quota-gated external lookups run after the consensus merge.

Every outbound call goes through :func:`guarded_call`: check the daily
allowance, make the call, consume the allowance only on success. A stage
that cannot run is recorded in ``result.skipped_stages`` with its reason.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from core.config import settings
from core.exceptions import (
    EnrichmentException,
    MalformedResponseError,
    ProviderError,
    QuotaExhaustedError,
)
from enrichment.providers.base import parse_candidates
from enrichment.quota import QuotaLedger
from enrichment.types import (
    Candidate,
    EnrichmentContext,
    EnrichmentResult,
    FieldResult,
    SkippedStage,
)
from models.base import ReviewableField

logger = logging.getLogger(__name__)

MAX_EMAILS_TO_VERIFY = 5
VERIFIED_EMAIL_BOOST = 1.15


async def guarded_call(quota: QuotaLedger, service: str, call: Callable[[], Awaitable[Any]]) -> Any:
    """
    Run ``call`` against ``service``'s daily allowance.

    Raises:
        QuotaExhaustedError: Nothing left today; ``call`` is not made
    """
    await quota.require(service)
    try:
        value = await call()
    except Exception as e:
        await quota.record_outcome(service, success=False, error=str(e)[:500])
        raise
    await quota.consume(service)
    await quota.record_outcome(service, success=True)
    return value


# ============================================================================
# Lookups
# ============================================================================

class ExternalLookup(ABC):
    """One post-processing step backed by a quota-protected service."""

    stage: str = "lookup"
    service: str = ""

    @abstractmethod
    async def apply(self, context: EnrichmentContext, result: EnrichmentResult, quota: QuotaLedger) -> bool:
        """Update ``result`` in place. Returns True when external data was used."""


class EmailVerifier(ABC):

    @abstractmethod
    async def verify(self, email: str) -> Optional[bool]:
        """True deliverable, False undeliverable, None unknown."""


class DirectoryClient(ABC):
    """Business directory / map search returning field candidates."""

    @abstractmethod
    async def search(self, context: EnrichmentContext) -> Dict[ReviewableField, Candidate]:
        ...


class EmailVerificationLookup(ExternalLookup):
    """Verify up to five suggested emails; verified ones boost the field score."""

    stage = "email_verification"

    def __init__(self, verifier: EmailVerifier, service: str = "hunter"):
        self.verifier = verifier
        self.service = service

    async def apply(self, context, result, quota):
        emails = result.get(ReviewableField.EMAILS)
        if emails is None or not emails.value:
            return False

        to_check = emails.value[:MAX_EMAILS_TO_VERIFY]
        verified: List[str] = []
        failures: List[ProviderError] = []
        checked = 0
        for email in to_check:
            try:
                outcome = await guarded_call(quota, self.service, lambda e=email: self.verifier.verify(e))
            except QuotaExhaustedError:
                if checked == 0:
                    raise
                result.skipped_stages.append(SkippedStage(
                    stage=self.stage,
                    reason=f"quota exhausted after {checked} of {len(to_check)} emails",
                    service=self.service,
                ))
                break
            except ProviderError as e:
                # Unknown verdict for this address; verdicts already paid for still count
                logger.warning(f"Could not verify {email} for record {context.record_id}: {e.message}")
                failures.append(e)
                continue
            checked += 1
            if outcome:
                verified.append(email)

        if failures:
            if checked == 0:
                raise failures[0]
            result.skipped_stages.append(SkippedStage(
                stage=self.stage,
                reason=f"{len(failures)} of {len(to_check)} emails not verified: {failures[0].message}",
                service=self.service,
            ))

        if verified:
            # Verified addresses first
            rest = [e for e in emails.value if e not in verified]
            emails.value = verified + rest
            emails.confidence = min(emails.confidence * VERIFIED_EMAIL_BOOST, 1.0)
            emails.source = "verified"
        return checked > 0


class DirectoryLookup(ExternalLookup):
    """
    Fill gaps from a directory listing.

    - address replaced when missing or weaker than ``replace_below``
    - phones merged by digits
    - website and industry filled only when missing
    """

    def __init__(self, client: DirectoryClient, stage: str, service: str, replace_below: float = 0.8):
        self.client = client
        self.stage = stage
        self.service = service
        self.replace_below = replace_below

    async def apply(self, context, result, quota):
        found = await guarded_call(quota, self.service, lambda: self.client.search(context))
        used = False

        address = found.get(ReviewableField.ADDRESS)
        current = result.get(ReviewableField.ADDRESS)
        if address and (current is None or current.confidence < self.replace_below):
            result.fields[ReviewableField.ADDRESS] = FieldResult(
                value=address.value, confidence=address.confidence, providers=[self.stage], source=self.stage
            )
            used = True

        phones = found.get(ReviewableField.PHONES)
        if phones:
            current = result.get(ReviewableField.PHONES)
            if current is None:
                result.fields[ReviewableField.PHONES] = FieldResult(
                    value=list(phones.value), confidence=phones.confidence,
                    providers=[self.stage], source=self.stage
                )
                used = True
            else:
                known = {re.sub(r"\D", "", p) for p in current.value}
                extra = [p for p in phones.value if re.sub(r"\D", "", p) not in known]
                if extra:
                    current.value = list(current.value) + extra
                    current.confidence = max(current.confidence, phones.confidence)
                    current.providers = current.providers + [self.stage]
                    used = True

        for name in (ReviewableField.WEBSITE, ReviewableField.INDUSTRY):
            candidate = found.get(name)
            if candidate and result.get(name) is None:
                result.fields[name] = FieldResult(
                    value=candidate.value, confidence=candidate.confidence,
                    providers=[self.stage], source=self.stage
                )
                used = True

        return used


# ============================================================================
# HTTP clients
# ============================================================================

class HttpEmailVerifier(EmailVerifier):
    """GET ``{endpoint}?email=..``; understands ``result``/``status`` strings or a ``valid`` flag."""

    def __init__(self, endpoint: str, api_key: Optional[str] = None, timeout: float = 10.0):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout

    async def verify(self, email: str) -> Optional[bool]:
        params = {"email": email}
        if self.api_key:
            params["api_key"] = self.api_key
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.endpoint, params=params)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as e:
            raise ProviderError(
                "Email verification request failed",
                provider="email_verifier",
                original_exception=e
            )
        except ValueError as e:
            raise MalformedResponseError(
                "Email verification answer is not JSON",
                provider="email_verifier",
                original_exception=e
            )

        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        if "valid" in data:
            return bool(data["valid"])
        status = str(data.get("result") or data.get("status") or "").lower()
        if status in ("deliverable", "valid"):
            return True
        if status in ("undeliverable", "invalid"):
            return False
        return None


class HttpDirectoryClient(DirectoryClient):
    """GET ``{endpoint}?name=..&city=..`` returning ``{"fields": {...}}``."""

    def __init__(self, name: str, endpoint: str, api_key: Optional[str] = None, timeout: float = 10.0):
        self.name = name
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout

    async def search(self, context):
        params = {"name": context.name}
        if context.city:
            params["city"] = context.city
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.endpoint, params=params, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} lookup failed", provider=self.name, original_exception=e)
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.name} answer is not JSON", provider=self.name, original_exception=e
            )
        return parse_candidates(self.name, payload, list(ReviewableField))


# ============================================================================
# Stage runner
# ============================================================================

class ExternalLookupStage:
    """Runs lookups in order; a failed or starved lookup never stops the next one."""

    def __init__(self, quota: QuotaLedger, lookups: Optional[List[ExternalLookup]] = None):
        self.quota = quota
        self.lookups = list(lookups or [])

    async def run(self, context: EnrichmentContext, result: EnrichmentResult) -> EnrichmentResult:
        for lookup in self.lookups:
            try:
                used = await lookup.apply(context, result, self.quota)
            except QuotaExhaustedError as e:
                logger.info(f"Skipping {lookup.stage} for record {context.record_id}: {e.message}")
                result.skipped_stages.append(SkippedStage(
                    stage=lookup.stage, reason="daily quota exhausted", service=lookup.service
                ))
                continue
            except EnrichmentException as e:
                logger.warning(
                    f"{lookup.stage} failed for record {context.record_id}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                result.skipped_stages.append(SkippedStage(
                    stage=lookup.stage, reason=f"failed: {e.message}", service=lookup.service
                ))
                continue
            except Exception as e:
                logger.exception(f"Unexpected error in {lookup.stage} for record {context.record_id}")
                result.skipped_stages.append(SkippedStage(
                    stage=lookup.stage, reason=f"failed: {type(e).__name__}", service=lookup.service
                ))
                continue

            if used:
                result.external_data_used.append(lookup.stage)
        return result


def lookups_from_settings() -> List[ExternalLookup]:
    lookups: List[ExternalLookup] = []
    if settings.EMAIL_VERIFIER_URL:
        lookups.append(EmailVerificationLookup(
            HttpEmailVerifier(settings.EMAIL_VERIFIER_URL, settings.EMAIL_VERIFIER_API_KEY)
        ))
    for name, endpoint in settings.DIRECTORY_ENDPOINTS.items():
        lookups.append(DirectoryLookup(
            HttpDirectoryClient(name, endpoint, settings.PROVIDER_API_KEYS.get(name)),
            stage=name,
            service=name,
        ))
    return lookups
