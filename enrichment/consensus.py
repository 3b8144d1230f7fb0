"""
Multi-provider consensus aggregator.

Fans out to every configured provider (bounded concurrency, per-provider
timeout), folds the tagged outcomes, and merges candidates per field:

- one contributor: value and confidence as given
- agreeing contributors: confidence raised to
  ``max(mean + AGREEMENT_BONUS, best)`` capped at 1.0
- disagreeing scalar contributors (any dissent at all): the single
  highest-confidence candidate wins and its score is scaled by
  DISAGREEMENT_PENALTY; values are never averaged or joined
- list fields (emails, phones): union without duplicates
- social profiles: union per network, conflicts won by the stronger provider

Contributions are merged in provider-name order, so the result does not
depend on which provider answered first.
"""

import asyncio
import logging
import re
import unicodedata
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.config import settings
from core.exceptions import (
    AllProvidersFailedError,
    EnrichmentException,
    ProviderError,
    ProviderTimeoutError,
)
from enrichment.concurrency import Outcome, capture, map_bounded
from enrichment.providers.base import ProviderAdapter, ProviderRegistry
from enrichment.stages.external_lookup import ExternalLookupStage
from enrichment.stages.url_verification import UrlVerifier, adjust_website_score
from enrichment.types import (
    Candidate,
    EnrichmentContext,
    EnrichmentResult,
    FieldResult,
    ProviderFailure,
    SkippedStage,
)
from models.base import ReviewableField

logger = logging.getLogger(__name__)

Contributions = Dict[str, Dict[ReviewableField, Candidate]]


# ============================================================================
# Normalization
# ============================================================================

def _fold_text(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(stripped.casefold().split()).rstrip(".")


def normalize_website(value: str) -> str:
    url = value.strip().lower()
    url = re.sub(r"^[a-z]+://", "", url)
    if url.startswith("www."):
        url = url[4:]
    return url.rstrip("/")


def normalize_phone(value: str) -> str:
    return re.sub(r"\D", "", value)


def normalize_email(value: str) -> str:
    return value.strip().lower()


def normalize(name: ReviewableField, value: Any) -> Any:
    """Key under which two candidates count as the same answer."""
    if name == ReviewableField.WEBSITE:
        return normalize_website(value)
    if name == ReviewableField.EMAILS:
        return tuple(sorted({normalize_email(v) for v in value}))
    if name == ReviewableField.PHONES:
        return tuple(sorted({normalize_phone(v) for v in value}))
    if name == ReviewableField.SOCIAL_PROFILES:
        return tuple(sorted((k, normalize_website(v)) for k, v in value.items()))
    return _fold_text(value)


# ============================================================================
# Merge
# ============================================================================

class FieldMerger:
    """Pure merge rules; no I/O."""

    def __init__(
        self,
        min_confidence: Optional[float] = None,
        agreement_bonus: Optional[float] = None,
        disagreement_penalty: Optional[float] = None,
    ):
        self.min_confidence = min_confidence if min_confidence is not None else settings.MIN_CONFIDENCE_SCORE
        self.agreement_bonus = agreement_bonus if agreement_bonus is not None else settings.AGREEMENT_BONUS
        self.disagreement_penalty = (
            disagreement_penalty if disagreement_penalty is not None else settings.DISAGREEMENT_PENALTY
        )

    def agreed_confidence(self, confidences: List[float]) -> float:
        mean = sum(confidences) / len(confidences)
        return min(1.0, max(mean + self.agreement_bonus, max(confidences)))

    def merge(self, contributions: Contributions, fields: Iterable[ReviewableField]) -> Dict[ReviewableField, FieldResult]:
        merged: Dict[ReviewableField, FieldResult] = {}
        for name in fields:
            candidates = [
                (provider, contributions[provider][name])
                for provider in sorted(contributions)
                if name in contributions[provider]
                and contributions[provider][name].confidence >= self.min_confidence
            ]
            if not candidates:
                continue

            if len(candidates) == 1:
                provider, candidate = candidates[0]
                merged[name] = FieldResult(
                    value=candidate.value, confidence=candidate.confidence, providers=[provider]
                )
            elif name.is_list:
                merged[name] = self._merge_list(name, candidates)
            elif name == ReviewableField.SOCIAL_PROFILES:
                merged[name] = self._merge_social(candidates)
            else:
                merged[name] = self._merge_scalar(name, candidates)
        return merged

    def _merge_scalar(self, name: ReviewableField, candidates: List[Tuple[str, Candidate]]) -> FieldResult:
        providers = [p for p, _ in candidates]
        keys = {normalize(name, candidate.value) for _, candidate in candidates}

        if len(keys) == 1:
            # Strongest contributor supplies the spelling
            value = max(candidates, key=lambda c: c[1].confidence)[1].value
            confidence = self.agreed_confidence([c.confidence for _, c in candidates])
            return FieldResult(value=value, confidence=confidence, providers=providers, consensus=True)

        # Any dissent: the single strongest candidate wins, ties go to the
        # first provider by name. Partial agreement earns no bonus.
        best = max(candidates, key=lambda c: c[1].confidence)[1]
        return FieldResult(
            value=best.value,
            confidence=best.confidence * self.disagreement_penalty,
            providers=providers,
            consensus=False,
        )

    def _merge_list(self, name: ReviewableField, candidates: List[Tuple[str, Candidate]]) -> FieldResult:
        key_of = normalize_email if name == ReviewableField.EMAILS else normalize_phone
        values: List[str] = []
        seen: Dict[str, int] = {}
        for _, candidate in candidates:
            for item in dict.fromkeys(key_of(v) for v in candidate.value):
                seen[item] = seen.get(item, 0) + 1
            for item in candidate.value:
                key = key_of(item)
                if key and key not in {key_of(v) for v in values}:
                    values.append(item)

        confidences = [c.confidence for _, c in candidates]
        overlap = any(count > 1 for count in seen.values())
        confidence = self.agreed_confidence(confidences) if overlap else max(confidences)
        return FieldResult(
            value=values,
            confidence=confidence,
            providers=[p for p, _ in candidates],
            consensus=overlap,
        )

    def _merge_social(self, candidates: List[Tuple[str, Candidate]]) -> FieldResult:
        profiles: Dict[str, Tuple[str, float]] = {}
        agreements = 0
        conflicts = 0
        for _, candidate in candidates:
            for network, url in candidate.value.items():
                current = profiles.get(network)
                if current is None:
                    profiles[network] = (url, candidate.confidence)
                elif normalize_website(current[0]) == normalize_website(url):
                    agreements += 1
                else:
                    conflicts += 1
                    if candidate.confidence > current[1]:
                        profiles[network] = (url, candidate.confidence)

        confidences = [c.confidence for _, c in candidates]
        if agreements and not conflicts:
            confidence = self.agreed_confidence(confidences)
        else:
            confidence = max(confidences)
        return FieldResult(
            value={network: url for network, (url, _) in sorted(profiles.items())},
            confidence=confidence,
            providers=[p for p, _ in candidates],
            consensus=agreements > 0 and conflicts == 0,
        )


# ============================================================================
# Aggregator
# ============================================================================

class ConsensusAggregator:
    """
    Ask every provider, merge, then post-process.

    Usage:
        aggregator = ConsensusAggregator(registry, url_verifier=UrlVerifier())
        result = await aggregator.enrich_record(EnrichmentContext.from_record(record))
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        merger: Optional[FieldMerger] = None,
        url_verifier: Optional[UrlVerifier] = None,
        lookups: Optional[ExternalLookupStage] = None,
        concurrency: Optional[int] = None,
        provider_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.merger = merger or FieldMerger()
        self.url_verifier = url_verifier
        self.lookups = lookups
        self.concurrency = min(3, concurrency or settings.ENRICHMENT_CONCURRENCY)
        self.provider_timeout = provider_timeout or settings.PROVIDER_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _call(
        self,
        adapter: ProviderAdapter,
        context: EnrichmentContext,
        fields: List[ReviewableField],
    ) -> Dict[ReviewableField, Candidate]:
        try:
            return await asyncio.wait_for(adapter.call(context, fields), timeout=self.provider_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"{adapter.name} did not answer within {self.provider_timeout}s",
                provider=adapter.name,
                context={"record_id": context.record_id},
                original_exception=e
            )
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(
                f"{adapter.name} failed unexpectedly",
                provider=adapter.name,
                context={"record_id": context.record_id},
                original_exception=e
            )

    @staticmethod
    def _failure(adapter: ProviderAdapter, error: BaseException) -> ProviderFailure:
        message = error.message if isinstance(error, EnrichmentException) else str(error)
        cause = getattr(error, "original_exception", None)
        error_type = type(error).__name__
        logger.warning(
            f"Provider {adapter.name} failed: {message}",
            extra={"error_context": error.to_dict() if isinstance(error, EnrichmentException) else {}}
        )
        if cause is not None:
            message = f"{message}: {type(cause).__name__}"
        return ProviderFailure(provider=adapter.name, error=message, error_type=error_type)

    async def _fan_out(
        self,
        adapters: List[ProviderAdapter],
        context: EnrichmentContext,
        fields: List[ReviewableField],
        result: EnrichmentResult,
    ) -> Contributions:
        async def ask(adapter: ProviderAdapter):
            return await self._call(adapter, context, fields)

        outcomes: List[Outcome] = await map_bounded(adapters, self.concurrency, capture(ask))

        contributions: Contributions = {}
        for adapter, outcome in zip(adapters, outcomes):
            if outcome.ok:
                contributions[adapter.name] = outcome.value
                result.providers_used.append(adapter.name)
            else:
                result.provider_errors.append(self._failure(adapter, outcome.error))
        return contributions

    def _require_providers(self) -> None:
        if not self.registry:
            raise ProviderError(
                "No enrichment providers configured",
                context={"setting": "PROVIDER_ENDPOINTS"}
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enrich_record(
        self,
        context: EnrichmentContext,
        requested_fields: Optional[List[ReviewableField]] = None,
        include_external_lookups: bool = False,
    ) -> EnrichmentResult:
        """
        Full mode: every provider, every requested field.

        Provider failures end up in ``result.provider_errors``; the call only
        raises when no provider is configured at all.
        """
        self._require_providers()
        fields = list(requested_fields or list(ReviewableField))
        result = EnrichmentResult(record_id=context.record_id, mode="full")

        logger.info(
            f"Enriching record {context.record_id} with {len(self.registry)} providers "
            f"({len(fields)} fields)"
        )
        contributions = await self._fan_out(self.registry.all(), context, fields, result)
        result.fields = self.merger.merge(contributions, fields)

        await self._post_process(context, result, include_external_lookups)

        logger.info(
            f"Record {context.record_id}: {len(result.fields)} fields from "
            f"{len(result.providers_used)} providers, {len(result.provider_errors)} provider errors"
        )
        return result

    async def quick_enrich(
        self,
        context: EnrichmentContext,
        provider: Optional[str] = None,
        include_external_lookups: bool = False,
    ) -> EnrichmentResult:
        """
        Quick mode: fewer fields, providers tried one at a time until one answers.

        Raises:
            ValidationError: Unknown ``provider``
            AllProvidersFailedError: No provider produced an answer
        """
        self._require_providers()
        fields = [ReviewableField(name) for name in settings.QUICK_FIELDS]
        adapters = [self.registry.get(provider)] if provider else self.registry.all()
        result = EnrichmentResult(record_id=context.record_id, mode="quick")

        for adapter in adapters:
            try:
                candidates = await self._call(adapter, context, fields)
            except ProviderError as e:
                result.provider_errors.append(self._failure(adapter, e))
                continue

            result.providers_used.append(adapter.name)
            result.fields = self.merger.merge({adapter.name: candidates}, fields)
            await self._post_process(context, result, include_external_lookups)
            return result

        raise AllProvidersFailedError(
            "All providers failed in quick mode",
            context={
                "record_id": context.record_id,
                "errors": [failure.to_dict() for failure in result.provider_errors],
            }
        )

    async def lookup_only(self, context: EnrichmentContext) -> EnrichmentResult:
        """External lookups without asking any provider."""
        result = EnrichmentResult(record_id=context.record_id, mode="lookup")
        await self._post_process(context, result, include_external_lookups=True)
        return result

    # ------------------------------------------------------------------
    # Post-processing
    # ------------------------------------------------------------------

    async def _post_process(
        self,
        context: EnrichmentContext,
        result: EnrichmentResult,
        include_external_lookups: bool,
    ) -> None:
        website = result.get(ReviewableField.WEBSITE)
        if website is not None and self.url_verifier is not None:
            try:
                check = await self.url_verifier.verify(website.value, context.name)
            except Exception as e:
                logger.warning(f"URL verification failed for record {context.record_id}: {str(e)}")
                result.skipped_stages.append(SkippedStage(
                    stage="url_verification", reason=f"failed: {type(e).__name__}"
                ))
            else:
                website.confidence = adjust_website_score(website.confidence, check)
                if check.accessible:
                    # Store the address that actually answered, after redirects
                    website.value = check.final_url or check.url
                result.external_data_used.append("url_verification")

        if include_external_lookups:
            if self.lookups is None or not self.lookups.lookups:
                result.skipped_stages.append(SkippedStage(
                    stage="external_lookups", reason="no external lookups configured"
                ))
            else:
                await self.lookups.run(context, result)
