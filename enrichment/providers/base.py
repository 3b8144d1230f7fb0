"""
Provider adapter interface and candidate parsing.

An adapter turns an :class:`EnrichmentContext` into per-field candidates. It
reports timeouts, auth problems and unreadable answers as ProviderError
subclasses; the aggregator never sees raw client exceptions.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from core.exceptions import MalformedResponseError, ValidationError
from enrichment.types import Candidate, EnrichmentContext
from models.base import ReviewableField

logger = logging.getLogger(__name__)

SOCIAL_NETWORKS = ("facebook", "instagram", "linkedin", "twitter", "whatsapp")


class ProviderAdapter(ABC):
    """Base class for information providers."""

    name: str = "provider"

    @abstractmethod
    async def call(
        self,
        context: EnrichmentContext,
        fields: List[ReviewableField],
    ) -> Dict[ReviewableField, Candidate]:
        """
        Ask the provider about ``fields``.

        Raises:
            ProviderError: Timeout, auth/config failure or malformed output
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _coerce_value(provider: str, name: ReviewableField, value: Any) -> Any:
    if name.is_list:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise MalformedResponseError(
                f"Field {name.value} must be a list of strings",
                provider=provider,
                context={"field_name": name.value}
            )
        return [v.strip() for v in value if v.strip()]

    if name == ReviewableField.SOCIAL_PROFILES:
        if not isinstance(value, dict):
            raise MalformedResponseError(
                "Field social_profiles must be an object",
                provider=provider,
                context={"field_name": name.value}
            )
        return {
            network.lower(): url.strip()
            for network, url in value.items()
            if network.lower() in SOCIAL_NETWORKS and isinstance(url, str) and url.strip()
        }

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        raise MalformedResponseError(
            f"Field {name.value} must be a string",
            provider=provider,
            context={"field_name": name.value}
        )
    return value.strip()


def parse_candidates(
    provider: str,
    payload: Any,
    fields: Iterable[ReviewableField],
) -> Dict[ReviewableField, Candidate]:
    """
    Read ``{field: {value, confidence}}`` (optionally wrapped in ``{"fields": ...}``).

    Unknown and unrequested fields are ignored; empty values are dropped.
    Confidence is clamped to [0, 1].
    """
    wanted = set(fields)

    if isinstance(payload, dict) and isinstance(payload.get("fields"), dict):
        payload = payload["fields"]
    if not isinstance(payload, dict):
        raise MalformedResponseError(
            "Provider answer is not an object",
            provider=provider,
            context={"payload_type": type(payload).__name__}
        )

    candidates: Dict[ReviewableField, Candidate] = {}
    for key, entry in payload.items():
        try:
            name = ReviewableField(key)
        except ValueError:
            logger.debug(f"{provider} returned unknown field {key!r}, ignoring")
            continue
        if name not in wanted:
            continue

        if not isinstance(entry, dict) or "value" not in entry:
            raise MalformedResponseError(
                f"Field {name.value} is missing a value",
                provider=provider,
                context={"field_name": name.value}
            )

        confidence = entry.get("confidence", 0.5)
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise MalformedResponseError(
                f"Field {name.value} has a non-numeric confidence",
                provider=provider,
                context={"field_name": name.value, "confidence": confidence}
            )

        value = entry["value"]
        if _is_empty(value):
            continue
        value = _coerce_value(provider, name, value)
        if _is_empty(value):
            continue

        candidates[name] = Candidate(value=value, confidence=min(1.0, max(0.0, float(confidence))))

    return candidates


class ProviderRegistry:
    """Name -> adapter lookup, in registration order."""

    def __init__(self, adapters: Optional[Iterable[ProviderAdapter]] = None):
        self._adapters: Dict[str, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        if adapter.name in self._adapters:
            raise ValidationError(
                f"Provider {adapter.name} registered twice",
                context={"provider": adapter.name}
            )
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ProviderAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise ValidationError(
                f"Unknown provider: {name}",
                context={"field_name": "provider", "field_value": name, "available": self.names}
            )

    @property
    def names(self) -> List[str]:
        return list(self._adapters)

    def all(self) -> List[ProviderAdapter]:
        return list(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)

    def __bool__(self) -> bool:
        return bool(self._adapters)
