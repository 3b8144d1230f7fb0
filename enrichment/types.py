"""
Value objects passed between providers, the aggregator and the review ledger.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from models.base import ReviewableField


@dataclass
class EnrichmentContext:
    """What providers know about the record they are asked to enrich."""
    record_id: int
    name: str
    city: Optional[str] = None
    website: Optional[str] = None
    industry: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_record(cls, record) -> "EnrichmentContext":
        return cls(
            record_id=record.id,
            name=record.name,
            city=record.city,
            website=record.website,
            industry=record.industry,
            email=record.email,
            phone=record.phone,
        )


@dataclass
class Candidate:
    """One provider's guess for one field."""
    value: Any
    confidence: float


@dataclass
class FieldResult:
    """Merged answer for one field."""
    value: Any
    confidence: float
    providers: List[str] = field(default_factory=list)
    consensus: bool = False
    source: str = "ai"


@dataclass
class ProviderFailure:
    provider: str
    error: str
    error_type: str

    def to_dict(self) -> Dict[str, str]:
        return {"provider": self.provider, "error": self.error, "error_type": self.error_type}


@dataclass
class SkippedStage:
    """A post-processing stage that did not run, and why."""
    stage: str
    reason: str
    service: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"stage": self.stage, "reason": self.reason, "service": self.service}


@dataclass
class EnrichmentResult:
    """Best-effort outcome of one enrichment, with every failure and skip listed."""
    record_id: int
    fields: Dict[ReviewableField, FieldResult] = field(default_factory=dict)
    providers_used: List[str] = field(default_factory=list)
    provider_errors: List[ProviderFailure] = field(default_factory=list)
    skipped_stages: List[SkippedStage] = field(default_factory=list)
    external_data_used: List[str] = field(default_factory=list)
    mode: str = "full"

    @property
    def has_data(self) -> bool:
        return bool(self.fields)

    def get(self, name: ReviewableField) -> Optional[FieldResult]:
        return self.fields.get(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "mode": self.mode,
            "fields": {
                name.value: {
                    "value": result.value,
                    "confidence": round(result.confidence, 4),
                    "providers": result.providers,
                    "consensus": result.consensus,
                    "source": result.source,
                }
                for name, result in self.fields.items()
            },
            "providers_used": self.providers_used,
            "provider_errors": [failure.to_dict() for failure in self.provider_errors],
            "skipped_stages": [skip.to_dict() for skip in self.skipped_stages],
            "external_data_used": self.external_data_used,
        }
