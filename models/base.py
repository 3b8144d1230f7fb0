from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class ReviewableField(str, enum.Enum):
    """
    Record attributes eligible for AI-suggested values.

    Shared by request validation and the review state machine. Legacy column
    names (``sitioWeb``, ``industria``, ...) and camelCase spellings are
    accepted and resolved to the canonical member.
    """
    WEBSITE = "website"
    INDUSTRY = "industry"
    DESCRIPTION = "description"
    COMPANY_SIZE = "company_size"
    ADDRESS = "address"
    EMAILS = "emails"
    PHONES = "phones"
    SOCIAL_PROFILES = "social_profiles"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            alias = FIELD_ALIASES.get(value) or FIELD_ALIASES.get(value.lower())
            if alias is not None:
                return cls(alias)
        return None

    @property
    def is_list(self) -> bool:
        return self in (ReviewableField.EMAILS, ReviewableField.PHONES)


FIELD_ALIASES = {
    "companySize": "company_size",
    "companysize": "company_size",
    "socialProfiles": "social_profiles",
    "socialprofiles": "social_profiles",
    # legacy column names
    "sitioweb": "website",
    "industria": "industry",
    "descripcion": "description",
    "notas": "description",
    "tamanoempresa": "company_size",
    "direccion": "address",
    "correos": "emails",
    "telefonos": "phones",
    "redessociales": "social_profiles",
}


class FieldReviewStatus(str, enum.Enum):
    """Review state of a single suggested field"""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


class RunStatus(str, enum.Enum):
    """Overall status of an enrichment run"""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"


class RecordEnrichmentStatus(str, enum.Enum):
    """Cached aggregate of the latest run's field statuses"""
    NONE = "NONE"
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    COMPLETE = "COMPLETE"
