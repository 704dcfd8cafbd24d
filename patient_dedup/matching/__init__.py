"""Patient identity matching: normalization, field matchers, scoring, blocking and review ledger."""

from .blocking import BlockingEngine, BlockingResult
from .fuzzy_matchers import (
    FieldMatcher,
    address_similarity,
    date_match,
    email_match,
    levenshtein_distance,
    name_similarity,
    phone_match,
)
from .ledger import InMemoryMatchLedger, MatchReviewLedger, UpsertOutcome
from .models import (
    ABSENT,
    BlockingBucket,
    ConfidenceLevel,
    FieldMatchResult,
    MatchCandidate,
    NormalizedIdentity,
    PatientIdentity,
    ReasonCode,
    ReviewStatus,
)
from .normalizer import normalize_identity
from .pipeline import DeduplicationPipeline, RunReport, duplicate_stats
from .scoring import CompositeScorer

__all__ = [
    "ABSENT",
    "PatientIdentity",
    "NormalizedIdentity",
    "FieldMatchResult",
    "MatchCandidate",
    "BlockingBucket",
    "ReasonCode",
    "ConfidenceLevel",
    "ReviewStatus",
    "normalize_identity",
    "FieldMatcher",
    "levenshtein_distance",
    "name_similarity",
    "address_similarity",
    "phone_match",
    "email_match",
    "date_match",
    "CompositeScorer",
    "BlockingEngine",
    "BlockingResult",
    "MatchReviewLedger",
    "InMemoryMatchLedger",
    "UpsertOutcome",
    "DeduplicationPipeline",
    "RunReport",
    "duplicate_stats",
]
