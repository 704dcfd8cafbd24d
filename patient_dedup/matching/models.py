from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class _Absent(Enum):
    """Marker for an attribute that is missing or too unreliable to compare."""
    ABSENT = "absent"

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent.ABSENT


def is_present(value: Any) -> bool:
    return value is not ABSENT


class ReasonCode(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    MISSING = "missing"
    MISMATCH = "mismatch"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class ReviewStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    CONFIRMED_DUPLICATE = "confirmed_duplicate"
    NOT_DUPLICATE = "not_duplicate"
    MERGED = "merged"


@dataclass(frozen=True)
class PatientIdentity:
    """Comparison attributes of a registry patient. Owned upstream; never mutated here."""
    record_id: str
    display_name: Optional[str] = None
    date_of_birth: Optional[Union[date, datetime, str]] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class NormalizedIdentity:
    record_id: str
    name: Any = ABSENT          # str or ABSENT
    date_of_birth: Any = ABSENT  # date or ABSENT
    phone: Any = ABSENT         # digits-only str or ABSENT
    email: Any = ABSENT         # str or ABSENT
    address: Any = ABSENT       # str or ABSENT


@dataclass
class FieldMatchResult:
    field_name: str
    value_a: Any
    value_b: Any
    matched: bool
    score: int  # 0-100; boolean channels use 0 or 100
    reason: ReasonCode
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_name": self.field_name,
            "matched": self.matched,
            "score": self.score,
            "reason": self.reason.value,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMatchResult":
        # Raw values are not persisted, only the outcome of the comparison
        return cls(
            field_name=data["field_name"],
            value_a=None,
            value_b=None,
            matched=bool(data["matched"]),
            score=int(data["score"]),
            reason=ReasonCode(data["reason"]),
            details=data.get("details"),
        )


def canonical_pair(record_id_a: str, record_id_b: str) -> Tuple[str, str]:
    """Order two record ids so that the pair is represented once (smaller id first)."""
    a, b = str(record_id_a), str(record_id_b)
    return (a, b) if a <= b else (b, a)


def make_candidate_id(record_id_a: str, record_id_b: str, revision: int = 1) -> str:
    a, b = canonical_pair(record_id_a, record_id_b)
    base = f"{a}::{b}"
    return base if revision == 1 else f"{base}#{revision}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MatchCandidate:
    record_id_a: str
    record_id_b: str
    field_results: List[FieldMatchResult] = field(default_factory=list)
    composite_score: float = 0.0
    confidence_level: ConfidenceLevel = ConfidenceLevel.NONE
    status: ReviewStatus = ReviewStatus.PENDING_REVIEW
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    revision: int = 1
    supersedes: Optional[str] = None
    decided_by: Optional[str] = None
    match_reasons: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.record_id_a, self.record_id_b = canonical_pair(self.record_id_a, self.record_id_b)
        if self.record_id_a == self.record_id_b:
            raise ValueError(f"A match candidate needs two distinct records, got '{self.record_id_a}' twice")

    @property
    def pair(self) -> Tuple[str, str]:
        return (self.record_id_a, self.record_id_b)

    @property
    def candidate_id(self) -> str:
        return make_candidate_id(self.record_id_a, self.record_id_b, self.revision)

    def same_comparison(self, other: "MatchCandidate") -> bool:
        """True if both candidates carry the same score, level and per-field outcomes."""
        if self.composite_score != other.composite_score or self.confidence_level != other.confidence_level:
            return False
        mine = [(r.field_name, r.matched, r.score, r.reason) for r in self.field_results]
        theirs = [(r.field_name, r.matched, r.score, r.reason) for r in other.field_results]
        return mine == theirs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "record_id_a": self.record_id_a,
            "record_id_b": self.record_id_b,
            "composite_score": self.composite_score,
            "confidence_level": self.confidence_level.value,
            "status": self.status.value,
            "revision": self.revision,
            "supersedes": self.supersedes,
            "decided_by": self.decided_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "match_reasons": list(self.match_reasons),
            "field_results": [r.to_dict() for r in self.field_results],
        }


@dataclass
class BlockingBucket:
    key: str
    strategy: str
    record_ids: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.record_ids)

    @property
    def comparison_count(self) -> int:
        n = len(self.record_ids)
        return n * (n - 1) // 2
