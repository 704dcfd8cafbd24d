import logging
from typing import Dict, List, Optional

from ..config import MatchingConfig
from .fuzzy_matchers import (
    FIELD_ADDRESS,
    FIELD_DOB,
    FIELD_EMAIL,
    FIELD_NAME,
    FIELD_PHONE,
    FieldMatcher,
)
from .models import ConfidenceLevel, FieldMatchResult, MatchCandidate, NormalizedIdentity

logger = logging.getLogger(__name__)


class CompositeScorer:
    """
    Combines per-field results into a 0-100 composite score and a confidence level.

    The score is a weighted sum over the channels. A missing attribute
    contributes 0 to its channel instead of being dropped from the weighting,
    so pairs with more corroborating fields score higher.

    The configuration is validated on construction; an invalid one raises
    ConfigurationError before any pair is scored.
    """

    def __init__(self, config: Optional[MatchingConfig] = None, field_matcher: Optional[FieldMatcher] = None):
        self.config = (config or MatchingConfig()).validate()
        self.field_matcher = field_matcher or FieldMatcher(self.config)
        self._weights: Dict[str, float] = self.config.weights.as_dict()

    def _channel_value(self, result: FieldMatchResult) -> float:
        if result.field_name == FIELD_ADDRESS:
            # Address only corroborates once it is similar enough
            return float(result.score) if result.matched else 0.0
        return float(result.score)

    def score(self, field_results: List[FieldMatchResult]) -> float:
        total = 0.0
        for result in field_results:
            weight = self._weights.get(result.field_name, 0.0)
            total += self._channel_value(result) * weight / 100.0
        return round(total, 2)

    def classify(self, composite_score: float) -> ConfidenceLevel:
        t = self.config.thresholds
        if composite_score >= t.high:
            return ConfidenceLevel.HIGH
        if composite_score >= t.medium:
            return ConfidenceLevel.MEDIUM
        if composite_score >= t.low:
            return ConfidenceLevel.LOW
        return ConfidenceLevel.NONE

    @staticmethod
    def describe(field_results: List[FieldMatchResult]) -> List[str]:
        """Human-readable reasons for a reviewer, in channel order."""
        reasons = []
        for result in field_results:
            if result.field_name == FIELD_NAME:
                if result.score >= 90:
                    reasons.append(f"Name highly similar ({result.score}%)")
                elif result.score >= 70:
                    reasons.append(f"Name similar ({result.score}%)")
            elif not result.matched:
                continue
            elif result.field_name == FIELD_DOB:
                reasons.append("Date of birth matches")
            elif result.field_name == FIELD_PHONE:
                reasons.append("Phone number matches")
            elif result.field_name == FIELD_EMAIL:
                reasons.append("Email matches")
            elif result.field_name == FIELD_ADDRESS:
                reasons.append(f"Address similar ({result.score}%)")
        return reasons

    def build_candidate(self, a: NormalizedIdentity, b: NormalizedIdentity) -> MatchCandidate:
        """Compare two records and return the candidate whatever its confidence level."""
        field_results = self.field_matcher.compare(a, b)
        composite = self.score(field_results)
        return MatchCandidate(
            record_id_a=a.record_id,
            record_id_b=b.record_id,
            field_results=field_results,
            composite_score=composite,
            confidence_level=self.classify(composite),
            match_reasons=self.describe(field_results),
        )

    def is_reportable(self, candidate: MatchCandidate) -> bool:
        return (
            candidate.confidence_level != ConfidenceLevel.NONE
            and candidate.composite_score >= self.config.min_report_score
        )

    def evaluate(self, a: NormalizedIdentity, b: NormalizedIdentity) -> Optional[MatchCandidate]:
        """Return a candidate only when the pair is worth a reviewer's attention."""
        candidate = self.build_candidate(a, b)
        if not self.is_reportable(candidate):
            return None
        return candidate
