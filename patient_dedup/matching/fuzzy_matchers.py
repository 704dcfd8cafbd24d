from typing import Any, List, Optional

from rapidfuzz.distance import Levenshtein

from ..config import PHONE_COMPARE_DIGITS, MatchingConfig
from ..exceptions import ConfigurationError
from .models import ABSENT, FieldMatchResult, NormalizedIdentity, ReasonCode
from .normalizer import normalize_address, normalize_date, normalize_email, normalize_name, normalize_phone

FIELD_NAME = "name"
FIELD_DOB = "dob"
FIELD_PHONE = "phone"
FIELD_EMAIL = "email"
FIELD_ADDRESS = "address"


def levenshtein_distance(str1: str, str2: str) -> int:
    """Minimum number of single-character insertions, deletions and substitutions."""
    return Levenshtein.distance(str1, str2)


def _similarity(norm1: Any, norm2: Any) -> int:
    # Both empty scores 0, not 100: an empty name carries no evidence
    if norm1 is ABSENT or norm2 is ABSENT or not norm1 or not norm2:
        return 0
    if norm1 == norm2:
        return 100
    max_len = max(len(norm1), len(norm2))
    distance = levenshtein_distance(norm1, norm2)
    # Integer round-half-up of 100 * (max_len - distance) / max_len
    return (200 * (max_len - distance) + max_len) // (2 * max_len)


def name_similarity(name1: Optional[str], name2: Optional[str], fold_unicode: bool = False) -> int:
    """Edit-distance similarity (0-100) of two names, case-insensitive and trimmed."""
    return _similarity(normalize_name(name1, fold_unicode), normalize_name(name2, fold_unicode))


def address_similarity(address1: Optional[str], address2: Optional[str], fold_unicode: bool = False) -> int:
    """Edit-distance similarity (0-100) of two addresses, ignoring punctuation and spacing."""
    return _similarity(normalize_address(address1, fold_unicode), normalize_address(address2, fold_unicode))


def _phones_match(norm1: Any, norm2: Any) -> bool:
    if norm1 is ABSENT or norm2 is ABSENT:
        return False
    # Substring handles a dialing-code prefix on one side only
    if norm1 in norm2 or norm2 in norm1:
        return True
    return norm1[-PHONE_COMPARE_DIGITS:] == norm2[-PHONE_COMPARE_DIGITS:]


def phone_match(phone1: Optional[str], phone2: Optional[str]) -> bool:
    return _phones_match(normalize_phone(phone1), normalize_phone(phone2))


def email_match(email1: Optional[str], email2: Optional[str]) -> bool:
    norm1, norm2 = normalize_email(email1), normalize_email(email2)
    if norm1 is ABSENT or norm2 is ABSENT:
        return False
    return norm1 == norm2


def date_match(date1: Any, date2: Any) -> bool:
    norm1, norm2 = normalize_date(date1), normalize_date(date2)
    if norm1 is ABSENT or norm2 is ABSENT:
        return False
    return norm1 == norm2


class FieldMatcher:
    """Attribute-specific comparisons over normalized identities."""

    def __init__(self, config: Optional[MatchingConfig] = None):
        self.config = config or MatchingConfig()
        if not (0 <= self.config.name_fuzzy_threshold <= 100):
            raise ConfigurationError("name_fuzzy_threshold must be between 0 and 100")
        self.name_fuzzy_threshold = self.config.name_fuzzy_threshold

    def _graded(self, field_name: str, norm1: Any, norm2: Any) -> FieldMatchResult:
        if norm1 is ABSENT or norm2 is ABSENT:
            side = "both" if norm1 is ABSENT and norm2 is ABSENT else ("a" if norm1 is ABSENT else "b")
            return FieldMatchResult(field_name, norm1, norm2, False, 0, ReasonCode.MISSING,
                                    details=f"Missing on {side}")
        score = _similarity(norm1, norm2)
        if score == 100:
            return FieldMatchResult(field_name, norm1, norm2, True, 100, ReasonCode.EXACT)
        if score >= self.name_fuzzy_threshold:
            return FieldMatchResult(field_name, norm1, norm2, True, score, ReasonCode.FUZZY)
        return FieldMatchResult(field_name, norm1, norm2, False, score, ReasonCode.MISMATCH)

    @staticmethod
    def _boolean(field_name: str, norm1: Any, norm2: Any, matched: bool) -> FieldMatchResult:
        if norm1 is ABSENT or norm2 is ABSENT:
            side = "both" if norm1 is ABSENT and norm2 is ABSENT else ("a" if norm1 is ABSENT else "b")
            return FieldMatchResult(field_name, norm1, norm2, False, 0, ReasonCode.MISSING,
                                    details=f"Missing on {side}")
        if matched:
            return FieldMatchResult(field_name, norm1, norm2, True, 100, ReasonCode.EXACT)
        return FieldMatchResult(field_name, norm1, norm2, False, 0, ReasonCode.MISMATCH)

    def compare_names(self, name1: Any, name2: Any) -> FieldMatchResult:
        return self._graded(FIELD_NAME, name1, name2)

    def compare_dates(self, dob1: Any, dob2: Any) -> FieldMatchResult:
        matched = dob1 is not ABSENT and dob2 is not ABSENT and dob1 == dob2
        return self._boolean(FIELD_DOB, dob1, dob2, matched)

    def compare_phones(self, phone1: Any, phone2: Any) -> FieldMatchResult:
        result = self._boolean(FIELD_PHONE, phone1, phone2, _phones_match(phone1, phone2))
        if result.matched and phone1 != phone2:
            result.details = "Matched on suffix or dialing-code prefix"
        return result

    def compare_emails(self, email1: Any, email2: Any) -> FieldMatchResult:
        matched = email1 is not ABSENT and email2 is not ABSENT and email1 == email2
        return self._boolean(FIELD_EMAIL, email1, email2, matched)

    def compare_addresses(self, address1: Any, address2: Any) -> FieldMatchResult:
        return self._graded(FIELD_ADDRESS, address1, address2)

    def compare(self, a: NormalizedIdentity, b: NormalizedIdentity) -> List[FieldMatchResult]:
        """All channel results for a pair, in a fixed order."""
        return [
            self.compare_names(a.name, b.name),
            self.compare_dates(a.date_of_birth, b.date_of_birth),
            self.compare_phones(a.phone, b.phone),
            self.compare_emails(a.email, b.email),
            self.compare_addresses(a.address, b.address),
        ]
