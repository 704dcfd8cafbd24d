"""
Attribute normalization applied before any comparison.

Every helper returns either the canonical value or ABSENT. Nothing here
raises on bad input: data quality problems are a matching outcome, not an
error.
"""
import logging
import re
from datetime import date, datetime
from typing import Any, Iterable, Optional

from unidecode import unidecode

from ..config import DEFAULT_DOB_FORMATS, MIN_PHONE_DIGITS, MatchingConfig
from .models import ABSENT, NormalizedIdentity, PatientIdentity

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")
_ADDRESS_JUNK = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: Optional[str], fold_unicode: bool = False) -> Any:
    if name is None:
        return ABSENT
    text = str(name).strip()
    if fold_unicode:
        text = unidecode(text)
    text = text.lower()
    return text if text else ABSENT


def normalize_phone(phone: Optional[str]) -> Any:
    """Keep digits only. Fewer than MIN_PHONE_DIGITS digits counts as absent."""
    if phone is None:
        return ABSENT
    digits = _NON_DIGITS.sub("", str(phone))
    return digits if len(digits) >= MIN_PHONE_DIGITS else ABSENT


def normalize_email(email: Optional[str]) -> Any:
    if email is None:
        return ABSENT
    text = str(email).strip().lower()
    return text if text else ABSENT


def normalize_date(value: Any, formats: Iterable[str] = DEFAULT_DOB_FORMATS) -> Any:
    """Reduce a date, datetime or date string to a calendar date."""
    if value is None:
        return ABSENT
    # datetime is a subclass of date, so check it first
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        logger.debug(f"Unsupported date of birth type: {type(value).__name__}")
        return ABSENT

    text = value.strip()
    if not text:
        return ABSENT
    # fromisoformat only accepts a 'Z' designator from Python 3.11 on
    iso_text = text[:-1] + "+00:00" if text[-1] in "Zz" else text
    try:
        return datetime.fromisoformat(iso_text).date()
    except ValueError:
        pass
    for fmt in formats:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    logger.debug("Unparseable date of birth treated as absent")
    return ABSENT


def normalize_address(address: Optional[str], fold_unicode: bool = False) -> Any:
    if address is None:
        return ABSENT
    text = str(address)
    if fold_unicode:
        text = unidecode(text)
    text = _ADDRESS_JUNK.sub("", text.lower())
    text = _WHITESPACE.sub(" ", text).strip()
    return text if text else ABSENT


def normalize_identity(identity: PatientIdentity, config: Optional[MatchingConfig] = None) -> NormalizedIdentity:
    """Build the engine-internal view of a registry record."""
    config = config or MatchingConfig()
    return NormalizedIdentity(
        record_id=str(identity.record_id),
        name=normalize_name(identity.display_name, config.fold_unicode),
        date_of_birth=normalize_date(identity.date_of_birth, config.dob_formats),
        phone=normalize_phone(identity.phone),
        email=normalize_email(identity.email),
        address=normalize_address(identity.address, config.fold_unicode),
    )
