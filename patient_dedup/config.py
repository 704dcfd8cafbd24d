"""Configuration constants and settings for patient_dedup."""
import os
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

from .exceptions import ConfigurationError

# Application constants
APP_VERSION = "0.1.0"
DOB_FORMAT = "%Y-%m-%d"
DEFAULT_DOB_FORMATS = (DOB_FORMAT, "%d.%m.%Y")
DEFAULT_ID_COLUMN = "PatientID"
DEFAULT_NAME_COLUMN = "Name"
DEFAULT_DOB_COLUMN = "DOB"
DEFAULT_PHONE_COLUMN = "Phone"
DEFAULT_EMAIL_COLUMN = "Email"
DEFAULT_ADDRESS_COLUMN = "Address"

# Matching constants
MIN_PHONE_DIGITS = 4
PHONE_COMPARE_DIGITS = 10
WEIGHT_SUM = 100.0
WEIGHT_EPSILON = 1e-6

# Logging configuration
LOGGER_NAME = "patient_dedup.main"

# File handling
DEFAULT_FILE_ENCODING = 'utf-8'
VALID_OUTPUT_FORMATS = ['json', 'csv', 'tsv', 'txt', 'stdout']
FILE_EXTENSION_MAP = {
    '.json': 'json',
    '.csv': 'csv',
    '.tsv': 'tsv',
    '.txt': 'txt'
}

# Database configuration defaults
DEFAULT_SQL_DRIVER = "{ODBC Driver 17 for SQL Server}"
DEFAULT_LEDGER_TABLE = "dbo.PatientMatchCandidates"
DEFAULT_FETCH_BATCH_SIZE = 500

# Blocking strategies
STRATEGY_NAME_BIRTH_YEAR = "name_birth_year"
STRATEGY_PHONE_SUFFIX = "phone_suffix"
STRATEGY_EMAIL = "email"
VALID_BLOCKING_STRATEGIES = (STRATEGY_NAME_BIRTH_YEAR, STRATEGY_PHONE_SUFFIX, STRATEGY_EMAIL)

# Re-run policies for already decided candidates
RERUN_SKIP = "skip"
RERUN_SUPERSEDE = "supersede"
VALID_RERUN_POLICIES = (RERUN_SKIP, RERUN_SUPERSEDE)

# Run status constants
STATUS_SUCCESS = "success"
STATUS_SUCCESS_NO_DATA = "success_no_data"
STATUS_CANCELLED = "cancelled"
STATUS_PARTIAL_FAILURE = "partial_failure"

# Command-line arguments echoed into output metadata
METADATA_PARAM_KEYS = [
    "input_csv", "ledger", "ledger_table", "rerun_policy", "workers", "limit", "status", "decided_by",
]


def get_env_or_default(key: str, default: str = "") -> str:
    """Get environment variable with optional default."""
    return os.getenv(key, default)


@dataclass(frozen=True)
class FieldWeights:
    """Per-channel weights of the composite score. Must sum to 100."""
    name: float = 40.0
    dob: float = 25.0
    phone: float = 20.0
    email: float = 15.0
    address: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            "name": self.name,
            "dob": self.dob,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
        }


@dataclass(frozen=True)
class ConfidenceThresholds:
    """Lower bounds (inclusive) of each confidence level."""
    high: float = 90.0
    medium: float = 70.0
    low: float = 40.0


@dataclass(frozen=True)
class BlockingConfig:
    strategies: Tuple[str, ...] = (STRATEGY_NAME_BIRTH_YEAR, STRATEGY_PHONE_SUFFIX)
    max_bucket_size: int = 500
    name_key_length: int = 4
    phone_suffix_length: int = 7


@dataclass(frozen=True)
class MatchingConfig:
    """
    Configuration threaded through every engine component.

    Call validate() (or use load_config()) before running a match so that
    configuration errors surface before any comparison is made.
    """
    weights: FieldWeights = field(default_factory=FieldWeights)
    thresholds: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    blocking: BlockingConfig = field(default_factory=BlockingConfig)
    min_report_score: float = 40.0
    name_fuzzy_threshold: int = 80
    fold_unicode: bool = False
    rerun_policy: str = RERUN_SKIP
    max_workers: int = 4
    dob_formats: Tuple[str, ...] = DEFAULT_DOB_FORMATS

    def validate(self) -> "MatchingConfig":
        """
        Validate weights, thresholds and blocking parameters.

        Returns:
            MatchingConfig: self, to allow chaining.

        Raises:
            ConfigurationError: If any setting is out of range.
        """
        weights = self.weights.as_dict()
        negative = [name for name, value in weights.items() if value < 0]
        if negative:
            raise ConfigurationError(f"Field weights must not be negative: {', '.join(negative)}")
        total = sum(weights.values())
        if abs(total - WEIGHT_SUM) > WEIGHT_EPSILON:
            raise ConfigurationError(f"Field weights must sum to {WEIGHT_SUM:g}, got {total:g}")

        t = self.thresholds
        for level, value in (("high", t.high), ("medium", t.medium), ("low", t.low)):
            if value <= 0 or value > 100:
                raise ConfigurationError(f"Threshold '{level}' must be in (0, 100], got {value:g}")
        if not (t.high > t.medium > t.low):
            raise ConfigurationError(
                f"Thresholds must be strictly ordered high > medium > low, got {t.high:g}/{t.medium:g}/{t.low:g}"
            )
        if self.min_report_score <= 0 or self.min_report_score > 100:
            raise ConfigurationError(f"min_report_score must be in (0, 100], got {self.min_report_score:g}")
        if not (0 <= self.name_fuzzy_threshold <= 100):
            raise ConfigurationError("name_fuzzy_threshold must be between 0 and 100")

        b = self.blocking
        if not b.strategies:
            raise ConfigurationError("At least one blocking strategy is required")
        unknown = [s for s in b.strategies if s not in VALID_BLOCKING_STRATEGIES]
        if unknown:
            raise ConfigurationError(
                f"Unknown blocking strategies: {', '.join(unknown)}. Valid: {', '.join(VALID_BLOCKING_STRATEGIES)}"
            )
        if b.max_bucket_size < 2:
            raise ConfigurationError("max_bucket_size must be at least 2")
        if b.name_key_length < 1 or b.phone_suffix_length < MIN_PHONE_DIGITS:
            raise ConfigurationError(
                f"name_key_length must be >= 1 and phone_suffix_length >= {MIN_PHONE_DIGITS}"
            )

        if self.rerun_policy not in VALID_RERUN_POLICIES:
            raise ConfigurationError(
                f"rerun_policy must be one of {', '.join(VALID_RERUN_POLICIES)}, got '{self.rerun_policy}'"
            )
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        return self

    @classmethod
    def from_env(cls, base: Optional["MatchingConfig"] = None) -> "MatchingConfig":
        """
        Build a configuration from DEDUP_* environment variables.

        Unset variables keep the value of `base` (or the defaults). The result
        is not validated; call validate() on it.
        """
        base = base or cls()
        try:
            weights = FieldWeights(
                name=_env_float("DEDUP_WEIGHT_NAME", base.weights.name),
                dob=_env_float("DEDUP_WEIGHT_DOB", base.weights.dob),
                phone=_env_float("DEDUP_WEIGHT_PHONE", base.weights.phone),
                email=_env_float("DEDUP_WEIGHT_EMAIL", base.weights.email),
                address=_env_float("DEDUP_WEIGHT_ADDRESS", base.weights.address),
            )
            thresholds = ConfidenceThresholds(
                high=_env_float("DEDUP_THRESHOLD_HIGH", base.thresholds.high),
                medium=_env_float("DEDUP_THRESHOLD_MEDIUM", base.thresholds.medium),
                low=_env_float("DEDUP_THRESHOLD_LOW", base.thresholds.low),
            )
            strategies_raw = get_env_or_default("DEDUP_BLOCKING_STRATEGIES")
            strategies = (
                tuple(s.strip() for s in strategies_raw.split(",") if s.strip())
                if strategies_raw else base.blocking.strategies
            )
            blocking = replace(
                base.blocking,
                strategies=strategies,
                max_bucket_size=_env_int("DEDUP_MAX_BUCKET_SIZE", base.blocking.max_bucket_size),
            )
            return replace(
                base,
                weights=weights,
                thresholds=thresholds,
                blocking=blocking,
                min_report_score=_env_float("DEDUP_MIN_REPORT_SCORE", base.min_report_score),
                fold_unicode=_env_bool("DEDUP_FOLD_UNICODE", base.fold_unicode),
                rerun_policy=get_env_or_default("DEDUP_RERUN_POLICY", base.rerun_policy),
                max_workers=_env_int("DEDUP_MAX_WORKERS", base.max_workers),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid DEDUP_* environment value: {e}") from e


def load_config(base: Optional[MatchingConfig] = None) -> MatchingConfig:
    """Read the configuration from the environment and validate it."""
    return MatchingConfig.from_env(base).validate()


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    return float(value) if value not in (None, "") else default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    return int(value) if value not in (None, "") else default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")
