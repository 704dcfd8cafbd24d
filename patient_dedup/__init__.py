"""patient_dedup package"""
import logging

# Configure a null handler by default
logging.getLogger(__name__).addHandler(logging.NullHandler())

from .config import MatchingConfig, load_config
from .exceptions import (
    CandidateNotFoundError,
    ConfigurationError,
    DeduplicationError,
    InvalidTransitionError,
    LedgerWriteError,
)
from .matching import (
    CompositeScorer,
    DeduplicationPipeline,
    InMemoryMatchLedger,
    MatchCandidate,
    PatientIdentity,
    ReviewStatus,
    duplicate_stats,
)
from .sources import CsvPatientSource, SqlPatientSource
from .sql_interface import SQLInterface, SqlMatchLedger
from .main import main

__version__ = "0.1.0"

__all__ = [
    'MatchingConfig',
    'load_config',
    'PatientIdentity',
    'MatchCandidate',
    'ReviewStatus',
    'CompositeScorer',
    'DeduplicationPipeline',
    'InMemoryMatchLedger',
    'SqlMatchLedger',
    'SQLInterface',
    'CsvPatientSource',
    'SqlPatientSource',
    'duplicate_stats',
    'DeduplicationError',
    'ConfigurationError',
    'InvalidTransitionError',
    'CandidateNotFoundError',
    'LedgerWriteError',
    'main',
]
