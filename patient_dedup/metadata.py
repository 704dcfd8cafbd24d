"""Metadata generation utilities for patient_dedup."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import APP_VERSION, METADATA_PARAM_KEYS, STATUS_SUCCESS, STATUS_SUCCESS_NO_DATA
from .matching.models import MatchCandidate
from .matching.pipeline import RunReport, duplicate_stats

logger = logging.getLogger(__name__)


def extract_parameters(args: Any) -> Dict[str, str]:
    """Extract relevant command-line parameters from args for metadata."""
    return {
        k: str(v) for k, v in vars(args).items()
        if k in METADATA_PARAM_KEYS and v is not None
    }


def create_metadata_dict(
    start_time: datetime,
    execution_duration_ms: int,
    args: Any,
    display_name: str,
    results: List[Any],
    report: Optional[RunReport] = None,
) -> Dict[str, Any]:
    """Create the metadata dictionary written alongside match results."""
    metadata_dict: Dict[str, Any] = {
        'run_timestamp_utc': start_time.isoformat(),
        'action': args.action,
        'display_name': display_name,
        'tool_version': APP_VERSION,
        'execution_duration_ms': execution_duration_ms,
        'row_count': len(results) if results else 0,
        'parameters': extract_parameters(args),
    }

    candidates = [r for r in results or [] if isinstance(r, MatchCandidate)]
    if candidates:
        metadata_dict['duplicate_stats'] = duplicate_stats(candidates)

    if report is not None:
        metadata_dict['run_report'] = report.to_dict()
        metadata_dict['status'] = report.status
    else:
        metadata_dict['status'] = STATUS_SUCCESS if results else STATUS_SUCCESS_NO_DATA
    return metadata_dict
