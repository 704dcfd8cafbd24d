"""
Deduplication pipeline: normalize, block, score, record.

Buckets are scored in parallel by a thread pool; buckets of one pass are
disjoint, so workers share nothing but the ledger, whose commit_bucket is
atomic per bucket. A cancelled run leaves only whole buckets behind and can
be re-run from scratch.
"""

import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from ..config import (
    STATUS_CANCELLED,
    STATUS_PARTIAL_FAILURE,
    STATUS_SUCCESS,
    STATUS_SUCCESS_NO_DATA,
    MatchingConfig,
)
from ..exceptions import LedgerWriteError
from ..secure_logging import get_secure_logger
from .blocking import BlockingEngine, BlockingResult
from .ledger import InMemoryMatchLedger, MatchReviewLedger, UpsertOutcome
from .models import (
    BlockingBucket,
    ConfidenceLevel,
    MatchCandidate,
    NormalizedIdentity,
    PatientIdentity,
    ReviewStatus,
    canonical_pair,
)
from .normalizer import normalize_identity
from .scoring import CompositeScorer

logger = get_secure_logger(__name__)


@dataclass
class RunReport:
    records_seen: int = 0
    duplicate_record_ids: List[str] = field(default_factory=list)
    buckets: int = 0
    buckets_committed: int = 0
    comparisons: int = 0
    outcomes: Counter = field(default_factory=Counter)
    flagged_record_ids: List[str] = field(default_factory=list)
    failed_buckets: int = 0
    cancelled: bool = False
    duration_ms: float = 0.0

    @property
    def candidates_written(self) -> int:
        return sum(self.outcomes[o] for o in (UpsertOutcome.INSERTED, UpsertOutcome.REFRESHED,
                                               UpsertOutcome.SUPERSEDED))

    @property
    def status(self) -> str:
        if self.cancelled:
            return STATUS_CANCELLED
        if self.failed_buckets:
            return STATUS_PARTIAL_FAILURE
        return STATUS_SUCCESS if self.records_seen else STATUS_SUCCESS_NO_DATA

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "records_seen": self.records_seen,
            "duplicate_record_ids": len(self.duplicate_record_ids),
            "buckets": self.buckets,
            "buckets_committed": self.buckets_committed,
            "comparisons": self.comparisons,
            "outcomes": {outcome.value: count for outcome, count in sorted(self.outcomes.items())},
            "flagged_for_manual_review": list(self.flagged_record_ids),
            "failed_buckets": self.failed_buckets,
            "cancelled": self.cancelled,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class _BucketResult:
    comparisons: int = 0
    outcomes: List[UpsertOutcome] = field(default_factory=list)
    cancelled: bool = False


def duplicate_stats(candidates: Iterable[MatchCandidate]) -> Dict[str, int]:
    """Count candidates per confidence level."""
    counts = Counter(c.confidence_level for c in candidates)
    return {
        "total_potential_duplicates": sum(counts.values()),
        "high_confidence": counts[ConfidenceLevel.HIGH],
        "medium_confidence": counts[ConfidenceLevel.MEDIUM],
        "low_confidence": counts[ConfidenceLevel.LOW],
    }


class DeduplicationPipeline:
    def __init__(
        self,
        config: Optional[MatchingConfig] = None,
        ledger: Optional[MatchReviewLedger] = None,
        scorer: Optional[CompositeScorer] = None,
        blocking_engine: Optional[BlockingEngine] = None,
    ):
        self.config = (config or MatchingConfig()).validate()
        self.ledger = ledger if ledger is not None else InMemoryMatchLedger(self.config.rerun_policy)
        self.scorer = scorer or CompositeScorer(self.config)
        self.blocking_engine = blocking_engine or BlockingEngine(self.config)
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """Stop the current run. Buckets already committed stay; the bucket in progress is dropped."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _normalize_population(
        self, records: Iterable[PatientIdentity]
    ) -> Tuple[Dict[str, NormalizedIdentity], List[str]]:
        normalized: Dict[str, NormalizedIdentity] = {}
        duplicates: List[str] = []
        for identity in records:
            record = normalize_identity(identity, self.config)
            if record.record_id in normalized:
                duplicates.append(record.record_id)
                continue
            normalized[record.record_id] = record
        if duplicates:
            logger.warning(f"Skipped {len(duplicates)} records whose id was already seen in this run.")
        return normalized, duplicates

    def _process_bucket(
        self,
        bucket: BlockingBucket,
        normalized: Dict[str, NormalizedIdentity],
        blocking_result: BlockingResult,
        focus_ids: Optional[Set[str]] = None,
        pending_pairs: FrozenSet[Tuple[str, str]] = frozenset(),
    ) -> _BucketResult:
        result = _BucketResult()
        if self._cancel_event.is_set():
            result.cancelled = True
            return result

        candidates: List[MatchCandidate] = []
        stale: List[MatchCandidate] = []
        ids = bucket.record_ids
        for i, id_a in enumerate(ids):
            for id_b in ids[i + 1:]:
                if self._cancel_event.is_set():
                    result.cancelled = True
                    return result
                if focus_ids is not None and id_a not in focus_ids and id_b not in focus_ids:
                    continue
                if not blocking_result.owns_pair(bucket, id_a, id_b):
                    continue
                result.comparisons += 1
                candidate = self.scorer.evaluate(normalized[id_a], normalized[id_b])
                if candidate is not None:
                    candidates.append(candidate)
                elif canonical_pair(id_a, id_b) in pending_pairs:
                    # A pending pair that dropped below the cut-off still gets its new score
                    stale.append(self.scorer.build_candidate(normalized[id_a], normalized[id_b]))

        if candidates or stale:
            try:
                result.outcomes = self.ledger.commit_bucket(candidates, refresh_only=stale)
            except LedgerWriteError:
                logger.log_bucket_commit(bucket.key, len(candidates), success=False)
                raise
        logger.log_bucket_commit(bucket.key, len(candidates) + len(stale))
        return result

    def _execute(
        self,
        normalized: Dict[str, NormalizedIdentity],
        report: RunReport,
        focus_ids: Optional[Set[str]] = None,
    ) -> RunReport:
        start_time = time.time()
        blocking_result = self.blocking_engine.build_buckets(normalized.values())
        report.buckets = len(blocking_result.buckets)
        report.flagged_record_ids = list(blocking_result.flagged_record_ids)
        pending_pairs = frozenset(c.pair for c in self.ledger.candidates(ReviewStatus.PENDING_REVIEW))

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            future_to_bucket = {
                executor.submit(self._process_bucket, bucket, normalized, blocking_result, focus_ids,
                                pending_pairs): bucket
                for bucket in blocking_result.buckets
            }
            for future in as_completed(future_to_bucket):
                try:
                    bucket_result = future.result()
                except LedgerWriteError as e:
                    report.failed_buckets += 1
                    logger.error(f"Bucket commit failed and was rolled back: {e}")
                    continue
                except Exception:
                    # Stop the other workers before propagating
                    self._cancel_event.set()
                    raise
                report.comparisons += bucket_result.comparisons
                if bucket_result.cancelled:
                    report.cancelled = True
                    continue
                report.buckets_committed += 1
                report.outcomes.update(bucket_result.outcomes)

        report.cancelled = report.cancelled or self._cancel_event.is_set()
        report.duration_ms = (time.time() - start_time) * 1000
        logger.log_matching_run(
            records=report.records_seen,
            buckets=report.buckets,
            comparisons=report.comparisons,
            candidates=report.candidates_written,
            flagged=len(report.flagged_record_ids),
            cancelled=report.cancelled,
            duration_ms=report.duration_ms,
        )
        return report

    def run(self, records: Iterable[PatientIdentity]) -> RunReport:
        """
        Full-population run: every pair sharing a bucket is scored and
        reportable candidates are upserted into the ledger.

        Args:
            records: Lazy, finite iterable of identities; consumed once.

        Returns:
            RunReport: Counts, flagged records and completion state.
        """
        self._cancel_event.clear()
        normalized, duplicates = self._normalize_population(records)
        report = RunReport(records_seen=len(normalized) + len(duplicates), duplicate_record_ids=duplicates)
        return self._execute(normalized, report)

    def run_incremental(
        self,
        new_records: Iterable[PatientIdentity],
        population: Iterable[PatientIdentity],
    ) -> RunReport:
        """
        Score only pairs that involve at least one new record.

        New records replace population records with the same id (an update).
        """
        self._cancel_event.clear()
        new_normalized, duplicates = self._normalize_population(new_records)
        normalized, population_duplicates = self._normalize_population(population)
        records_read = len(new_normalized) + len(normalized) + len(duplicates) + len(population_duplicates)
        normalized.update(new_normalized)
        report = RunReport(
            records_seen=records_read,
            duplicate_record_ids=duplicates + population_duplicates,
        )
        return self._execute(normalized, report, focus_ids=set(new_normalized))

    def find_potential_duplicates(
        self,
        probe: PatientIdentity,
        population: Iterable[PatientIdentity],
        limit: Optional[int] = None,
    ) -> List[MatchCandidate]:
        """
        Compare one record against a population, without touching the ledger.

        Only population records sharing a blocking key with the probe are
        compared. Results are sorted by composite score, highest first.
        """
        probe_normalized = normalize_identity(probe, self.config)
        normalized, _ = self._normalize_population(
            identity for identity in population if str(identity.record_id) != probe_normalized.record_id
        )
        blocking_result = self.blocking_engine.build_buckets(normalized.values())
        candidate_ids = self.blocking_engine.candidate_ids_for(probe_normalized, blocking_result)

        matches: List[MatchCandidate] = []
        for record_id in candidate_ids:
            candidate = self.scorer.evaluate(probe_normalized, normalized[record_id])
            if candidate is not None:
                matches.append(candidate)
        matches.sort(key=lambda c: (-c.composite_score, c.pair))
        logger.info(f"Probe search compared {len(candidate_ids)} records, {len(matches)} potential duplicates.")
        return matches[:limit] if limit is not None else matches
