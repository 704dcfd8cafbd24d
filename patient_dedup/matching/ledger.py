"""
Match Review Ledger: the recorded outcome of comparisons.

A candidate starts in pending_review and moves forward only:

    pending_review -> confirmed_duplicate -> merged
    pending_review -> not_duplicate

Candidates are never deleted. Re-running the pipeline refreshes pending
candidates in place and never touches a decided one; when a decided pair
compares differently on a later run, the rerun policy either skips it or
appends a new revision that supersedes it.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from ..config import RERUN_SKIP, RERUN_SUPERSEDE
from ..exceptions import CandidateNotFoundError, InvalidTransitionError
from ..secure_logging import get_secure_logger
from .models import MatchCandidate, ReviewStatus, canonical_pair, utc_now

logger = get_secure_logger(__name__)

ALLOWED_TRANSITIONS: Dict[ReviewStatus, Tuple[ReviewStatus, ...]] = {
    ReviewStatus.PENDING_REVIEW: (ReviewStatus.CONFIRMED_DUPLICATE, ReviewStatus.NOT_DUPLICATE),
    ReviewStatus.CONFIRMED_DUPLICATE: (ReviewStatus.MERGED,),
    ReviewStatus.NOT_DUPLICATE: (),
    ReviewStatus.MERGED: (),
}


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    REFRESHED = "refreshed"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    SUPERSEDED = "superseded"


def validate_transition(current: ReviewStatus, new_status: ReviewStatus) -> None:
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move a candidate from '{current.value}' to '{new_status.value}'"
        )


def apply_transition(candidate: MatchCandidate, new_status: ReviewStatus,
                     decided_by: Optional[str] = None) -> MatchCandidate:
    """Return a copy of the candidate in its new status; the input is left untouched."""
    validate_transition(candidate.status, new_status)
    return replace(candidate, status=new_status, decided_by=decided_by or candidate.decided_by,
                   updated_at=utc_now())


def resolve_upsert(
    head: Optional[MatchCandidate],
    incoming: MatchCandidate,
    rerun_policy: str = RERUN_SKIP,
    refresh_only: bool = False,
) -> Tuple[UpsertOutcome, Optional[MatchCandidate]]:
    """
    Decide how a freshly scored candidate lands in the ledger.

    Args:
        head: Latest stored revision for the pair, or None
        incoming: Candidate produced by the current run
        rerun_policy: 'skip' or 'supersede' for pairs already decided
        refresh_only: The pair fell below the reporting cut-off; it may only
            update a pending head, never create or supersede a revision

    Returns:
        (outcome, record to write). The record is None when nothing is written.
    """
    if refresh_only and (head is None or head.status != ReviewStatus.PENDING_REVIEW):
        return UpsertOutcome.UNCHANGED, None

    if head is None:
        return UpsertOutcome.INSERTED, replace(incoming, status=ReviewStatus.PENDING_REVIEW, revision=1,
                                               supersedes=None)

    if head.status == ReviewStatus.PENDING_REVIEW:
        if head.same_comparison(incoming):
            return UpsertOutcome.UNCHANGED, None
        refreshed = replace(
            head,
            field_results=list(incoming.field_results),
            composite_score=incoming.composite_score,
            confidence_level=incoming.confidence_level,
            match_reasons=list(incoming.match_reasons),
            updated_at=utc_now(),
        )
        return UpsertOutcome.REFRESHED, refreshed

    if head.same_comparison(incoming):
        return UpsertOutcome.UNCHANGED, None
    if rerun_policy == RERUN_SUPERSEDE:
        successor = replace(
            incoming,
            status=ReviewStatus.PENDING_REVIEW,
            revision=head.revision + 1,
            supersedes=head.candidate_id,
            decided_by=None,
            created_at=utc_now(),
            updated_at=None,
        )
        return UpsertOutcome.SUPERSEDED, successor
    return UpsertOutcome.SKIPPED, None


class MatchReviewLedger(ABC):
    """Storage-agnostic sink for match candidates, keyed by canonical pair."""

    def __init__(self, rerun_policy: str = RERUN_SKIP):
        self.rerun_policy = rerun_policy

    @abstractmethod
    def commit_bucket(self, candidates: Iterable[MatchCandidate],
                      refresh_only: Iterable[MatchCandidate] = ()) -> List[UpsertOutcome]:
        """
        Upsert all candidates of one bucket atomically: all are written or none.

        refresh_only candidates only update pending heads. Outcomes follow
        candidates first, then refresh_only, in input order.
        """

    @abstractmethod
    def history(self, record_id_a: str, record_id_b: str) -> List[MatchCandidate]:
        """All revisions of a pair, oldest first."""

    @abstractmethod
    def candidates(self, status: Optional[ReviewStatus] = None) -> List[MatchCandidate]:
        """Latest revision of every pair, optionally filtered by status."""

    @abstractmethod
    def transition(self, record_id_a: str, record_id_b: str, new_status: ReviewStatus,
                   decided_by: Optional[str] = None) -> MatchCandidate:
        """Move the latest revision of a pair to a new status."""

    def upsert(self, candidate: MatchCandidate) -> UpsertOutcome:
        return self.commit_bucket([candidate])[0]

    def get(self, record_id_a: str, record_id_b: str) -> Optional[MatchCandidate]:
        revisions = self.history(record_id_a, record_id_b)
        return revisions[-1] if revisions else None


class InMemoryMatchLedger(MatchReviewLedger):
    """Thread-safe ledger held in process memory. One lock serializes all writes."""

    def __init__(self, rerun_policy: str = RERUN_SKIP):
        super().__init__(rerun_policy)
        self._lock = threading.Lock()
        self._revisions: Dict[Tuple[str, str], List[MatchCandidate]] = {}

    def __len__(self) -> int:
        with self._lock:
            return sum(len(revisions) for revisions in self._revisions.values())

    def commit_bucket(self, candidates: Iterable[MatchCandidate],
                      refresh_only: Iterable[MatchCandidate] = ()) -> List[UpsertOutcome]:
        work = [(c, False) for c in candidates] + [(c, True) for c in refresh_only]
        with self._lock:
            # Stage every write first so a failure leaves the ledger untouched
            staged: Dict[Tuple[str, str], List[MatchCandidate]] = {}
            outcomes: List[UpsertOutcome] = []
            for candidate, stale in work:
                pair = candidate.pair
                revisions = staged.get(pair)
                if revisions is None:
                    revisions = list(self._revisions.get(pair, []))
                head = revisions[-1] if revisions else None
                outcome, record = resolve_upsert(head, candidate, self.rerun_policy, refresh_only=stale)
                if outcome == UpsertOutcome.REFRESHED:
                    revisions[-1] = record
                elif record is not None:
                    revisions.append(record)
                staged[pair] = revisions
                outcomes.append(outcome)
            self._revisions.update(staged)
        return outcomes

    def history(self, record_id_a: str, record_id_b: str) -> List[MatchCandidate]:
        pair = canonical_pair(record_id_a, record_id_b)
        with self._lock:
            return [replace(c) for c in self._revisions.get(pair, [])]

    def candidates(self, status: Optional[ReviewStatus] = None) -> List[MatchCandidate]:
        with self._lock:
            heads = [replace(revisions[-1]) for revisions in self._revisions.values() if revisions]
        if status is not None:
            heads = [c for c in heads if c.status == status]
        return sorted(heads, key=lambda c: c.pair)

    def transition(self, record_id_a: str, record_id_b: str, new_status: ReviewStatus,
                   decided_by: Optional[str] = None) -> MatchCandidate:
        pair = canonical_pair(record_id_a, record_id_b)
        with self._lock:
            revisions = self._revisions.get(pair)
            if not revisions:
                raise CandidateNotFoundError(f"No match candidate for pair {pair[0]}::{pair[1]}")
            head = revisions[-1]
            updated = apply_transition(head, new_status, decided_by)
            revisions[-1] = updated
        logger.log_ledger_transition(updated.candidate_id, head.status.value, new_status.value, decided_by)
        return replace(updated)
