"""Unit tests for patient_dedup.matching.ledger module."""

import threading
from dataclasses import replace

import pytest

from patient_dedup.config import RERUN_SUPERSEDE
from patient_dedup.exceptions import CandidateNotFoundError, InvalidTransitionError
from patient_dedup.matching.ledger import (
    InMemoryMatchLedger,
    UpsertOutcome,
    apply_transition,
    resolve_upsert,
    validate_transition,
)
from patient_dedup.matching.models import ConfidenceLevel, MatchCandidate, ReviewStatus


class TestTransitions:
    """Test the disposition state machine."""

    @pytest.mark.parametrize(
        "current,new",
        [
            (ReviewStatus.PENDING_REVIEW, ReviewStatus.CONFIRMED_DUPLICATE),
            (ReviewStatus.PENDING_REVIEW, ReviewStatus.NOT_DUPLICATE),
            (ReviewStatus.CONFIRMED_DUPLICATE, ReviewStatus.MERGED),
        ],
    )
    def test_allowed(self, current, new):
        """Test the forward transitions."""
        validate_transition(current, new)

    @pytest.mark.parametrize(
        "current,new",
        [
            (ReviewStatus.PENDING_REVIEW, ReviewStatus.MERGED),
            (ReviewStatus.NOT_DUPLICATE, ReviewStatus.CONFIRMED_DUPLICATE),
            (ReviewStatus.MERGED, ReviewStatus.PENDING_REVIEW),
            (ReviewStatus.CONFIRMED_DUPLICATE, ReviewStatus.PENDING_REVIEW),
            (ReviewStatus.PENDING_REVIEW, ReviewStatus.PENDING_REVIEW),
        ],
    )
    def test_rejected(self, current, new):
        """Test that backward and skipping transitions are rejected."""
        with pytest.raises(InvalidTransitionError, match="Cannot move a candidate"):
            validate_transition(current, new)

    def test_apply_transition_returns_copy(self, sample_candidate):
        """Test that the original candidate is left untouched."""
        updated = apply_transition(sample_candidate, ReviewStatus.CONFIRMED_DUPLICATE, "dr.who")

        assert updated.status == ReviewStatus.CONFIRMED_DUPLICATE
        assert updated.decided_by == "dr.who"
        assert updated.updated_at is not None
        assert sample_candidate.status == ReviewStatus.PENDING_REVIEW


class TestResolveUpsert:
    """Test how a fresh candidate lands on the stored head."""

    def test_insert_when_absent(self, sample_candidate):
        """Test the first write of a pair."""
        outcome, record = resolve_upsert(None, sample_candidate)
        assert outcome == UpsertOutcome.INSERTED
        assert record.revision == 1

    def test_unchanged_when_same(self, sample_candidate):
        """Test that an identical rescore writes nothing."""
        outcome, record = resolve_upsert(sample_candidate, replace(sample_candidate))
        assert (outcome, record) == (UpsertOutcome.UNCHANGED, None)

    def test_pending_refreshed_in_place(self, sample_candidate):
        """Test that a changed pending candidate is refreshed, not duplicated."""
        rescored = replace(sample_candidate, composite_score=85.0, confidence_level=ConfidenceLevel.MEDIUM)

        outcome, record = resolve_upsert(sample_candidate, rescored)

        assert outcome == UpsertOutcome.REFRESHED
        assert record.revision == 1
        assert record.composite_score == 85.0
        assert record.created_at == sample_candidate.created_at

    def test_decided_skipped_by_default(self, sample_candidate):
        """Test that a decided pair is never touched under the skip policy."""
        decided = replace(sample_candidate, status=ReviewStatus.NOT_DUPLICATE)
        rescored = replace(sample_candidate, composite_score=85.0)

        assert resolve_upsert(decided, rescored) == (UpsertOutcome.SKIPPED, None)

    def test_decided_superseded(self, sample_candidate):
        """Test that the supersede policy appends a new pending revision."""
        decided = replace(sample_candidate, status=ReviewStatus.NOT_DUPLICATE, decided_by="dr.who")
        rescored = replace(sample_candidate, composite_score=85.0)

        outcome, record = resolve_upsert(decided, rescored, RERUN_SUPERSEDE)

        assert outcome == UpsertOutcome.SUPERSEDED
        assert record.revision == 2
        assert record.supersedes == "P001::P002"
        assert record.candidate_id == "P001::P002#2"
        assert record.status == ReviewStatus.PENDING_REVIEW
        assert record.decided_by is None

    def test_decided_unchanged_not_superseded(self, sample_candidate):
        """Test that an unchanged decided pair is not re-opened."""
        decided = replace(sample_candidate, status=ReviewStatus.MERGED)
        outcome, _ = resolve_upsert(decided, replace(sample_candidate), RERUN_SUPERSEDE)
        assert outcome == UpsertOutcome.UNCHANGED

    def test_refresh_only_updates_pending(self, sample_candidate):
        """Test that a pair below the cut-off still refreshes its pending head."""
        dropped = replace(sample_candidate, composite_score=20.0, confidence_level=ConfidenceLevel.NONE)

        outcome, record = resolve_upsert(sample_candidate, dropped, refresh_only=True)

        assert outcome == UpsertOutcome.REFRESHED
        assert record.confidence_level == ConfidenceLevel.NONE
        assert record.status == ReviewStatus.PENDING_REVIEW

    def test_refresh_only_never_inserts(self, sample_candidate):
        """Test that a pair below the cut-off is not created."""
        assert resolve_upsert(None, sample_candidate, refresh_only=True) == (UpsertOutcome.UNCHANGED, None)

    def test_refresh_only_never_supersedes(self, sample_candidate):
        """Test that a decided pair is not re-opened by a low score."""
        decided = replace(sample_candidate, status=ReviewStatus.NOT_DUPLICATE)
        dropped = replace(sample_candidate, composite_score=20.0, confidence_level=ConfidenceLevel.NONE)

        outcome = resolve_upsert(decided, dropped, RERUN_SUPERSEDE, refresh_only=True)

        assert outcome == (UpsertOutcome.UNCHANGED, None)


class TestInMemoryMatchLedger:
    """Test the in-memory ledger."""

    def test_upsert_and_get(self, memory_ledger, sample_candidate):
        """Test a single write and read back."""
        assert memory_ledger.upsert(sample_candidate) == UpsertOutcome.INSERTED

        stored = memory_ledger.get("P002", "P001")

        assert stored.candidate_id == "P001::P002"
        assert len(memory_ledger) == 1

    def test_repeated_upsert_is_idempotent(self, memory_ledger, sample_candidate):
        """Test that writing the same candidate twice stores one row."""
        memory_ledger.upsert(sample_candidate)
        assert memory_ledger.upsert(replace(sample_candidate)) == UpsertOutcome.UNCHANGED
        assert len(memory_ledger) == 1

    def test_pair_in_both_orders_stored_once(self, memory_ledger, sample_candidate):
        """Test canonical ordering across writes."""
        flipped = MatchCandidate(
            sample_candidate.record_id_b, sample_candidate.record_id_a,
            field_results=sample_candidate.field_results,
            composite_score=sample_candidate.composite_score,
            confidence_level=sample_candidate.confidence_level,
        )
        outcomes = memory_ledger.commit_bucket([sample_candidate, flipped])
        assert outcomes == [UpsertOutcome.INSERTED, UpsertOutcome.UNCHANGED]
        assert len(memory_ledger) == 1

    def test_transition(self, memory_ledger, sample_candidate):
        """Test a reviewer decision."""
        memory_ledger.upsert(sample_candidate)

        updated = memory_ledger.transition("P001", "P002", ReviewStatus.CONFIRMED_DUPLICATE, "dr.who")

        assert updated.status == ReviewStatus.CONFIRMED_DUPLICATE
        assert memory_ledger.get("P001", "P002").decided_by == "dr.who"

    def test_transition_unknown_pair(self, memory_ledger):
        """Test that deciding an unknown pair fails."""
        with pytest.raises(CandidateNotFoundError):
            memory_ledger.transition("X", "Y", ReviewStatus.NOT_DUPLICATE)

    def test_invalid_transition_leaves_state(self, memory_ledger, sample_candidate):
        """Test that an illegal transition changes nothing."""
        memory_ledger.upsert(sample_candidate)
        with pytest.raises(InvalidTransitionError):
            memory_ledger.transition("P001", "P002", ReviewStatus.MERGED)
        assert memory_ledger.get("P001", "P002").status == ReviewStatus.PENDING_REVIEW

    def test_rerun_preserves_decision(self, memory_ledger, sample_candidate):
        """Test that a rescored pair never overwrites a decision."""
        memory_ledger.upsert(sample_candidate)
        memory_ledger.transition("P001", "P002", ReviewStatus.NOT_DUPLICATE, "dr.who")

        outcome = memory_ledger.upsert(replace(sample_candidate, composite_score=75.0))

        assert outcome == UpsertOutcome.SKIPPED
        assert memory_ledger.get("P001", "P002").status == ReviewStatus.NOT_DUPLICATE

    def test_supersede_keeps_history(self, sample_candidate):
        """Test that superseding appends instead of deleting."""
        ledger = InMemoryMatchLedger(RERUN_SUPERSEDE)
        ledger.upsert(sample_candidate)
        ledger.transition("P001", "P002", ReviewStatus.NOT_DUPLICATE)

        ledger.upsert(replace(sample_candidate, composite_score=75.0))

        history = ledger.history("P001", "P002")
        assert [c.revision for c in history] == [1, 2]
        assert history[0].status == ReviewStatus.NOT_DUPLICATE
        assert history[1].status == ReviewStatus.PENDING_REVIEW
        assert ledger.candidates(ReviewStatus.PENDING_REVIEW)[0].candidate_id == "P001::P002#2"

    def test_candidates_filter(self, memory_ledger, sample_candidate):
        """Test listing heads by status."""
        other = replace(sample_candidate, record_id_a="P003", record_id_b="P004")
        memory_ledger.commit_bucket([sample_candidate, other])
        memory_ledger.transition("P003", "P004", ReviewStatus.NOT_DUPLICATE)

        assert [c.pair for c in memory_ledger.candidates()] == [("P001", "P002"), ("P003", "P004")]
        assert [c.pair for c in memory_ledger.candidates(ReviewStatus.NOT_DUPLICATE)] == [("P003", "P004")]

    def test_returned_candidates_are_copies(self, memory_ledger, sample_candidate):
        """Test that callers cannot mutate stored state."""
        memory_ledger.upsert(sample_candidate)
        memory_ledger.get("P001", "P002").status = ReviewStatus.MERGED
        assert memory_ledger.get("P001", "P002").status == ReviewStatus.PENDING_REVIEW

    def test_concurrent_writers_store_one_row(self, memory_ledger, sample_candidate):
        """Test that racing writers of the same pair produce a single row."""
        barrier = threading.Barrier(8)

        def writer():
            barrier.wait()
            memory_ledger.upsert(replace(sample_candidate))

        threads = [threading.Thread(target=writer) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(memory_ledger) == 1

    def test_commit_bucket_refresh_only(self, memory_ledger, sample_candidate):
        """Test that refresh-only candidates update pending pairs and create nothing."""
        memory_ledger.upsert(sample_candidate)
        dropped = replace(sample_candidate, composite_score=20.0, confidence_level=ConfidenceLevel.NONE)
        unknown = replace(dropped, record_id_a="P005", record_id_b="P006")

        outcomes = memory_ledger.commit_bucket([], refresh_only=[dropped, unknown])

        assert outcomes == [UpsertOutcome.REFRESHED, UpsertOutcome.UNCHANGED]
        assert memory_ledger.get("P001", "P002").composite_score == 20.0
        assert memory_ledger.get("P005", "P006") is None
        assert len(memory_ledger) == 1
