"""
Blocking: candidate generation without all-pairs comparison.

Records are grouped by cheap signatures and only records sharing a bucket
are compared, so the work is the sum of squared bucket sizes instead of n^2.

Strategies (run as ordered passes, their pairs unioned):
1. name_birth_year: consonant-folded name prefix + birth year, phone suffix
   when the name is missing
2. phone_suffix: trailing phone digits
3. email: normalized e-mail address

Records without a key in any pass share one catch-all bucket. Every bucket
is capped at max_bucket_size; records over the cap are flagged for manual
review instead of being compared.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from unidecode import unidecode

from ..config import (
    STRATEGY_EMAIL,
    STRATEGY_NAME_BIRTH_YEAR,
    STRATEGY_PHONE_SUFFIX,
    MatchingConfig,
)
from .models import ABSENT, BlockingBucket, NormalizedIdentity

logger = logging.getLogger(__name__)

CATCH_ALL_STRATEGY = "catch_all"
CATCH_ALL_KEY = f"{CATCH_ALL_STRATEGY}:*"
_SKIPPED_LETTERS = set("aeiouyhw")


def fold_consonants(name: str) -> str:
    """
    Keep the first letter, then letters other than vowels and h/w/y,
    collapsing adjacent repeats. Non-letters are dropped.

    >>> fold_consonants("john doe")
    'jnd'
    """
    letters = [c for c in unidecode(name).lower() if c.isalpha()]
    if not letters:
        return ""
    folded = [letters[0]]
    for letter in letters[1:]:
        if letter in _SKIPPED_LETTERS or letter == folded[-1]:
            continue
        folded.append(letter)
    return "".join(folded)


@dataclass
class BlockingResult:
    """Buckets of one run plus what was left out of them."""
    strategies: Tuple[str, ...]
    buckets: List[BlockingBucket] = field(default_factory=list)
    flagged_record_ids: List[str] = field(default_factory=list)
    # record_id -> {strategy: bucket key} for every bucket the record was placed in
    placements: Dict[str, Dict[str, str]] = field(default_factory=dict)
    # Every bucket by key, single-record ones included
    index: Dict[str, BlockingBucket] = field(default_factory=dict)
    records_seen: int = 0

    @property
    def comparison_count(self) -> int:
        return sum(bucket.comparison_count for bucket in self.buckets)

    def owns_pair(self, bucket: BlockingBucket, record_id_a: str, record_id_b: str) -> bool:
        """
        True unless an earlier pass already put both records in one bucket.

        Lets the pipeline score each pair once even when several passes
        group the same two records.
        """
        order = self.strategies + (CATCH_ALL_STRATEGY,)
        current = order.index(bucket.strategy)
        placed_a = self.placements.get(record_id_a, {})
        placed_b = self.placements.get(record_id_b, {})
        for strategy in order[:current]:
            key = placed_a.get(strategy)
            if key is not None and key == placed_b.get(strategy):
                return False
        return True


class BlockingEngine:
    """
    Generates blocking buckets for a population of normalized identities.

    Example:
        >>> engine = BlockingEngine(MatchingConfig())
        >>> result = engine.build_buckets(normalized_records)
        >>> [len(b) for b in result.buckets]
    """

    def __init__(self, config: Optional[MatchingConfig] = None):
        self.config = (config or MatchingConfig()).validate()
        self.strategies: Tuple[str, ...] = tuple(self.config.blocking.strategies)
        self.max_bucket_size = self.config.blocking.max_bucket_size

    def _phone_signature(self, record: NormalizedIdentity) -> Optional[str]:
        if record.phone is ABSENT:
            return None
        return record.phone[-self.config.blocking.phone_suffix_length:]

    def _name_signature(self, record: NormalizedIdentity) -> Optional[str]:
        if record.name is not ABSENT:
            prefix = fold_consonants(record.name)[: self.config.blocking.name_key_length]
            if prefix:
                year = str(record.date_of_birth.year) if record.date_of_birth is not ABSENT else "----"
                return f"{prefix}|{year}"
        phone = self._phone_signature(record)
        return f"#{phone}" if phone else None

    def _email_signature(self, record: NormalizedIdentity) -> Optional[str]:
        return record.email if record.email is not ABSENT else None

    def generate_keys(self, record: NormalizedIdentity) -> Dict[str, str]:
        """Blocking key per strategy; strategies with no usable signature are left out."""
        keys = {}
        for strategy in self.strategies:
            if strategy == STRATEGY_NAME_BIRTH_YEAR:
                signature = self._name_signature(record)
            elif strategy == STRATEGY_PHONE_SUFFIX:
                signature = self._phone_signature(record)
            elif strategy == STRATEGY_EMAIL:
                signature = self._email_signature(record)
            else:
                signature = None
            if signature:
                keys[strategy] = f"{strategy}:{signature}"
        return keys

    def _place(self, blocks: "OrderedDict[str, BlockingBucket]", strategy: str, key: str,
               record_id: str, result: BlockingResult, flagged: Set[str]) -> None:
        bucket = blocks.get(key)
        if bucket is None:
            bucket = blocks[key] = BlockingBucket(key=key, strategy=strategy)
        if len(bucket.record_ids) >= self.max_bucket_size:
            if record_id not in flagged:
                flagged.add(record_id)
                result.flagged_record_ids.append(record_id)
            return
        bucket.record_ids.append(record_id)
        result.placements.setdefault(record_id, {})[strategy] = key

    def build_buckets(self, records: Iterable[NormalizedIdentity]) -> BlockingResult:
        result = BlockingResult(strategies=self.strategies)
        passes: Dict[str, "OrderedDict[str, BlockingBucket]"] = {
            strategy: OrderedDict() for strategy in self.strategies + (CATCH_ALL_STRATEGY,)
        }
        flagged: Set[str] = set()

        for record in records:
            result.records_seen += 1
            keys = self.generate_keys(record)
            if not keys:
                self._place(passes[CATCH_ALL_STRATEGY], CATCH_ALL_STRATEGY, CATCH_ALL_KEY,
                            record.record_id, result, flagged)
                continue
            for strategy, key in keys.items():
                self._place(passes[strategy], strategy, key, record.record_id, result, flagged)

        for strategy, blocks in passes.items():
            result.index.update(blocks)
            for bucket in blocks.values():
                if len(bucket) >= 2:
                    result.buckets.append(bucket)

        if result.flagged_record_ids:
            logger.warning(
                f"{len(result.flagged_record_ids)} records exceeded max_bucket_size={self.max_bucket_size} "
                f"and were flagged for manual review."
            )
        logger.info(
            f"Blocking built {len(result.buckets)} buckets from {result.records_seen} records "
            f"({result.comparison_count} comparisons at most)."
        )
        return result

    def candidate_ids_for(self, probe: NormalizedIdentity, result: BlockingResult) -> List[str]:
        """Record ids sharing at least one bucket with a probe record (probe excluded)."""
        probe_keys = set(self.generate_keys(probe).values()) or {CATCH_ALL_KEY}
        seen: Dict[str, None] = {}
        for key in sorted(probe_keys):
            bucket = result.index.get(key)
            if bucket is None:
                continue
            for record_id in bucket.record_ids:
                if record_id != probe.record_id:
                    seen.setdefault(record_id, None)
        return list(seen)
