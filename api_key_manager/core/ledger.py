"""
Cost ledger.

Append-only store of cost samples keyed by (credential, bucket_start,
description). Merging a sample whose key is already present is a no-op,
so re-processing an overlapping report window never double counts.
"""

import logging
import threading
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from ..storage.models import CostSample
from ..storage.repository import StateRepository

logger = logging.getLogger(__name__)

SampleKey = Tuple[str, datetime, str]


def _in_range(sample: CostSample, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and sample.bucket_start < start:
        return False
    if end is not None and sample.bucket_start > end:
        return False
    return True


class CostLedger:
    """Thread-safe per-credential cost series."""

    def __init__(self, repository: Optional[StateRepository] = None):
        self._repository = repository
        self._lock = threading.RLock()
        self._samples: Dict[SampleKey, CostSample] = {}

    def load(self, samples: Iterable[CostSample]) -> None:
        with self._lock:
            self._samples = {s.key: s for s in samples}

    def merge(self, samples: Iterable[CostSample]) -> Tuple[int, int]:
        """Append samples whose key is new; skip the rest.

        Returns:
            (inserted, duplicates)
        """
        with self._lock:
            fresh: Dict[SampleKey, CostSample] = {}
            duplicates = 0
            for sample in samples:
                if sample.key in self._samples or sample.key in fresh:
                    duplicates += 1
                    logger.debug("Skipping duplicate cost sample %s", sample.key)
                    continue
                fresh[sample.key] = sample
            if fresh and self._repository is not None:
                self._repository.insert_cost_samples(fresh.values())
            self._samples.update(fresh)
            return len(fresh), duplicates

    def clear(self) -> None:
        """Drop all history. The caller resets the checkpoint alongside."""
        with self._lock:
            if self._repository is not None:
                self._repository.clear_costs()
            self._samples = {}

    def samples(
        self,
        credential: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CostSample]:
        """Samples ordered by bucket start, optionally for one credential.

        ``start`` and ``end`` are inclusive bounds on the bucket start.
        """
        with self._lock:
            selected = [
                s for s in self._samples.values()
                if (credential is None or s.credential == credential) and _in_range(s, start, end)
            ]
        return sorted(selected, key=lambda s: (s.bucket_start, s.credential, s.description))

    def total(
        self,
        credential: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Decimal:
        return sum((s.amount for s in self.samples(credential, start, end)), Decimal("0"))

    def totals_by_credential(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Decimal]:
        totals: Dict[str, Decimal] = {}
        for sample in self.samples(start=start, end=end):
            totals[sample.credential] = totals.get(sample.credential, Decimal("0")) + sample.amount
        return totals

    def totals_by_currency(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[Tuple[str, str], Decimal]:
        """Spend keyed by (credential, currency); amounts in different currencies never mix."""
        totals: Dict[Tuple[str, str], Decimal] = {}
        for sample in self.samples(start=start, end=end):
            key = (sample.credential, sample.currency)
            totals[key] = totals.get(key, Decimal("0")) + sample.amount
        return totals

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)
