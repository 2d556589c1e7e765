"""
cohort.py — Detect groups of devices that move together.

Devices sharing an identical last-6 movement signature have changed cell at
the same minutes, in the same order, six times running. Enough of them
together is a strong hint they sit in one physical box.

Phase 1 (scatter/gather): count signatures per device partition, merge by sum.
Phase 2: for every signature at or above the threshold, record the cohort.
"""
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from config import COHORT_DETECTION_SIZE, COHORT_PARTITIONS, get_logger

logger = get_logger("cohort")


@dataclass
class CohortReport:
    largest: int = 0
    signatures: list = field(default_factory=list)
    members: dict = field(default_factory=dict)


class CohortDetector:

    def __init__(self, store, threshold: int = COHORT_DETECTION_SIZE,
                 partitions: int = COHORT_PARTITIONS):
        self.store = store
        self.threshold = threshold
        self.partitions = partitions

    def count_signatures(self) -> Counter:
        """Phase 1: merged signature counts across all partitions."""
        merged = Counter()
        with ThreadPoolExecutor(max_workers=self.partitions) as pool:
            partials = pool.map(
                lambda p: self.store.partition_signature_counts(p, self.partitions),
                range(self.partitions),
            )
            for partial in partials:
                merged.update(partial)
        return merged

    def qualifying(self, counts: Counter) -> list:
        return sorted(sig for sig, n in counts.items() if n >= self.threshold)

    def detect(self) -> CohortReport:
        """Run both phases. ``largest`` is the biggest qualifying merged count."""
        counts = self.count_signatures()
        signatures = self.qualifying(counts)
        largest = max((counts[s] for s in signatures), default=0)

        members = {}
        if signatures:
            members = self.store.note_suspicious_cohort(signatures)
            logger.info("Noted %d suspicious cohort(s), largest has %d devices",
                        len(signatures), largest)

        return CohortReport(largest=largest, signatures=signatures, members=members)
