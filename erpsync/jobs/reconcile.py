"""Diff freshly built aggregates against persisted fingerprints."""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from erpsync.parse.fingerprint import compute_fingerprint
from erpsync.parse.models import ChangeKind, InvoiceAggregate, PriorRecord

logger = logging.getLogger(__name__)


@dataclass
class PageReconciliation:
    """Classification of the aggregates touched by one page."""

    classified: dict[int, ChangeKind] = field(default_factory=dict)
    to_write: list[tuple[InvoiceAggregate, ChangeKind]] = field(default_factory=list)

    @property
    def all_unchanged(self) -> bool:
        """True when the page held invoices and none of them changed."""
        return bool(self.classified) and all(
            kind == ChangeKind.UNCHANGED for kind in self.classified.values()
        )


def classify(aggregate: InvoiceAggregate, prior: Optional[PriorRecord]) -> ChangeKind:
    """Classify one aggregate whose fingerprint is already computed."""
    if prior is None:
        return ChangeKind.NEW
    if prior.is_cancelled:
        # Reappeared after being flagged cancelled: rewrite to clear the flag
        return ChangeKind.UPDATED
    if prior.fingerprint != aggregate.fingerprint:
        return ChangeKind.UPDATED
    return ChangeKind.UNCHANGED


class Reconciler:
    """Running reconciliation state for one sync run.

    Every document number is classified exactly once: if a document shows up
    again (spanning pages), its merged aggregate is re-classified and the
    counters move instead of being incremented twice.
    """

    def __init__(self):
        self.counts: dict[ChangeKind, int] = {kind: 0 for kind in ChangeKind}
        self._classified: dict[int, ChangeKind] = {}
        self._prior: dict[int, Optional[PriorRecord]] = {}

    def has_seen(self, document_number: int) -> bool:
        return document_number in self._classified

    @property
    def seen_numbers(self) -> set[str]:
        return {str(number) for number in self._classified}

    @property
    def invoices_seen(self) -> int:
        return len(self._classified)

    def reconcile(
        self,
        aggregates: Iterable[InvoiceAggregate],
        prior: Mapping[str, PriorRecord],
    ) -> PageReconciliation:
        """Fingerprint and classify aggregates against their prior state."""
        result = PageReconciliation()
        for aggregate in aggregates:
            number = aggregate.document_number
            aggregate.fingerprint = compute_fingerprint(aggregate)

            if number in self._prior:
                prior_record = self._prior[number]
            else:
                prior_record = prior.get(aggregate.number)
                self._prior[number] = prior_record
            if prior_record is not None:
                aggregate.is_assigned = prior_record.is_assigned

            kind = classify(aggregate, prior_record)
            previous = self._classified.get(number)
            if previous is not None:
                if previous == ChangeKind.NEW:
                    kind = ChangeKind.NEW
                self.counts[previous] -= 1
            self.counts[kind] += 1
            self._classified[number] = kind

            result.classified[number] = kind
            if kind in (ChangeKind.NEW, ChangeKind.UPDATED):
                result.to_write.append((aggregate, kind))
        return result

    def detect_cancelled(self, persisted: Iterable[PriorRecord]) -> list[str]:
        """Persisted, unassigned, still-active numbers absent from this run.

        Only meaningful after a complete pull. Assigned records are never
        returned, whatever the feed says.
        """
        seen = self.seen_numbers
        cancelled = []
        for record in persisted:
            if record.is_assigned or record.is_cancelled:
                continue
            if record.number in seen:
                continue
            cancelled.append(record.number)
        self.counts[ChangeKind.CANCELLED] += len(cancelled)
        if cancelled:
            logger.info(f"{len(cancelled)} unassigned invoices missing from the feed will be flagged cancelled")
        return cancelled
