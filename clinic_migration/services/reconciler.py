"""Count reconciliation for the verify phase."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.canonical import ENTITY_LOAD_ORDER
from ..models.migration import EntityProgress, utc_now

logger = logging.getLogger(__name__)


@dataclass
class EntityReconciliation:
    """Counts for one canonical entity type across the pipeline."""
    entity_type: str
    source_count: int = 0
    transformed_count: int = 0
    valid_count: int = 0
    imported_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0

    @property
    def accounted(self) -> int:
        return self.imported_count + self.skipped_count + self.failed_count

    @property
    def match_rate(self) -> float:
        """Share of source records that reached the target (or were already there)."""
        if self.source_count == 0:
            return 1.0 if self.accounted == 0 else 0.0
        return round((self.imported_count + self.skipped_count) / self.source_count, 4)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "source_count": self.source_count,
            "transformed_count": self.transformed_count,
            "valid_count": self.valid_count,
            "imported_count": self.imported_count,
            "skipped_count": self.skipped_count,
            "failed_count": self.failed_count,
            "match_rate": self.match_rate,
            "unaccounted": max(self.source_count - self.accounted, 0),
        }


@dataclass
class ReconciliationReport:
    """Final migration report written by the verify phase."""
    run_id: str
    entities: List[EntityReconciliation] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utc_now)

    @property
    def total_source(self) -> int:
        return sum(e.source_count for e in self.entities)

    @property
    def total_imported(self) -> int:
        return sum(e.imported_count for e in self.entities)

    @property
    def total_skipped(self) -> int:
        return sum(e.skipped_count for e in self.entities)

    @property
    def total_failed(self) -> int:
        return sum(e.failed_count for e in self.entities)

    @property
    def overall_completeness(self) -> float:
        if self.total_source == 0:
            return 1.0
        return round((self.total_imported + self.total_skipped) / self.total_source, 4)

    @property
    def status(self) -> str:
        """complete, partial or failed."""
        landed = self.total_imported + self.total_skipped
        if self.total_source > 0 and landed == 0:
            return "failed"
        if self.total_failed > 0 or landed < self.total_source:
            return "partial"
        return "complete"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "generated_at": self.generated_at.isoformat(),
            "entities": [e.to_dict() for e in self.entities],
            "total_source_records": self.total_source,
            "total_imported_records": self.total_imported,
            "total_skipped_records": self.total_skipped,
            "total_failed_records": self.total_failed,
            "overall_completeness": self.overall_completeness,
            "unresolved_exceptions": self.total_failed,
            "status": self.status,
        }


def reconcile(
    run_id: str,
    source_counts: Dict[str, int],
    progress: Dict[str, EntityProgress],
    transformed_counts: Optional[Dict[str, int]] = None,
    valid_counts: Optional[Dict[str, int]] = None
) -> ReconciliationReport:
    """
    Reconcile source counts against what each phase produced.

    Args:
        run_id: Run being verified
        source_counts: Canonical entity type -> records ingested from the source
        progress: Run progress counters after load
        transformed_counts: Canonical entity type -> records transformed
        valid_counts: Canonical entity type -> records that passed validation

    Returns:
        ReconciliationReport with one entry per entity type seen anywhere
    """
    transformed_counts = transformed_counts or {}
    valid_counts = valid_counts or {}

    seen = set(source_counts) | set(progress) | set(transformed_counts)
    ordered = [e.value for e in ENTITY_LOAD_ORDER if e.value in seen]
    ordered += sorted(seen - set(ordered))

    report = ReconciliationReport(run_id=run_id)
    for entity in ordered:
        counters = progress.get(entity) or EntityProgress()
        entry = EntityReconciliation(
            entity_type=entity,
            source_count=source_counts.get(entity, counters.total),
            transformed_count=transformed_counts.get(entity, 0),
            valid_count=valid_counts.get(entity, 0),
            imported_count=counters.imported,
            skipped_count=counters.skipped,
            failed_count=counters.failed,
        )
        if entry.accounted != entry.source_count:
            logger.warning(
                f"{entity}: {entry.source_count} source records but "
                f"{entry.accounted} accounted for (imported+skipped+failed)"
            )
        report.entities.append(entry)

    logger.info(
        f"Reconciliation for run {run_id}: {report.status}, "
        f"{report.total_imported}/{report.total_source} imported"
    )
    return report
