"""Settle a batch of feed rows against the ledgers.

Stages per batch: PARSED -> MATCHED -> SETTLED -> RECOMPUTED -> REPORTED.

* A missing required column aborts the batch before the store is touched.
* Bad individual rows are reported and skipped.
* Each system commits on its own: settlements and the full running-total
  recompute share one transaction, so a failing system is rolled back to
  its pre-batch state while the others complete.

Usage:
    from reconciliation import Reconciler
    report = Reconciler(db).reconcile(records, fieldnames=header)
    print(report.to_dict())
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from feed import parse_feed_rows, validate_columns
from persistence import Persistence
from pl_calculator import PLSettings
from running_totals import recompute_system
from settlement_matcher import Settlement, SettlementMatcher
from system_locks import DEFAULT_LOCKS, SystemLocks

logger = logging.getLogger(__name__)


class BatchStage(str, enum.Enum):
    PARSED = "parsed"
    MATCHED = "matched"
    SETTLED = "settled"
    RECOMPUTED = "recomputed"
    REPORTED = "reported"


@dataclass
class ReconciliationReport:
    """Everything that happened to a batch; nothing is dropped silently."""
    matched_count: int = 0
    settled: List[Dict[str, Any]] = field(default_factory=list)
    unmatched_selections: List[Dict[str, Any]] = field(default_factory=list)
    unmatched_feed_rows: List[Dict[str, Any]] = field(default_factory=list)
    row_errors: List[Dict[str, Any]] = field(default_factory=list)
    not_settled: List[Dict[str, Any]] = field(default_factory=list)
    failed_systems: List[Dict[str, Any]] = field(default_factory=list)
    stage: BatchStage = BatchStage.PARSED
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched_count": self.matched_count,
            "settled": self.settled,
            "unmatched_selections": self.unmatched_selections,
            "unmatched_feed_rows": self.unmatched_feed_rows,
            "row_errors": self.row_errors,
            "not_settled": self.not_settled,
            "failed_systems": self.failed_systems,
            "stage": self.stage.value,
            "dry_run": self.dry_run,
        }


class Reconciler:
    def __init__(
        self, db: Persistence, locks: Optional[SystemLocks] = None,
        base_settings: Optional[PLSettings] = None,
    ):
        self.db = db
        self.locks = locks or DEFAULT_LOCKS
        self.matcher = SettlementMatcher(db, base_settings)

    def reconcile(
        self, records: Iterable[Dict[str, Any]],
        fieldnames: Optional[Iterable[str]] = None, dry_run: bool = False,
    ) -> ReconciliationReport:
        records = list(records)
        if fieldnames is None:
            fieldnames = records[0].keys() if records else []
        validate_columns(fieldnames)

        report = ReconciliationReport(dry_run=dry_run)
        rows, row_errors = parse_feed_rows(records)
        report.row_errors = [e.to_dict() for e in row_errors]
        logger.info(
            "Batch parsed: %d row(s), %d row error(s)", len(rows), len(row_errors),
        )

        outcome = self.matcher.match(rows)
        self._advance(report, BatchStage.MATCHED)
        report.unmatched_feed_rows = outcome.unmatched_feed_rows
        report.unmatched_selections = outcome.unmatched_selections
        report.not_settled = outcome.not_settled

        if dry_run:
            report.settled = [s.summary() for s in outcome.accepted]
            report.matched_count = len(outcome.accepted)
            self._advance(report, BatchStage.REPORTED)
            logger.info("Dry run: %d selection(s) would settle", report.matched_count)
            return report

        for system_id, settlements in outcome.by_system().items():
            try:
                applied, stale = self._settle_system(system_id, settlements)
            except Exception as e:
                # Rolled back by the transaction; other systems carry on
                logger.exception("Settlement of system %s failed", system_id)
                report.failed_systems.append({
                    "system_id": system_id,
                    "selections": [s.selection.selection_id for s in settlements],
                    "error": str(e),
                })
                continue
            report.settled.extend(s.summary() for s in applied)
            report.matched_count += len(applied)
            report.not_settled.extend(stale)
        # settle and recompute commit together per system
        self._advance(report, BatchStage.SETTLED)
        self._advance(report, BatchStage.RECOMPUTED)

        self._advance(report, BatchStage.REPORTED)
        logger.info(
            "Batch reported: %d settled, %d failed system(s)",
            report.matched_count, len(report.failed_systems),
        )
        return report

    @staticmethod
    def _advance(report: ReconciliationReport, stage: BatchStage) -> None:
        logger.debug("Batch stage %s -> %s", report.stage.value, stage.value)
        report.stage = stage

    def _settle_system(self, system_id: str, settlements: List[Settlement]):
        """Apply one system's settlements and recompute its ledger atomically.

        Candidates were read before the lock was taken; any that were
        settled or deleted in the meantime are skipped and returned as stale.
        """
        applied: List[Settlement] = []
        stale: List[Dict[str, Any]] = []
        with self.locks.hold(system_id), self.db.transaction():
            self.db.lock_system(system_id)
            for settlement in settlements:
                current = self.db.get_selection(settlement.selection.selection_id)
                if current is None or current.has_result:
                    stale.append({
                        "selection_id": settlement.selection.selection_id,
                        "system_id": system_id,
                        "horse": settlement.selection.horse,
                        "reason": "deleted" if current is None else "already_settled",
                    })
                    continue
                settlement.selection = current
                self.db.update_selection(settlement.settled_selection())
                applied.append(settlement)
            logger.debug("System %s: %d settlement(s) applied", system_id, len(applied))
            if applied:
                recompute_system(self.db, system_id)
        return applied, stale
