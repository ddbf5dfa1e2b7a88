"""Standalone job that audits and repairs user balances."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import init_db
from app.domain import ReconciliationReport
from app.services.reconciliation_service import ReconciliationService
from app.services.resolution_service import ResolutionService


@dataclass(slots=True)
class ReconciliationSummary:
    dry_run: bool = False
    markets_flagged_pending: list[str] = field(default_factory=list)
    report: ReconciliationReport = field(default_factory=ReconciliationReport)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "markets_flagged_pending": self.markets_flagged_pending,
            **self.report.to_dict(),
        }


class ReconciliationPipeline:
    """Coordinate balance reconciliation as an independent pipeline."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        reconciliation: ReconciliationService | None = None,
        resolution: ResolutionService | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._reconciliation = reconciliation or ReconciliationService(settings=self.settings)
        self._resolution = resolution or ResolutionService(settings=self.settings)

    def run(
        self,
        *,
        user_ids: Sequence[str] | None = None,
        dry_run: bool = False,
        sweep_pending: bool = False,
    ) -> ReconciliationSummary:
        summary = ReconciliationSummary(dry_run=dry_run)
        logger.info(
            "Starting balance reconciliation: users={}, dry_run={}, sweep_pending={}",
            len(user_ids) if user_ids else "all",
            dry_run,
            sweep_pending,
        )

        if sweep_pending:
            summary.markets_flagged_pending = self._resolution.mark_pending_resolution_markets()

        if user_ids:
            summary.report = self._reconciliation.reconcile_multiple_users(
                list(user_ids), fix=not dry_run
            )
        else:
            summary.report = self._reconciliation.reconcile_all_users(fix=not dry_run)

        logger.info(
            "Balance reconciliation finished: checked={}, inconsistent={}, fixed={}, errors={}",
            summary.report.total_users_checked,
            summary.report.users_with_inconsistencies,
            summary.report.users_fixed,
            len(summary.report.errors),
        )
        return summary


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Audit stored balances against transaction history and repair drift",
    )
    parser.add_argument(
        "--user-id",
        dest="user_ids",
        action="append",
        help="Restrict the run to specific users (can be provided multiple times)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report inconsistencies without overwriting any balance",
    )
    parser.add_argument(
        "--sweep-pending",
        action="store_true",
        help="Also move active markets past their end time to pending resolution",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args(argv)


def _write_summary(summary: ReconciliationSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Reconciliation summary written to {}", path)


def main(argv: Sequence[str] | None = None) -> ReconciliationSummary:
    args = _parse_args(argv)
    init_db()
    pipeline = ReconciliationPipeline(get_settings())
    summary = pipeline.run(
        user_ids=args.user_ids,
        dry_run=args.dry_run,
        sweep_pending=args.sweep_pending,
    )
    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
