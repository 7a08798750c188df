#!/usr/bin/env python3
"""
Run one escalation pass over pending expenses.

Usage:
    python scripts/run_escalation.py [--config config/approval.yaml]
                                     [--database-url URL] [--as-of ISO8601]
                                     [--dry-run]

Meant for cron: each run reassigns overdue approval entries to the rule's
escalation approver (or reminds the holder) and prints a one-line summary.
``--dry-run`` rolls the transaction back instead of committing.
"""

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from expense_config import get_active_config
from expense_kernel.db.engine import create_tables, init_engine_from_url, session_scope
from expense_kernel.logging_config import configure_logging
from expense_kernel.services import (
    ControllerSettings,
    SqlNotificationSink,
    TableCurrencyNormalizer,
    WorkflowController,
)


def _parse_as_of(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Escalate overdue expense approvals.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Settings YAML (defaults to $EXPENSE_APPROVAL_CONFIG or built-in defaults)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override the configured database URL",
    )
    parser.add_argument(
        "--as-of",
        type=_parse_as_of,
        default=None,
        help="Evaluate deadlines at this ISO-8601 time instead of now",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would happen, then roll back",
    )
    args = parser.parse_args()

    settings = get_active_config(args.config)
    configure_logging(level=settings.log_level)
    init_engine_from_url(args.database_url or settings.database_url)
    create_tables()

    try:
        with session_scope(commit=not args.dry_run) as session:
            controller = WorkflowController(
                session,
                normalizer=TableCurrencyNormalizer(settings.exchange_rates),
                notifier=SqlNotificationSink(session),
                settings=ControllerSettings(
                    transition_retry_limit=settings.transition_retry_limit,
                    max_comment_length=settings.max_comment_length,
                    bulk_max_items=settings.bulk_max_items,
                ),
            )
            report = controller.escalate_overdue(args.as_of)
    except Exception as exc:
        print(f"Escalation failed: {exc}", file=sys.stderr)
        return 1

    print(
        f"{'[dry-run] ' if args.dry_run else ''}as_of={report.as_of.isoformat()} "
        f"examined={report.examined} reassigned={report.reassigned} "
        f"reminded={report.reminded} skipped={report.skipped}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
