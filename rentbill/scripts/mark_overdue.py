# FILE: rentbill/scripts/mark_overdue.py
"""
Daily overdue sweep, meant for cron / an external scheduler:

    python -m rentbill.scripts.mark_overdue
    python -m rentbill.scripts.mark_overdue --date 2025-05-01
"""
from __future__ import annotations

import argparse
import logging
from datetime import date
from typing import List, Optional

from rentbill.core.config import settings
from rentbill.db.session import SessionLocal
from rentbill.services.payment_ledger import mark_overdue_invoices
from rentbill.utils.timezone import local_today

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Mark unpaid invoices past their due date as overdue.")
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Business date to evaluate against (YYYY-MM-DD). Default: today.",
    )
    args = parser.parse_args(argv)

    today = args.date or local_today()
    db = SessionLocal()
    try:
        n = mark_overdue_invoices(db, today)
    finally:
        db.close()

    logger.info("Marked %s invoice(s) overdue as of %s", n, today)
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    raise SystemExit(main())
