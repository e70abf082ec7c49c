# rentbill/db/init_db.py
from __future__ import annotations

import argparse
import logging

from sqlalchemy import inspect

from rentbill.db.base import Base, import_models
from rentbill.db.session import engine

logger = logging.getLogger(__name__)


def run(fresh: bool = False) -> None:
    import_models()

    if fresh:
        logger.warning("Dropping ALL tables (dev only) ...")
        Base.metadata.drop_all(bind=engine)

    logger.info("Creating all missing tables ...")
    Base.metadata.create_all(bind=engine)

    names = sorted(inspect(engine).get_table_names())
    logger.info("Existing tables: %s", names)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(
        description="Initialize billing DB (create missing tables).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Drop & recreate all tables (DEV ONLY).",
    )
    args = parser.parse_args()
    run(fresh=args.fresh)
