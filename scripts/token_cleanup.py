#!/usr/bin/env python3
"""Delete expired sessions, tokens and counters, then reclaim table space.

Meant to run from cron or a scheduler, outside the request path. Running it
again, or alongside live traffic, is safe: only rows past their expiry are
touched.

Usage:
    python scripts/token_cleanup.py
    python scripts/token_cleanup.py --skip-vacuum
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def run_cleanup(*, skip_vacuum: bool = False) -> dict:
    # Import here so a missing JWT_SECRET or DATABASE_URL is reported by main()
    from timekeeper.config import get_settings
    from timekeeper.service.reaper import ExpiryReaper
    from timekeeper.storage.memory import MemoryStore
    from timekeeper.storage.postgres import PostgresStore

    settings = get_settings()
    store = (
        MemoryStore()
        if settings.use_memory_store
        else PostgresStore(
            settings.database_url,
            min_size=1,
            max_size=max(1, min(settings.database_pool_max, 2)),
        )
    )
    try:
        reaper = ExpiryReaper(store)
        report = reaper.run()
        vacuumed = [] if skip_vacuum else reaper.compact()
    finally:
        if isinstance(store, PostgresStore):
            store.close()
    return {"deleted": report.as_dict(), "vacuumed": vacuumed}


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Expire stale identity records")
    parser.add_argument(
        "--skip-vacuum",
        action="store_true",
        help="Delete expired rows but do not run VACUUM afterwards",
    )
    args = parser.parse_args(argv)

    from timekeeper.logging import get_logger

    logger = get_logger("timekeeper.scripts.token_cleanup")
    try:
        result = run_cleanup(skip_vacuum=args.skip_vacuum)
    except Exception as exc:
        logger.error("token_cleanup_failed", error_type=type(exc).__name__, error=str(exc))
        return 1
    print(json.dumps(result, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
