#!/usr/bin/env python
"""Create the payout engine tables.

Usage:
    python scripts/create_schema.py
    python scripts/create_schema.py --database-url sqlite+aiosqlite:///payouts.db
    python scripts/create_schema.py --drop
"""

import argparse
import asyncio
import sys

from payout_engine.database import get_engine
from payout_engine.models import Base


async def create_schema(database_url: str | None, drop: bool) -> list[str]:
    """Create (optionally after dropping) every table. Returns table names."""
    engine = get_engine(database_url)
    try:
        async with engine.begin() as conn:
            if drop:
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()
    return sorted(Base.metadata.tables)


def main() -> int:
    parser = argparse.ArgumentParser(description="Create payout engine tables")
    parser.add_argument(
        "--database-url",
        type=str,
        help="Database URL (default: $DATABASE_URL)",
    )
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop existing tables first (destroys data)",
    )
    args = parser.parse_args()

    tables = asyncio.run(create_schema(args.database_url, args.drop))
    for name in tables:
        print(f"  ok  {name}")
    print(f"\n{len(tables)} tables ready.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
