"""Simple script to refresh the leaderboard from the sheets - can be run as a cron job."""
import asyncio
import logging
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from sqlmodel import Session

from db import create_db_and_tables, engine, purge_expired_entries
from kv import KVStore
from sheets import SheetsClient
from sync import InvalidSyncMode, SyncFailed, run_sync

logging.basicConfig(level=logging.INFO)


def main(client: SheetsClient | None = None) -> int:
    mode = os.getenv("SYNC_MODE", "merge")
    create_db_and_tables()
    purge_expired_entries()

    with Session(engine) as session:
        try:
            summary = asyncio.run(run_sync(KVStore(session), mode, client or SheetsClient()))
        except InvalidSyncMode as e:
            print(f"ERROR: {e}")
            return 1
        except SyncFailed as e:
            print(f"ERROR: sync failed during {e.stage}: {e.message}")
            return 1

    print(f"SUCCESS: {summary.mode} sync at {summary.synced_at.isoformat()}")
    print(f"Stats: {summary.stats}")
    print(f"Sources: {summary.sources}")
    print(f"Verified meditation members: {summary.verified}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
