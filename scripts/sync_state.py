#!/usr/bin/env python3
"""Utility script to inspect and unlock the local sync state database."""
import sqlite3
import sys
import time
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from erpsync.config import STATE_DB


def show_stats() -> None:
    """Show the active-run guard and the last sync timestamps."""
    if not STATE_DB.exists():
        print(f"State database not found: {STATE_DB}")
        return

    conn = sqlite3.connect(STATE_DB)
    cursor = conn.cursor()

    print(f"State database: {STATE_DB}")

    cursor.execute("SELECT owner, acquired_at FROM sync_lock WHERE id = 1")
    lock = cursor.fetchone()
    if lock:
        owner, acquired_at = lock
        age_minutes = (time.time() - acquired_at) / 60
        print(f"Sync lock: held by run {owner} for {age_minutes:.1f} minutes")
    else:
        print("Sync lock: free")

    cursor.execute("SELECT key, value FROM sync_state ORDER BY key")
    for key, value in cursor.fetchall():
        print(f"{key}: {value}")

    conn.close()


def unlock() -> None:
    """Drop the active-run guard left behind by a crashed run."""
    conn = sqlite3.connect(STATE_DB)
    cursor = conn.cursor()

    cursor.execute("DELETE FROM sync_lock")
    conn.commit()

    if cursor.rowcount:
        print("Sync lock released")
    else:
        print("Sync lock was not held")

    conn.close()


def reset_timestamps() -> None:
    """Forget the last sync times, so the next automatic sync is a full one."""
    conn = sqlite3.connect(STATE_DB)
    cursor = conn.cursor()

    cursor.execute("DELETE FROM sync_state")
    conn.commit()

    print(f"Deleted {cursor.rowcount} state entries")

    conn.close()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage:")
        print("  python scripts/sync_state.py stats     # Show lock and last sync times")
        print("  python scripts/sync_state.py unlock    # Release a stale sync lock")
        print("  python scripts/sync_state.py reset     # Forget last sync times")
        sys.exit(1)

    command = sys.argv[1]

    if command == "stats":
        show_stats()
    elif command == "unlock":
        confirm = input("Only unlock if no sync is running. Continue? (yes/no): ")
        if confirm.lower() == "yes":
            unlock()
        else:
            print("Cancelled")
    elif command == "reset":
        reset_timestamps()
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
