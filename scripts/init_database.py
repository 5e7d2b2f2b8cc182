#!/usr/bin/env python3
"""
Initialize the Core Synthesis database.

Creates the SQLite schema and optionally loads the sample cores for a user.

Usage:
    python scripts/init_database.py [db_path] [sample_user_id]
"""

import os
import sqlite3
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from coresynth import store
from coresynth.sample_data import SAMPLE_CORES


def init_database(db_path, sample_user_id=None):
    """
    Create the database and load sample data.

    Args:
        db_path: Path to the database file
        sample_user_id: Owner of the sample cores; None skips loading them

    Returns:
        List of loaded sample core ids.
    """
    store.create_database(db_path)
    if sample_user_id is None:
        return []

    store._set_db_path_for_testing(db_path)
    conn = store.get_db()
    try:
        return store.load_sample_data(conn, SAMPLE_CORES, sample_user_id)
    finally:
        conn.close()
        store._reset_db_path()


def main():
    """Command-line interface for creating the database."""
    db_path = sys.argv[1] if len(sys.argv) > 1 else 'coresynth.db'
    sample_user_id = sys.argv[2] if len(sys.argv) > 2 else None

    if os.path.exists(db_path) and sample_user_id is None:
        print(f"Warning: {db_path} already exists. Skipping creation.")
        return

    loaded = init_database(db_path, sample_user_id)
    print(f"✓ Database created: {db_path}")
    if loaded:
        print(f"  Sample cores for {sample_user_id}: {', '.join(loaded)}")

    # Verify
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table' "
                   "AND name NOT LIKE 'sqlite_%' ORDER BY name")
    tables = [row[0] for row in cursor.fetchall()]
    conn.close()

    print(f"  Tables: {', '.join(tables)}")


if __name__ == '__main__':
    main()
