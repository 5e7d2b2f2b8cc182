"""
Tests for the database init script.
"""

import sqlite3

import coresynth.store as store
from init_database import init_database


class TestInitDatabase:
    def test_schema_only(self, tmp_path):
        db_path = str(tmp_path / 'init.db')
        assert init_database(db_path) == []
        conn = sqlite3.connect(db_path)
        count = conn.execute("SELECT COUNT(*) FROM cores").fetchone()[0]
        conn.close()
        assert count == 0

    def test_with_samples(self, tmp_path):
        db_path = str(tmp_path / 'init.db')
        assert init_database(db_path, 'user-1') == ['ODP-982A', 'MD95-2042']
        conn = sqlite3.connect(db_path)
        count = conn.execute("SELECT COUNT(*) FROM sections").fetchone()[0]
        conn.close()
        assert count == 3

    def test_resets_db_path(self, tmp_path):
        init_database(str(tmp_path / 'init.db'), 'user-1')
        assert store._db_path is None
