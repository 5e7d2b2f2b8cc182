"""
store.py: SQLite record store and centralized DB access

This module provides:
  A. Path resolution and connections (get_db, test overrides)
  B. Schema creation
  C. Record operations for folders, cores, sections, microfossils,
     tie-points, splice intervals and the last good calibration

JSON-shaped fields (location, data points, fossil records, lab analysis,
taxonomy, ecology) are stored as JSON text columns.
"""

import json
import logging
import os
import sqlite3
import uuid

from .models import (
    Core,
    Folder,
    Microfossil,
    Section,
    SpliceInterval,
    TiePoint,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for record store errors."""


class DuplicateRecordError(StoreError):
    pass


# ---------------------------------------------------------------------------
# A. Path resolution and connections
# ---------------------------------------------------------------------------

_db_path = None


def _resolve_db_path():
    """Resolve the database path.

    Priority:
      1. A path set by _set_db_path_for_testing().
      2. CORESYNTH_DB environment variable.
      3. coresynth.db in the project root.
    """
    global _db_path

    if _db_path is not None:
        return _db_path

    env_path = os.environ.get('CORESYNTH_DB')
    if env_path:
        _db_path = os.path.abspath(env_path)
    else:
        base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        _db_path = os.path.join(base_dir, 'coresynth.db')
    logger.info("Resolved DB: %s", _db_path)
    return _db_path


def _set_db_path_for_testing(db_path):
    """Override the DB path for testing. Call before any get_db()."""
    global _db_path
    _db_path = db_path


def _reset_db_path():
    """Reset the resolved path (for testing teardown)."""
    global _db_path
    _db_path = None


def get_db_path():
    return _resolve_db_path()


def get_db():
    """Get a database connection with the schema in place.

    Returns a sqlite3.Connection with row_factory=sqlite3.Row.
    """
    db_path = _resolve_db_path()
    # request dependencies open and close the connection on worker threads
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    ensure_schema(conn)
    return conn


# ---------------------------------------------------------------------------
# B. Schema
# ---------------------------------------------------------------------------

SCHEMA = """
    CREATE TABLE IF NOT EXISTS folders (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    );

    CREATE TABLE IF NOT EXISTS cores (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        location_json TEXT NOT NULL,
        water_depth REAL NOT NULL,
        project TEXT NOT NULL DEFAULT '',
        folder_id TEXT REFERENCES folders(id) ON DELETE SET NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    );

    CREATE TABLE IF NOT EXISTS sections (
        id TEXT PRIMARY KEY,
        core_id TEXT NOT NULL REFERENCES cores(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        section_depth REAL NOT NULL DEFAULT 0,
        sample_interval REAL,
        recovery_date TEXT NOT NULL DEFAULT '',
        collection_time TEXT,
        epoch TEXT NOT NULL DEFAULT '',
        geological_period TEXT NOT NULL DEFAULT 'Indeterminate'
            CHECK(geological_period IN ('Glacial', 'Interglacial', 'Indeterminate')),
        age_range TEXT NOT NULL DEFAULT '',
        data_points_json TEXT NOT NULL DEFAULT '[]',
        microfossil_records_json TEXT NOT NULL DEFAULT '[]',
        lab_analysis_json TEXT,
        summary TEXT,
        section_image TEXT NOT NULL DEFAULT '',
        collector TEXT,
        lithology TEXT,
        munsell_color TEXT,
        grain_size TEXT,
        tephra_layers TEXT,
        paleomagnetic_reversals TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    );
    CREATE INDEX IF NOT EXISTS idx_sections_core ON sections(core_id);

    CREATE TABLE IF NOT EXISTS microfossils (
        id TEXT PRIMARY KEY,
        taxonomy_json TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        stratigraphic_range TEXT NOT NULL DEFAULT '',
        ecology_json TEXT NOT NULL,
        image_url TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    );

    CREATE TABLE IF NOT EXISTS tie_points (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        core_id TEXT NOT NULL REFERENCES cores(id) ON DELETE CASCADE,
        section_id TEXT NOT NULL REFERENCES sections(id) ON DELETE CASCADE,
        depth REAL NOT NULL,
        age REAL NOT NULL,
        UNIQUE(section_id, depth)
    );
    CREATE INDEX IF NOT EXISTS idx_tie_points_core ON tie_points(core_id);

    CREATE TABLE IF NOT EXISTS splice_intervals (
        section_id TEXT PRIMARY KEY REFERENCES sections(id) ON DELETE CASCADE,
        core_id TEXT NOT NULL REFERENCES cores(id) ON DELETE CASCADE,
        start_age REAL,
        end_age REAL
    );

    CREATE TABLE IF NOT EXISTS calibrations (
        core_id TEXT PRIMARY KEY REFERENCES cores(id) ON DELETE CASCADE,
        strategy TEXT NOT NULL,
        sections_json TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    );
"""


def ensure_schema(conn):
    conn.executescript(SCHEMA)


def create_database(db_path):
    """Create an empty database file with the full schema."""
    conn = sqlite3.connect(db_path)
    ensure_schema(conn)
    conn.commit()
    conn.close()
    logger.info("Created database: %s", os.path.basename(db_path))


# ---------------------------------------------------------------------------
# C. Row mappers
# ---------------------------------------------------------------------------

def _loads(text, default):
    return json.loads(text) if text else default


def _row_to_folder(row):
    return Folder(id=row['id'], user_id=row['user_id'], name=row['name'],
                  created_at=row['created_at'])


def _row_to_core(row):
    return Core(
        id=row['id'],
        user_id=row['user_id'],
        name=row['name'],
        location=_loads(row['location_json'], {}),
        water_depth=row['water_depth'],
        project=row['project'],
        folder_id=row['folder_id'],
        created_at=row['created_at'],
    )


SECTION_COLUMNS = (
    'name', 'section_depth', 'sample_interval', 'recovery_date', 'collection_time',
    'epoch', 'geological_period', 'age_range', 'summary', 'section_image', 'collector',
    'lithology', 'munsell_color', 'grain_size', 'tephra_layers', 'paleomagnetic_reversals',
)


def _row_to_section(row):
    data = {col: row[col] for col in SECTION_COLUMNS}
    data.update(
        id=row['id'],
        core_id=row['core_id'],
        data_points=_loads(row['data_points_json'], []),
        microfossil_records=_loads(row['microfossil_records_json'], []),
        lab_analysis=_loads(row['lab_analysis_json'], None),
        created_at=row['created_at'],
    )
    return Section(**data)


def _section_values(section):
    values = {col: getattr(section, col) for col in SECTION_COLUMNS}
    values['data_points_json'] = json.dumps([dp.to_dict() for dp in section.data_points])
    values['microfossil_records_json'] = json.dumps(
        [r.model_dump() for r in section.microfossil_records])
    values['lab_analysis_json'] = (json.dumps(section.lab_analysis.model_dump(exclude_none=True))
                                   if section.lab_analysis is not None else None)
    return values


def _row_to_microfossil(row):
    return Microfossil(
        id=row['id'],
        taxonomy=_loads(row['taxonomy_json'], {}),
        description=row['description'],
        stratigraphic_range=row['stratigraphic_range'],
        ecology=_loads(row['ecology_json'], {}),
        image_url=row['image_url'],
        created_at=row['created_at'],
    )


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

def list_folders(conn, user_id):
    rows = conn.execute(
        "SELECT * FROM folders WHERE user_id = ? ORDER BY created_at, rowid", (user_id,)).fetchall()
    return [_row_to_folder(r) for r in rows]


def get_folder(conn, folder_id):
    row = conn.execute("SELECT * FROM folders WHERE id = ?", (folder_id,)).fetchone()
    return _row_to_folder(row) if row else None


def create_folder(conn, user_id, name):
    folder_id = uuid.uuid4().hex
    conn.execute("INSERT INTO folders (id, user_id, name) VALUES (?, ?, ?)",
                 (folder_id, user_id, name))
    conn.commit()
    return get_folder(conn, folder_id)


def rename_folder(conn, folder_id, name):
    cur = conn.execute("UPDATE folders SET name = ? WHERE id = ?", (name, folder_id))
    conn.commit()
    return get_folder(conn, folder_id) if cur.rowcount else None


def delete_folder(conn, folder_id):
    """Delete a folder; its cores move back to the top level."""
    conn.execute("UPDATE cores SET folder_id = NULL WHERE folder_id = ?", (folder_id,))
    cur = conn.execute("DELETE FROM folders WHERE id = ?", (folder_id,))
    conn.commit()
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Cores
# ---------------------------------------------------------------------------

def list_cores(conn, user_id):
    rows = conn.execute("SELECT * FROM cores WHERE user_id = ? ORDER BY id", (user_id,)).fetchall()
    return [_row_to_core(r) for r in rows]


def get_core(conn, core_id):
    row = conn.execute("SELECT * FROM cores WHERE id = ?", (core_id,)).fetchone()
    return _row_to_core(row) if row else None


def create_core(conn, core):
    if get_core(conn, core.id) is not None:
        raise DuplicateRecordError(
            f'Core with ID "{core.id}" already exists. Please use a unique ID.')
    conn.execute("""
        INSERT INTO cores (id, user_id, name, location_json, water_depth, project, folder_id)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (core.id, core.user_id, core.name, json.dumps(core.location.model_dump()),
          core.water_depth, core.project, core.folder_id))
    conn.commit()
    logger.info("Created core %s", core.id)
    return get_core(conn, core.id)


def update_core(conn, core):
    """Update a core's editable fields; id and owner stay fixed."""
    cur = conn.execute("""
        UPDATE cores SET name = ?, location_json = ?, water_depth = ?, project = ?, folder_id = ?
        WHERE id = ?
    """, (core.name, json.dumps(core.location.model_dump()), core.water_depth,
          core.project, core.folder_id, core.id))
    conn.commit()
    return get_core(conn, core.id) if cur.rowcount else None


def move_core(conn, core_id, folder_id):
    cur = conn.execute("UPDATE cores SET folder_id = ? WHERE id = ?", (folder_id, core_id))
    conn.commit()
    return get_core(conn, core_id) if cur.rowcount else None


def delete_core(conn, core_id):
    """Delete a core together with its sections and synthesis state."""
    for table in ('calibrations', 'splice_intervals', 'tie_points', 'sections'):
        conn.execute(f"DELETE FROM {table} WHERE core_id = ?", (core_id,))
    cur = conn.execute("DELETE FROM cores WHERE id = ?", (core_id,))
    conn.commit()
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

def list_sections(conn, core_id):
    rows = conn.execute(
        "SELECT * FROM sections WHERE core_id = ? ORDER BY section_depth, created_at, rowid",
        (core_id,)).fetchall()
    return [_row_to_section(r) for r in rows]


def get_section(conn, section_id):
    row = conn.execute("SELECT * FROM sections WHERE id = ?", (section_id,)).fetchone()
    return _row_to_section(row) if row else None


def create_section(conn, section):
    """Insert a section under a fresh id and return the stored record."""
    section_id = uuid.uuid4().hex
    values = _section_values(section)
    columns = ['id', 'core_id'] + list(values)
    placeholders = ', '.join('?' for _ in columns)
    conn.execute(f"INSERT INTO sections ({', '.join(columns)}) VALUES ({placeholders})",
                 [section_id, section.core_id] + list(values.values()))
    conn.commit()
    logger.info("Created section %s in core %s", section_id, section.core_id)
    return get_section(conn, section_id)


def update_section(conn, section):
    values = _section_values(section)
    assignments = ', '.join(f'{col} = ?' for col in values)
    cur = conn.execute(f"UPDATE sections SET {assignments} WHERE id = ?",
                       list(values.values()) + [section.id])
    conn.commit()
    return get_section(conn, section.id) if cur.rowcount else None


def delete_section(conn, section_id):
    for table in ('splice_intervals', 'tie_points'):
        conn.execute(f"DELETE FROM {table} WHERE section_id = ?", (section_id,))
    cur = conn.execute("DELETE FROM sections WHERE id = ?", (section_id,))
    conn.commit()
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Microfossils
# ---------------------------------------------------------------------------

def list_microfossils(conn):
    rows = conn.execute("SELECT * FROM microfossils ORDER BY id").fetchall()
    return [_row_to_microfossil(r) for r in rows]


def add_microfossil(conn, fossil):
    if conn.execute("SELECT 1 FROM microfossils WHERE id = ?", (fossil.id,)).fetchone():
        raise DuplicateRecordError(f'Microfossil with ID "{fossil.id}" already exists.')
    conn.execute("""
        INSERT INTO microfossils (id, taxonomy_json, description, stratigraphic_range,
                                  ecology_json, image_url)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (fossil.id, json.dumps(fossil.taxonomy.model_dump(by_alias=True)), fossil.description,
          fossil.stratigraphic_range, json.dumps(fossil.ecology.model_dump()), fossil.image_url))
    conn.commit()
    row = conn.execute("SELECT * FROM microfossils WHERE id = ?", (fossil.id,)).fetchone()
    return _row_to_microfossil(row)


# ---------------------------------------------------------------------------
# Synthesis state: tie-points, splice intervals, calibration
# ---------------------------------------------------------------------------

def list_tie_points(conn, core_id):
    rows = conn.execute(
        "SELECT section_id, depth, age FROM tie_points WHERE core_id = ? ORDER BY id",
        (core_id,)).fetchall()
    return [TiePoint(section_id=r['section_id'], depth=r['depth'], age=r['age']) for r in rows]


def replace_tie_points(conn, core_id, tie_points):
    """Replace the tie-point set of a core in one transaction."""
    with conn:
        conn.execute("DELETE FROM tie_points WHERE core_id = ?", (core_id,))
        conn.executemany(
            "INSERT INTO tie_points (core_id, section_id, depth, age) VALUES (?, ?, ?, ?)",
            [(core_id, tp.section_id, tp.depth, tp.age) for tp in tie_points])
    return list_tie_points(conn, core_id)


def get_splice_intervals(conn, core_id):
    rows = conn.execute(
        "SELECT section_id, start_age, end_age FROM splice_intervals WHERE core_id = ?",
        (core_id,)).fetchall()
    return {r['section_id']: SpliceInterval(section_id=r['section_id'], start_age=r['start_age'],
                                            end_age=r['end_age'])
            for r in rows}


def save_splice_interval(conn, core_id, interval):
    conn.execute("""
        INSERT INTO splice_intervals (section_id, core_id, start_age, end_age)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(section_id) DO UPDATE SET start_age = excluded.start_age,
                                              end_age = excluded.end_age
    """, (interval.section_id, core_id, interval.start_age, interval.end_age))
    conn.commit()
    return interval


def get_calibration(conn, core_id):
    """Return ``(strategy, sections, created_at)`` of the last good run, or None."""
    row = conn.execute("SELECT * FROM calibrations WHERE core_id = ?", (core_id,)).fetchone()
    if not row:
        return None
    sections = [Section(**s) for s in json.loads(row['sections_json'])]
    return row['strategy'], sections, row['created_at']


def save_calibration(conn, core_id, strategy, sections):
    conn.execute("""
        INSERT INTO calibrations (core_id, strategy, sections_json, created_at)
        VALUES (?, ?, ?, datetime('now'))
        ON CONFLICT(core_id) DO UPDATE SET strategy = excluded.strategy,
                                           sections_json = excluded.sections_json,
                                           created_at = excluded.created_at
    """, (core_id, strategy, json.dumps([s.to_dict() for s in sections])))
    conn.commit()


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

def load_sample_data(conn, sample_cores, user_id):
    """Insert sample cores with their sections.

    An existing sample core keeps its row; its sections are replaced.
    """
    loaded = []
    for sample in sample_cores:
        sample = dict(sample)
        sections = sample.pop('sections', [])
        core = Core(user_id=user_id, **sample)
        if get_core(conn, core.id) is None:
            create_core(conn, core)
        else:
            logger.info("Sample core %s exists, replacing its sections", core.id)
            for table in ('calibrations', 'splice_intervals', 'tie_points', 'sections'):
                conn.execute(f"DELETE FROM {table} WHERE core_id = ?", (core.id,))
            conn.commit()
        for section_data in sections:
            create_section(conn, Section(id='', core_id=core.id, **section_data))
        loaded.append(core.id)
    return loaded
