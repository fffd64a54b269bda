"""
SQLite metadata table and index records for presets.

The metadata table holds one row per preset id with everything except the preset's
content. Rows are written individually, so updating one preset never rewrites the
others. The favorites, recent, collections and seeding records are JSON values kept
in a key/value table in the same database, which lets a metadata change and the
matching index change commit in a single transaction.

A table instance owns one connection. The repository drives it from a single worker
thread; it is not meant to be shared between threads without that serialization.
"""

import contextlib
import enum
import json
import logging
import sqlite3
from typing import Any, Dict, Iterator, List, Optional

from .model import Preset, PresetMetadata, PresetType, parse_timestamp
from ..settings import lib
from ..status import status

# Schema version, stored in PRAGMA user_version
SCHEMA_VERSION = 1

# Define the expected schema for the presets table
PRESETS_SCHEMA: Dict[str, str] = {
    'id': 'TEXT PRIMARY KEY',
    'name': 'TEXT NOT NULL',
    'author': 'TEXT NOT NULL',
    'type': 'TEXT NOT NULL',
    'created_at': 'TEXT NOT NULL',
    'modified_at': 'TEXT NOT NULL',
    'is_favorite': 'INTEGER NOT NULL DEFAULT 0',
    'tags': "TEXT NOT NULL DEFAULT '[]'",
    'version': 'INTEGER NOT NULL DEFAULT 1',
    'custom_colors': 'INTEGER',
}

RECORDS_SCHEMA: Dict[str, str] = {
    'key': 'TEXT PRIMARY KEY',
    'value': 'TEXT NOT NULL',
}


class Table(enum.StrEnum):
    """Enum for database tables."""
    Presets = 'presets'
    Records = 'records'


TABLE_SCHEMAS: Dict[Table, Dict[str, str]] = {
    Table.Presets: PRESETS_SCHEMA,
    Table.Records: RECORDS_SCHEMA,
}


@contextlib.contextmanager
def sqlite_errors(action: str) -> Iterator[None]:
    """Convert SQLite errors raised while performing ``action`` into IOFailureException."""
    try:
        yield
    except sqlite3.Error as ex:
        raise status.IOFailureException(f'Database error while {action}: {ex}') from ex


def _row_to_preset(row: sqlite3.Row) -> Preset:
    """Build a content-less preset from a presets table row.

    Raises:
        status.SerializationFailureException: If the row cannot be decoded.
    """
    try:
        tags = json.loads(row['tags'])
        if not isinstance(tags, list):
            raise ValueError(f'tags must be a list, got {type(tags).__name__}')
        custom_colors = row['custom_colors']
        # Validate the stored timestamps
        parse_timestamp(row['created_at'])
        parse_timestamp(row['modified_at'])
        return Preset(
            id=row['id'],
            name=row['name'],
            author=row['author'],
            type=PresetType.from_value(row['type']),
            content='',
            metadata=PresetMetadata(
                created_at=row['created_at'],
                modified_at=row['modified_at'],
                is_favorite=bool(row['is_favorite']),
                tags=tags,
                version=int(row['version']),
                custom_colors=None if custom_colors is None else bool(custom_colors),
            ),
        )
    except (TypeError, ValueError, KeyError, json.JSONDecodeError) as ex:
        raise status.SerializationFailureException(
            f'Corrupt metadata row for preset "{row["id"]}": {ex}'
        ) from ex


def _decode_record(key: str, raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as ex:
        raise status.SerializationFailureException(f'Corrupt record "{key}": {ex}') from ex


class MetadataTable:
    """Metadata table and index records backed by a single SQLite connection.

    Statements issued inside :meth:`transaction` commit together; outside of one,
    every write commits on its own.
    """

    def __init__(self, db_path: Any = lib.MEMORY_DB) -> None:
        self.db_path = str(db_path)
        self._depth = 0
        with sqlite_errors('opening the database'):
            self._conn = sqlite3.connect(self.db_path, timeout=2.0, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 1000)
        try:
            self._initialize_schema_if_needed()
        except status.BaseStatusException:
            self.close()
            raise

    def __repr__(self) -> str:
        return f'<MetadataTable db_path={self.db_path!r}>'

    def close(self) -> None:
        """Close the underlying connection."""
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logging.error(f'SQLite error while closing {self.db_path}: {e}')

    def _initialize_schema_if_needed(self) -> None:
        """
        Ensures the presets and records tables exist with the expected columns.
        Missing tables are created; tables missing columns are reported as corrupt.
        """
        with sqlite_errors('initializing the schema'):
            for table, schema in TABLE_SCHEMAS.items():
                if self._table_exists(table.value):
                    cursor = self._conn.execute(f'PRAGMA table_info({table.value})')
                    current_columns = {row[1] for row in cursor.fetchall()}
                    missing_cols = set(schema) - current_columns
                    if missing_cols:
                        raise status.SerializationFailureException(
                            f"Table '{table.value}' schema is invalid. Missing columns: {missing_cols}."
                        )
                    continue

                cols_sql = ', '.join(f'"{name}" {typedef}' for name, typedef in schema.items())
                self._conn.execute(f'CREATE TABLE {table.value} ({cols_sql})')
                logging.info(f"Created table '{table.value}' in {self.db_path}")

            version = self._conn.execute('PRAGMA user_version').fetchone()[0]
            if version != SCHEMA_VERSION:
                logging.debug(f'Setting schema version {version} -> {SCHEMA_VERSION}')
                self._conn.execute(f'PRAGMA user_version = {SCHEMA_VERSION}')
            self._conn.commit()

    def _table_exists(self, table_name: str) -> bool:
        cursor = self._conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    @contextlib.contextmanager
    def transaction(self) -> Iterator['MetadataTable']:
        """Group several writes into one commit. Nested use joins the outer transaction.

        Raises:
            status.IOFailureException: If the commit fails.
        """
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield self
            with sqlite_errors('committing'):
                self._conn.commit()
        except BaseException:
            try:
                self._conn.rollback()
            except sqlite3.Error as e:
                logging.error(f'SQLite error during rollback: {e}')
            raise
        finally:
            self._depth = 0

    # Presets

    def get(self, preset_id: str) -> Optional[Preset]:
        """Return the content-less preset stored for ``preset_id``, or None."""
        with sqlite_errors(f'reading preset "{preset_id}"'):
            row = self._conn.execute(
                f'SELECT * FROM {Table.Presets.value} WHERE id=?', (preset_id,)
            ).fetchone()
        if row is None:
            return None
        return _row_to_preset(row)

    def contains(self, preset_id: str) -> bool:
        with sqlite_errors(f'reading preset "{preset_id}"'):
            row = self._conn.execute(
                f'SELECT 1 FROM {Table.Presets.value} WHERE id=?', (preset_id,)
            ).fetchone()
        return row is not None

    def put(self, preset: Preset) -> None:
        """Insert or replace the metadata of one preset. Content is not stored."""
        md = preset.metadata
        values = (
            preset.id,
            preset.name,
            preset.author,
            preset.type.name,
            md.created_at,
            md.modified_at,
            int(md.is_favorite),
            json.dumps(list(md.tags), ensure_ascii=False),
            int(md.version),
            None if md.custom_colors is None else int(md.custom_colors),
        )
        columns = list(PRESETS_SCHEMA)
        updates = ', '.join(f'"{c}"=excluded."{c}"' for c in columns if c != 'id')
        with self.transaction(), sqlite_errors(f'writing preset "{preset.id}"'):
            self._conn.execute(
                f'INSERT INTO {Table.Presets.value} ({", ".join(columns)}) '
                f'VALUES ({", ".join("?" for _ in columns)}) '
                f'ON CONFLICT(id) DO UPDATE SET {updates}',
                values
            )

    def set_favorite(self, preset_id: str, value: bool) -> bool:
        """Set the favorite flag of a preset. Returns False if the preset is unknown."""
        with self.transaction(), sqlite_errors(f'updating preset "{preset_id}"'):
            cursor = self._conn.execute(
                f'UPDATE {Table.Presets.value} SET is_favorite=? WHERE id=?',
                (int(value), preset_id)
            )
        return cursor.rowcount > 0

    def remove(self, preset_id: str) -> bool:
        """Remove a preset's metadata. Returns False if there was none."""
        with self.transaction(), sqlite_errors(f'removing preset "{preset_id}"'):
            cursor = self._conn.execute(
                f'DELETE FROM {Table.Presets.value} WHERE id=?', (preset_id,)
            )
        return cursor.rowcount > 0

    def ids(self) -> List[str]:
        with sqlite_errors('listing preset ids'):
            rows = self._conn.execute(
                f'SELECT id FROM {Table.Presets.value} ORDER BY rowid'
            ).fetchall()
        return [row['id'] for row in rows]

    def all(self) -> List[Preset]:
        """Return every preset, most recently modified first.

        Ties keep insertion order.
        """
        with sqlite_errors('listing presets'):
            rows = self._conn.execute(
                f'SELECT * FROM {Table.Presets.value} ORDER BY rowid'
            ).fetchall()
        presets = [_row_to_preset(row) for row in rows]
        return sort_by_modified(presets)

    def count(self) -> int:
        with sqlite_errors('counting presets'):
            return self._conn.execute(f'SELECT COUNT(*) FROM {Table.Presets.value}').fetchone()[0]

    # Records

    def get_record(self, key: str, default: Any = None) -> Any:
        """Return the decoded JSON value stored under ``key``, or ``default``."""
        with sqlite_errors(f'reading record "{key}"'):
            row = self._conn.execute(
                f'SELECT value FROM {Table.Records.value} WHERE key=?', (str(key),)
            ).fetchone()
        if row is None:
            return default
        return _decode_record(key, row['value'])

    def set_record(self, key: str, value: Any) -> None:
        """Store ``value`` as JSON under ``key``."""
        raw = json.dumps(value, ensure_ascii=False)
        with self.transaction(), sqlite_errors(f'writing record "{key}"'):
            self._conn.execute(
                f'INSERT INTO {Table.Records.value} (key, value) VALUES (?, ?) '
                f'ON CONFLICT(key) DO UPDATE SET value=excluded.value',
                (str(key), raw)
            )

    def delete_record(self, key: str) -> bool:
        with self.transaction(), sqlite_errors(f'deleting record "{key}"'):
            cursor = self._conn.execute(
                f'DELETE FROM {Table.Records.value} WHERE key=?', (str(key),)
            )
        return cursor.rowcount > 0


def sort_by_modified(presets: List[Preset]) -> List[Preset]:
    """Sort presets most recently modified first; ties keep their given order."""
    return sorted(presets, key=lambda p: parse_timestamp(p.metadata.modified_at), reverse=True)
