"""
Database connections and ledger initialization.
"""

from pathlib import Path

import aiosqlite

from marker_editor.errors import StorageError
from marker_editor.logging import get_logger

logger = get_logger('database')

BACKUP_SCHEMA_VERSION = 2

# Columns added after the first ledger version, with their definitions.
_LEDGER_MIGRATION_COLUMNS = {
    "section_id": "INTEGER NOT NULL DEFAULT -1",
    "marker_type": "TEXT NOT NULL DEFAULT 'intro'",
    "final": "INTEGER NOT NULL DEFAULT 0",
    "user_created": "INTEGER NOT NULL DEFAULT 0",
    "episode_guid": "TEXT",
}


async def _table_columns(db: aiosqlite.Connection, table_name: str) -> set[str]:
    cursor = await db.execute(f"PRAGMA table_info({table_name})")
    rows = await cursor.fetchall()
    return {row[1] for row in rows}


async def connect(db_path: str) -> aiosqlite.Connection:
    """
    Open a connection with dict-friendly rows.

    :param db_path: Path to the SQLite database
    :type db_path: str
    :return: Open connection. The caller closes it.
    :rtype: aiosqlite.Connection
    """
    db = await aiosqlite.connect(db_path)
    db.row_factory = aiosqlite.Row
    return db


async def _migrate_ledger_columns(db: aiosqlite.Connection) -> None:
    columns = await _table_columns(db, "actions")
    missing = [name for name in _LEDGER_MIGRATION_COLUMNS if name not in columns]
    if not missing:
        return

    logger.info(f"Applying migration: add actions columns {', '.join(missing)}")
    try:
        await db.execute("SAVEPOINT ledger_columns_migration")
        for name in missing:
            await db.execute(
                f"ALTER TABLE actions ADD COLUMN {name} {_LEDGER_MIGRATION_COLUMNS[name]}"
            )
        await db.execute("RELEASE SAVEPOINT ledger_columns_migration")
    except Exception:
        await db.execute("ROLLBACK TO SAVEPOINT ledger_columns_migration")
        await db.execute("RELEASE SAVEPOINT ledger_columns_migration")
        raise


async def _record_schema_version(db: aiosqlite.Connection) -> None:
    cursor = await db.execute("SELECT version FROM schema_version")
    row = await cursor.fetchone()
    if row is None:
        await db.execute("INSERT INTO schema_version (version) VALUES (?)", (BACKUP_SCHEMA_VERSION,))
    elif row[0] != BACKUP_SCHEMA_VERSION:
        logger.info(f"Upgrading ledger schema version {row[0]} -> {BACKUP_SCHEMA_VERSION}")
        await db.execute("UPDATE schema_version SET version = ?", (BACKUP_SCHEMA_VERSION,))


async def init_backup_db(db_path: str) -> None:
    """
    Create the backup ledger if needed and bring older ledgers up to date.

    :param db_path: Path to the ledger database
    :type db_path: str
    :raises StorageError: If the ledger can't be created or migrated
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(path) as db:
            # Older ledgers lack the newer columns, which the indexes in the
            # schema script don't reference, so the script is safe to run first.
            schema_path = Path(__file__).parent / "backup_schema.sql"
            with open(schema_path) as f:
                await db.executescript(f.read())
            await db.commit()
            await _migrate_ledger_columns(db)
            await _record_schema_version(db)
            await db.commit()
    except aiosqlite.Error as e:
        raise StorageError.from_db_error(e, f"Unable to initialize backup database at {path}") from e

    logger.info(f"Backup database initialized at {path}")
