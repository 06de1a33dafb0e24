import logging
import aiosqlite
import os

logger = logging.getLogger("rewards.db")
DB_PATH = os.environ.get("DB_PATH", "/data/rewards.db")

async def get_db() -> aiosqlite.Connection:
    """Dependency: yields an open DB connection."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        yield db

async def init_db():
    """Create all tables if they don't exist, and run any pending migrations."""
    directory = os.path.dirname(DB_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)
    async with aiosqlite.connect(DB_PATH) as db:
        await db.executescript(SCHEMA)
        await migrate(db)
        await db.commit()
    logger.info("Initialized at %s", DB_PATH)


# Columns introduced after the first campaign release: (table, column, DDL)
ADDED_COLUMNS = [
    ("users",    "total_earned",     "INTEGER NOT NULL DEFAULT 0"),
    ("receipts", "source_method",    "TEXT"),
    ("receipts", "transaction_date", "TEXT"),
    ("receipts", "fingerprint",      "TEXT"),
]


async def migrate(db: aiosqlite.Connection):
    """Bring an older database up to the current schema.

    SQLite doesn't support ALTER TABLE ADD COLUMN IF NOT EXISTS, so we check
    PRAGMA table_info first and only ALTER if the column is missing.  The
    fingerprint uniqueness is an index because ALTER cannot add a UNIQUE column.
    """
    for table, column, ddl in ADDED_COLUMNS:
        async with db.execute(f"PRAGMA table_info({table})") as cur:
            cols = {row[1] async for row in cur}
        if column not in cols:
            await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
            logger.info("Migration: added %s.%s", table, column)
    await db.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_receipts_fingerprint ON receipts(fingerprint)"
    )


SCHEMA = """
-- Campaign participants.  Authentication lives elsewhere; email is the identity.
CREATE TABLE IF NOT EXISTS users (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    name          TEXT NOT NULL,
    email         TEXT NOT NULL UNIQUE,
    points        INTEGER NOT NULL DEFAULT 0,   -- spendable balance
    total_earned  INTEGER NOT NULL DEFAULT 0,   -- lifetime points, never decremented
    created_at    TEXT DEFAULT (datetime('now'))
);

-- Accepted receipts.  Rejected submissions are never stored.
CREATE TABLE IF NOT EXISTS receipts (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id           INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    file_name         TEXT,
    store_name        TEXT,
    total_amount      TEXT,                  -- as printed, e.g. "299,99"
    transaction_date  TEXT,                  -- as printed
    accepted_text     TEXT NOT NULL,         -- normalized text the award was based on
    source_method     TEXT,                  -- ocr | ocr-vision | pdf-primary | pdf-fallback | text-upload
    detected_items    TEXT NOT NULL DEFAULT '[]',   -- JSON list of display names
    points_earned     INTEGER NOT NULL DEFAULT 0,
    fingerprint       TEXT,
    status            TEXT NOT NULL DEFAULT 'approved',
    uploaded_at       TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_receipts_user ON receipts(user_id, uploaded_at);

-- Campaign audit trail (receipt uploads, registrations)
CREATE TABLE IF NOT EXISTS campaign_events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     INTEGER REFERENCES users(id) ON DELETE SET NULL,
    event_type  TEXT NOT NULL,               -- USER_REGISTERED | RECEIPT_UPLOADED
    event_data  TEXT NOT NULL DEFAULT '{}',  -- JSON
    created_at  TEXT DEFAULT (datetime('now'))
);
"""
