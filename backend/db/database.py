import logging
import aiosqlite
import os

logger = logging.getLogger("apportion.db")
DB_PATH = os.environ.get("DB_PATH", "/data/apportion.db")

async def get_db() -> aiosqlite.Connection:
    """Dependency: yields an open DB connection."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        yield db

async def init_db():
    """Create all tables if they don't exist."""
    db_dir = os.path.dirname(DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    async with aiosqlite.connect(DB_PATH) as db:
        await db.executescript(SCHEMA)
        await db.commit()
    logger.info("Initialized at %s", DB_PATH)


SCHEMA = """
-- ── Tax oracle answers, keyed by a fingerprint of what was asked ─────────
CREATE TABLE IF NOT EXISTS oracle_cache (
    cache_key   TEXT PRIMARY KEY,              -- sha256 of items + rates + store context
    response    TEXT NOT NULL,                 -- OracleResult as JSON
    model       TEXT NOT NULL DEFAULT '',
    hits        INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT DEFAULT (datetime('now'))
);
"""
