"""
Shared fixtures for backend tests.

Every test gets a fresh in-memory SQLite database with the oracle cache
table.  Builders for line items and tax summaries live in helpers.py.
"""
import pytest
import aiosqlite

# ── Schema (mirrors db/database.py) ──────────────────────────────────────────

SCHEMA = """
CREATE TABLE oracle_cache (
    cache_key   TEXT PRIMARY KEY,
    response    TEXT NOT NULL,
    model       TEXT NOT NULL DEFAULT '',
    hits        INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT DEFAULT (datetime('now'))
);
"""


@pytest.fixture
async def db():
    """Yield a fresh in-memory SQLite connection with the full schema."""
    async with aiosqlite.connect(":memory:") as conn:
        conn.row_factory = aiosqlite.Row
        await conn.executescript(SCHEMA)
        yield conn
