"""
Tests for the application shell: database initialisation, health and
diagnose endpoints.
"""
import pytest
import aiosqlite
from httpx import ASGITransport, AsyncClient

from db import database


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "nested" / "apportion.db"
    monkeypatch.setattr(database, "DB_PATH", str(path))
    return path


@pytest.mark.asyncio
async def test_init_db_creates_dir_and_table(db_path):
    await database.init_db()

    assert db_path.exists()
    async with aiosqlite.connect(db_path) as db:
        async with db.execute("PRAGMA table_info(oracle_cache)") as cur:
            cols = {row[1] async for row in cur}
    assert {"cache_key", "response", "model", "hits", "created_at"} <= cols


@pytest.mark.asyncio
async def test_init_db_is_idempotent(db_path):
    await database.init_db()
    async with aiosqlite.connect(db_path) as db:
        await db.execute("INSERT INTO oracle_cache (cache_key, response) VALUES ('k', '{}')")
        await db.commit()

    await database.init_db()

    async with aiosqlite.connect(db_path) as db:
        async with db.execute("SELECT COUNT(*) FROM oracle_cache") as cur:
            (count,) = await cur.fetchone()
    assert count == 1


@pytest.mark.asyncio
async def test_health_and_diagnose(db_path, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test-key-material")
    db_path.parent.mkdir(parents=True)

    import main
    monkeypatch.setattr(main, "DB_PATH", str(db_path))

    async with AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test") as c:
        health = await c.get("/api/health")
        diag = await c.get("/api/diagnose")

    assert health.json() == {"status": "ok", "version": "0.1.0"}
    data = diag.json()
    assert data["all_ok"] is True
    assert data["checks"]["anthropic_key"] == {"ok": True, "set": True}
    assert "sk-test" not in diag.text
