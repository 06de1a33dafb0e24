"""
Shared fixtures for backend tests.

Every test gets a fresh in-memory SQLite database built from the production
schema in db/database.py.  There is no seed data, so tests start from a clean
slate unless a fixture adds rows.
"""
import pytest
import aiosqlite

from db.database import SCHEMA, migrate
from samples import insert_user


@pytest.fixture
async def db():
    """Yield a fresh in-memory SQLite connection with the full schema."""
    async with aiosqlite.connect(":memory:") as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.executescript(SCHEMA)
        await migrate(conn)
        await conn.commit()
        yield conn


@pytest.fixture
async def user_id(db):
    return await insert_user(db)
