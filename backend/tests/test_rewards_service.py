"""
Tests for services/rewards_service.py: user registration and the atomic
award transaction (duplicate check, insert, balance, campaign event).
"""
import asyncio
import dataclasses
import json
import sqlite3
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest

from db.database import SCHEMA, migrate
from samples import BUNDLE_RECEIPT, VALID_RECEIPT, VALID_RECEIPT_RESCAN, insert_user
from services import rewards_service
from services.errors import DuplicateDetected
from services.receipt_pipeline import evaluate_submission
from services.rewards_service import (
    UserAlreadyExists,
    create_user,
    get_user_by_email,
    list_receipts,
    recent_activity,
    record_accepted_receipt,
)
from services.text_extraction import ExtractedText, ExtractionConfidence, SourceMethod


def accept(text):
    return evaluate_submission(
        ExtractedText(text=text, method=SourceMethod.TEXT_UPLOAD, confidence=ExtractionConfidence.HIGH)
    )


async def fetch_user(db, user_id):
    async with db.execute("SELECT points, total_earned FROM users WHERE id = ?", (user_id,)) as cur:
        return dict(await cur.fetchone())


async def count(db, table):
    async with db.execute(f"SELECT COUNT(*) FROM {table}") as cur:
        return (await cur.fetchone())[0]


# ── Users ─────────────────────────────────────────────────────────────────────

class TestUsers:

    @pytest.mark.asyncio
    async def test_create_user(self, db):
        user = await create_user(db, "  Sipho ", "Sipho@Example.com ")
        assert user["name"] == "Sipho"
        assert user["email"] == "sipho@example.com"
        assert user["points"] == 0
        assert user["total_earned"] == 0

    @pytest.mark.asyncio
    async def test_registration_event(self, db):
        user = await create_user(db, "Sipho", "sipho@example.com")
        async with db.execute("SELECT user_id, event_type FROM campaign_events") as cur:
            rows = [tuple(r) for r in await cur.fetchall()]
        assert rows == [(user["id"], "USER_REGISTERED")]

    @pytest.mark.asyncio
    async def test_duplicate_email(self, db):
        await create_user(db, "Sipho", "sipho@example.com")
        with pytest.raises(UserAlreadyExists):
            await create_user(db, "Other Sipho", "SIPHO@example.com")

    @pytest.mark.asyncio
    async def test_lookup_is_case_insensitive(self, db, user_id):
        user = await get_user_by_email(db, " Thandi@Example.COM")
        assert user["id"] == user_id

    @pytest.mark.asyncio
    async def test_unknown_user(self, db):
        assert await get_user_by_email(db, "nobody@example.com") is None


# ── Award transaction ─────────────────────────────────────────────────────────

class TestRecordAcceptedReceipt:

    @pytest.mark.asyncio
    async def test_awards_points(self, db, user_id):
        result = await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT), "slip.jpg")

        assert result["new_balance"] == 100
        assert result["total_earned"] == 100
        assert await fetch_user(db, user_id) == {"points": 100, "total_earned": 100}

    @pytest.mark.asyncio
    async def test_stores_receipt(self, db, user_id):
        accepted = accept(VALID_RECEIPT)
        result = await record_accepted_receipt(db, user_id, accepted, "slip.jpg")

        async with db.execute("SELECT * FROM receipts WHERE id = ?", (result["receipt_id"],)) as cur:
            row = dict(await cur.fetchone())
        assert row["user_id"] == user_id
        assert row["file_name"] == "slip.jpg"
        assert row["store_name"] == "Checkers"
        assert row["total_amount"] == "299.99"
        assert row["source_method"] == "text-upload"
        assert row["fingerprint"] == accepted.fingerprint
        assert row["accepted_text"] == accepted.accepted_text
        assert json.loads(row["detected_items"]) == ["Bloedlemoen Gin 750ml"]
        assert row["status"] == "approved"

    @pytest.mark.asyncio
    async def test_records_campaign_event(self, db, user_id):
        result = await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT))

        async with db.execute(
            "SELECT event_data FROM campaign_events WHERE event_type = 'RECEIPT_UPLOADED'"
        ) as cur:
            rows = await cur.fetchall()
        assert len(rows) == 1
        data = json.loads(rows[0]["event_data"])
        assert data["receipt_id"] == result["receipt_id"]
        assert data["points_earned"] == 100

    @pytest.mark.asyncio
    async def test_balances_accumulate(self, db, user_id):
        await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT))
        result = await record_accepted_receipt(db, user_id, accept(BUNDLE_RECEIPT))
        assert result["new_balance"] == 250
        assert result["total_earned"] == 250

    @pytest.mark.asyncio
    async def test_spent_points_do_not_reduce_total_earned(self, db):
        uid = await insert_user(db, points=20, total_earned=500)
        result = await record_accepted_receipt(db, uid, accept(VALID_RECEIPT))
        assert result == {"receipt_id": result["receipt_id"], "new_balance": 120, "total_earned": 600}


# ── Duplicates ────────────────────────────────────────────────────────────────

class TestDuplicates:

    @pytest.mark.asyncio
    async def test_same_user_resubmits(self, db, user_id):
        await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT))
        with pytest.raises(DuplicateDetected) as exc:
            await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT_RESCAN))

        assert exc.value.same_user is True
        assert exc.value.status_code == 409
        assert await fetch_user(db, user_id) == {"points": 100, "total_earned": 100}
        assert await count(db, "receipts") == 1

    @pytest.mark.asyncio
    async def test_other_user_claims_same_receipt(self, db, user_id):
        other = await insert_user(db, name="Pieter", email="pieter@example.com")
        await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT))

        with pytest.raises(DuplicateDetected) as exc:
            await record_accepted_receipt(db, other, accept(VALID_RECEIPT))

        assert exc.value.same_user is False
        assert await fetch_user(db, other) == {"points": 0, "total_earned": 0}

    @pytest.mark.asyncio
    async def test_duplicate_writes_no_event(self, db, user_id):
        await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT))
        with pytest.raises(DuplicateDetected):
            await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT))
        assert await count(db, "campaign_events") == 1

    @pytest.mark.asyncio
    async def test_unique_index_catches_missed_lookup(self, db, user_id):
        """Two submissions racing past the lookup are stopped by the index."""
        await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT))

        with patch.object(rewards_service, "_find_by_fingerprint", AsyncMock(return_value=None)):
            with pytest.raises(DuplicateDetected) as exc:
                await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT))

        assert exc.value.same_user is False
        assert await fetch_user(db, user_id) == {"points": 100, "total_earned": 100}

    @pytest.mark.asyncio
    async def test_connection_usable_after_duplicate(self, db, user_id):
        await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT))
        with pytest.raises(DuplicateDetected):
            await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT))

        result = await record_accepted_receipt(db, user_id, accept(BUNDLE_RECEIPT))
        assert result["new_balance"] == 250


# ── Concurrent connections ────────────────────────────────────────────────────

async def open_file_db(path):
    conn = await aiosqlite.connect(path)
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA foreign_keys = ON")
    return conn


class TestConcurrentConnections:

    @pytest.mark.asyncio
    async def test_same_receipt_from_two_connections_awards_once(self, tmp_path):
        path = tmp_path / "rewards.db"
        first = await open_file_db(path)
        second = await open_file_db(path)
        try:
            await first.executescript(SCHEMA)
            await migrate(first)
            await first.commit()
            uid = await insert_user(first)
            accepted = accept(VALID_RECEIPT)

            results = await asyncio.gather(
                record_accepted_receipt(first, uid, accepted),
                record_accepted_receipt(second, uid, accepted),
                return_exceptions=True,
            )

            awarded = [r for r in results if isinstance(r, dict)]
            refused = [r for r in results if isinstance(r, DuplicateDetected)]
            assert len(awarded) == 1
            assert len(refused) == 1
            assert awarded[0]["new_balance"] == 100
            assert await fetch_user(second, uid) == {"points": 100, "total_earned": 100}
            assert await count(second, "receipts") == 1
            assert await count(second, "campaign_events") == 1
        finally:
            await first.close()
            await second.close()


# ── Rollback ──────────────────────────────────────────────────────────────────

class TestRollback:

    @pytest.mark.asyncio
    async def test_unknown_user_leaves_nothing_behind(self, db):
        with pytest.raises(sqlite3.IntegrityError):
            await record_accepted_receipt(db, 9999, accept(VALID_RECEIPT))

        assert await count(db, "receipts") == 0
        assert await count(db, "campaign_events") == 0

    @pytest.mark.asyncio
    async def test_failure_after_insert_rolls_back(self, db, user_id):
        # Without the foreign key the insert succeeds and the balance lookup fails
        await db.execute("PRAGMA foreign_keys = OFF")
        accepted = accept(VALID_RECEIPT)

        with pytest.raises(LookupError):
            await record_accepted_receipt(db, 9999, accepted)

        assert await count(db, "receipts") == 0
        assert await count(db, "campaign_events") == 0

        # the same receipt can still be accepted afterwards
        result = await record_accepted_receipt(db, user_id, accepted)
        assert result["new_balance"] == 100


# ── Listing ───────────────────────────────────────────────────────────────────

class TestListing:

    @pytest.mark.asyncio
    async def test_newest_first(self, db, user_id):
        first = await record_accepted_receipt(db, user_id, accept(VALID_RECEIPT))
        second = await record_accepted_receipt(db, user_id, accept(BUNDLE_RECEIPT))

        receipts = await list_receipts(db, user_id)
        assert [r["id"] for r in receipts] == [second["receipt_id"], first["receipt_id"]]
        assert receipts[1]["detected_items"] == ["Bloedlemoen Gin 750ml"]

    @pytest.mark.asyncio
    async def test_only_own_receipts(self, db, user_id):
        other = await insert_user(db, name="Pieter", email="pieter@example.com")
        await record_accepted_receipt(db, other, accept(VALID_RECEIPT))
        assert await list_receipts(db, user_id) == []

    @pytest.mark.asyncio
    async def test_recent_activity_is_capped(self, db, user_id):
        accepted = accept(VALID_RECEIPT)
        for i in range(12):
            await record_accepted_receipt(db, user_id, dataclasses.replace(accepted, fingerprint=f"fp-{i}"))

        activity = await recent_activity(db, user_id)
        assert len(activity) == rewards_service.RECENT_ACTIVITY_LIMIT
        assert len(await list_receipts(db, user_id, limit=50)) == 12
