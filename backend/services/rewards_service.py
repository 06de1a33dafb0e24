"""
Rewards Service: persistence side of an accepted receipt.

record_accepted_receipt() is the only place points are ever awarded.  It
runs one BEGIN IMMEDIATE transaction that takes SQLite's write lock before
the duplicate lookup, so two concurrent submissions of the same receipt
cannot both pass the check:

    1. look up the fingerprint across all users
    2. insert the receipt
    3. add the points to the user's balance and lifetime total
    4. record a RECEIPT_UPLOADED campaign event
    COMMIT  (ROLLBACK on any error, so no partial award)
"""
import json
import logging
import sqlite3
from typing import Optional

import aiosqlite

from services.errors import DuplicateDetected
from services.receipt_pipeline import AcceptedReceipt

logger = logging.getLogger("rewards.service")

RECENT_ACTIVITY_LIMIT = 10

EVENT_USER_REGISTERED = "USER_REGISTERED"
EVENT_RECEIPT_UPLOADED = "RECEIPT_UPLOADED"


class UserAlreadyExists(Exception):
    pass


# ── Users ─────────────────────────────────────────────────────────────────────

async def get_user_by_email(db: aiosqlite.Connection, email: str) -> Optional[dict]:
    async with db.execute(
        "SELECT id, name, email, points, total_earned, created_at FROM users WHERE email = ?",
        (email.strip().lower(),),
    ) as cur:
        row = await cur.fetchone()
    return dict(row) if row else None


async def create_user(db: aiosqlite.Connection, name: str, email: str) -> dict:
    email = email.strip().lower()
    try:
        cursor = await db.execute(
            "INSERT INTO users (name, email) VALUES (?, ?)",
            (name.strip(), email),
        )
    except sqlite3.IntegrityError as e:
        raise UserAlreadyExists(email) from e
    user_id = cursor.lastrowid
    await db.execute(
        "INSERT INTO campaign_events (user_id, event_type, event_data) VALUES (?, ?, ?)",
        (user_id, EVENT_USER_REGISTERED, json.dumps({"email": email})),
    )
    await db.commit()
    logger.info("Registered user id=%d (%s)", user_id, email)
    return await get_user_by_email(db, email)


# ── Receipts ──────────────────────────────────────────────────────────────────

async def _find_by_fingerprint(db: aiosqlite.Connection, fingerprint: str) -> Optional[int]:
    """Owner user_id of an accepted receipt with this fingerprint, if any."""
    async with db.execute(
        "SELECT user_id FROM receipts WHERE fingerprint = ? LIMIT 1", (fingerprint,)
    ) as cur:
        row = await cur.fetchone()
    return row["user_id"] if row else None


async def record_accepted_receipt(
    db: aiosqlite.Connection,
    user_id: int,
    accepted: AcceptedReceipt,
    file_name: Optional[str] = None,
) -> dict:
    """
    Atomically persist an accepted receipt and award its points.

    Returns {"receipt_id", "new_balance", "total_earned"}.
    Raises DuplicateDetected if any user already submitted the same receipt.
    """
    await db.execute("BEGIN IMMEDIATE")
    try:
        owner = await _find_by_fingerprint(db, accepted.fingerprint)
        if owner is not None:
            raise DuplicateDetected(same_user=(owner == user_id))

        try:
            cursor = await db.execute(
                """INSERT INTO receipts
                   (user_id, file_name, store_name, total_amount, transaction_date,
                    accepted_text, source_method, detected_items, points_earned,
                    fingerprint, status)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'approved')""",
                (user_id, file_name, accepted.store_name, accepted.total_amount,
                 accepted.transaction_date, accepted.accepted_text,
                 accepted.source_method.value, json.dumps(list(accepted.detected_product_names)),
                 accepted.points_earned, accepted.fingerprint),
            )
        except sqlite3.IntegrityError as e:
            if "fingerprint" not in str(e):
                raise
            # UNIQUE(fingerprint) caught a race the lookup could not see
            logger.warning("Fingerprint constraint hit for user %d: %s", user_id, e)
            raise DuplicateDetected(same_user=False) from e
        receipt_id = cursor.lastrowid

        await db.execute(
            "UPDATE users SET points = points + ?, total_earned = total_earned + ? WHERE id = ?",
            (accepted.points_earned, accepted.points_earned, user_id),
        )
        await db.execute(
            "INSERT INTO campaign_events (user_id, event_type, event_data) VALUES (?, ?, ?)",
            (user_id, EVENT_RECEIPT_UPLOADED, json.dumps({
                "receipt_id": receipt_id,
                "points_earned": accepted.points_earned,
                "store_name": accepted.store_name,
                "products": list(accepted.detected_product_names),
                "source_method": accepted.source_method.value,
            })),
        )

        async with db.execute(
            "SELECT points, total_earned FROM users WHERE id = ?", (user_id,)
        ) as cur:
            balance = await cur.fetchone()
        if balance is None:
            raise LookupError(f"User {user_id} does not exist")

        await db.commit()
    except BaseException:
        await db.rollback()
        raise

    logger.info(
        "Receipt %d accepted for user %d: +%d pts (balance %d)",
        receipt_id, user_id, accepted.points_earned, balance["points"],
    )
    return {
        "receipt_id": receipt_id,
        "new_balance": balance["points"],
        "total_earned": balance["total_earned"],
    }


def _row_to_receipt(row) -> dict:
    data = dict(row)
    try:
        data["detected_items"] = json.loads(data.get("detected_items") or "[]")
    except json.JSONDecodeError:
        logger.warning("Unreadable detected_items on receipt id=%s", data.get("id"))
        data["detected_items"] = []
    return data


async def list_receipts(
    db: aiosqlite.Connection, user_id: int, limit: int = 50, offset: int = 0
) -> list[dict]:
    """The user's accepted receipts, most recent first."""
    async with db.execute(
        """SELECT id, file_name, store_name, total_amount, transaction_date,
                  source_method, detected_items, points_earned, status, uploaded_at
           FROM receipts
           WHERE user_id = ?
           ORDER BY uploaded_at DESC, id DESC
           LIMIT ? OFFSET ?""",
        (user_id, limit, offset),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_receipt(r) for r in rows]


async def recent_activity(db: aiosqlite.Connection, user_id: int) -> list[dict]:
    return await list_receipts(db, user_id, limit=RECENT_ACTIVITY_LIMIT)
