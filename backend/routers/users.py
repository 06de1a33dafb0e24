"""
Users Router

POST /api/users      — register a campaign participant
GET  /api/users/me   — balance, lifetime points and recent receipts

Sign-in is handled by the surrounding application; requests identify the
participant with the X-User-Email header.
"""
import logging
from typing import Optional

import aiosqlite
from fastapi import APIRouter, Depends, Header, HTTPException

from db.database import get_db
from models.schemas import ReceiptSummary, User, UserCreate, UserProfile
from services.rewards_service import (
    UserAlreadyExists,
    create_user,
    get_user_by_email,
    recent_activity,
)

logger = logging.getLogger("rewards.users")
router = APIRouter()


async def get_current_user(
    x_user_email: Optional[str] = Header(None),
    db: aiosqlite.Connection = Depends(get_db),
) -> dict:
    """Dependency: the registered user named by X-User-Email."""
    if not x_user_email or not x_user_email.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Email header")
    user = await get_user_by_email(db, x_user_email)
    if not user:
        raise HTTPException(status_code=404, detail="User not registered")
    return user


@router.post("", response_model=User, status_code=201)
async def register_user(
    body: UserCreate,
    db: aiosqlite.Connection = Depends(get_db),
):
    if "@" not in body.email:
        raise HTTPException(status_code=422, detail="Invalid email address")
    try:
        user = await create_user(db, body.name, body.email)
    except UserAlreadyExists:
        raise HTTPException(status_code=409, detail="A user with this email already exists")
    return User(**user)


@router.get("/me", response_model=UserProfile)
async def get_me(
    user: dict = Depends(get_current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    activity = await recent_activity(db, user["id"])
    return UserProfile(
        **user,
        recent_activity=[ReceiptSummary(**r) for r in activity],
    )
