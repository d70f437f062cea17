from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from . import economy
from .config import DEFAULTS
from .db import Database, fetchone, format_ts, parse_ts, utcnow
from .errors import (
    AlreadyOwned,
    AlreadyUsed,
    CooldownActive,
    Forbidden,
    InsufficientFunds,
    InvalidInput,
    PromoExhausted,
)
from .game import GameData, Roll, catalog_entry, dice_reward, roll_die


logger = logging.getLogger(__name__)

SOCIAL_PENDING_REVIEW = 2


class ProfileField(str, Enum):
    NAME = "name"
    FACULTY = "faculty"
    INSTA = "insta"
    TIKTOK = "tiktok"
    PHONE = "phone"


class SocialPlatform(str, Enum):
    INSTA = "insta"
    TIKTOK = "tiktok"


PROFILE_UPDATES = {
    ProfileField.NAME: "UPDATE users SET name = ?, edit_name = ? WHERE user_id = ?",
    ProfileField.FACULTY: "UPDATE users SET faculty = ?, edit_faculty = ? WHERE user_id = ?",
    ProfileField.INSTA: "UPDATE users SET insta = ?, edit_insta = ? WHERE user_id = ?",
    ProfileField.TIKTOK: "UPDATE users SET tiktok = ?, edit_tiktok = ? WHERE user_id = ?",
    ProfileField.PHONE: "UPDATE users SET phone = ?, edit_phone = ? WHERE user_id = ?",
}

SOCIAL_UPDATES = {
    SocialPlatform.INSTA: "UPDATE users SET insta = ?, insta_verified = ? WHERE user_id = ?",
    SocialPlatform.TIKTOK: "UPDATE users SET tiktok = ?, tiktok_verified = ? WHERE user_id = ?",
}


def parse_profile_field(value: str) -> ProfileField:
    try:
        return ProfileField(value)
    except ValueError:
        raise InvalidInput("Invalid field") from None


def parse_platform(value: str) -> SocialPlatform:
    try:
        return SocialPlatform(value)
    except ValueError:
        raise InvalidInput("Invalid platform") from None


async def build_farm(db: Database, data: GameData, user_id: int) -> Dict[str, Any]:
    animals = []
    for row in await db.get_farm_animals(user_id):
        animal = data.get_animal(row["animal_key"])
        entry = catalog_entry(animal) if animal else {"key": row["animal_key"]}
        entry["count"] = int(row["count"])
        animals.append(entry)
    protection = []
    for key in await db.get_protection_keys(user_id):
        item = data.get_protection(key)
        protection.append(catalog_entry(item) if item else {"key": key})
    return {"animals": animals, "protection": protection}


async def buy_animal(db: Database, data: GameData, user_id: int, animal_key: str) -> None:
    animal = data.get_animal(animal_key)
    if not animal:
        raise InvalidInput("Invalid animal")
    async with db.transaction() as conn:
        await economy.debit(conn, user_id, animal.price)
        await conn.execute(
            "INSERT INTO user_farm (user_id, animal_key) VALUES (?, ?)",
            (user_id, animal.key),
        )
    logger.info("user %s bought animal %s for %s", user_id, animal.key, animal.price)


async def buy_protection(db: Database, data: GameData, user_id: int, item_key: str) -> None:
    item = data.get_protection(item_key)
    if not item:
        raise InvalidInput("Invalid item")
    async with db.transaction() as conn:
        if await economy.balance(conn, user_id) < item.price:
            raise InsufficientFunds()
        owned = await fetchone(
            conn,
            "SELECT 1 FROM user_protection WHERE user_id = ? AND item_key = ?",
            (user_id, item.key),
        )
        if owned:
            raise AlreadyOwned()
        await economy.debit(conn, user_id, item.price)
        await conn.execute(
            "INSERT INTO user_protection (user_id, item_key) VALUES (?, ?)",
            (user_id, item.key),
        )
    logger.info("user %s bought protection %s for %s", user_id, item.key, item.price)


async def list_tasks(db: Database, user_id: int) -> List[Dict[str, Any]]:
    return await db.get_tasks_for_user(user_id)


async def start_task(db: Database, user_id: int, task_id: int) -> None:
    if not await db.get_task(task_id):
        raise InvalidInput("Invalid task")
    await db.mark_task_pending(user_id, task_id)


async def join_giveaway(db: Database, user_id: int, giveaway_id: int) -> bool:
    giveaway = await db.get_giveaway(giveaway_id)
    if not giveaway or giveaway.get("status") != "active":
        raise InvalidInput("Invalid giveaway")
    joined = await db.add_giveaway_participant(giveaway_id, user_id)
    if joined:
        logger.info("user %s joined giveaway %s", user_id, giveaway_id)
    return joined


async def activate_promo(db: Database, user_id: int, code: str) -> int:
    canonical = (code or "").strip().upper()
    if not canonical:
        raise InvalidInput("Invalid code")
    async with db.transaction() as conn:
        promo = await fetchone(
            conn, "SELECT * FROM promo_codes WHERE code = ?", (canonical,)
        )
        if not promo:
            raise InvalidInput("Invalid code")
        if promo["current_uses"] >= promo["max_uses"]:
            raise PromoExhausted()
        used = await fetchone(
            conn,
            "SELECT 1 FROM promo_history WHERE user_id = ? AND code = ?",
            (user_id, canonical),
        )
        if used:
            raise AlreadyUsed()
        reward = int(promo["reward"])
        await economy.credit(conn, user_id, reward)
        cursor = await conn.execute(
            """
            UPDATE promo_codes SET current_uses = current_uses + 1
            WHERE code = ? AND current_uses < max_uses
            """,
            (canonical,),
        )
        if cursor.rowcount != 1:
            raise PromoExhausted()
        await conn.execute(
            "INSERT INTO promo_history (user_id, code) VALUES (?, ?)",
            (user_id, canonical),
        )
    logger.info("user %s redeemed promo %s for %s", user_id, canonical, reward)
    return reward


async def verify_social(db: Database, user_id: int, platform: str, nick: str) -> None:
    statement = SOCIAL_UPDATES[parse_platform(platform)]
    nick = (nick or "").strip()
    if not nick:
        raise InvalidInput("Invalid nickname")
    async with db.transaction() as conn:
        await conn.execute(statement, (nick, SOCIAL_PENDING_REVIEW, user_id))
    logger.info("user %s submitted %s for review", user_id, platform)


async def verify_phone(db: Database, user_id: int) -> int:
    """Mark the phone verified; the reward is paid on the first call only."""
    async with db.transaction() as conn:
        row = await fetchone(
            conn, "SELECT phone_verified FROM users WHERE user_id = ?", (user_id,)
        )
        if row is None:
            raise InvalidInput("User not found")
        if row["phone_verified"] == 1:
            return 0
        await conn.execute(
            "UPDATE users SET phone_verified = 1 WHERE user_id = ?",
            (user_id,),
        )
        await economy.credit(conn, user_id, DEFAULTS.phone_reward)
    logger.info("user %s verified phone", user_id)
    return DEFAULTS.phone_reward


async def update_profile(
    db: Database,
    user_id: int,
    field: str,
    value: Optional[str],
    now: Optional[datetime] = None,
) -> None:
    statement = PROFILE_UPDATES[parse_profile_field(field)]
    edited_at = format_ts(now or utcnow())
    async with db.transaction() as conn:
        await conn.execute(statement, (value, edited_at, user_id))


def roll_ready(last_roll: Optional[str], now: datetime) -> bool:
    last = parse_ts(last_roll)
    if last is None:
        return True
    return now - last >= timedelta(hours=DEFAULTS.dice_cooldown_hours)


async def roll_dice(
    db: Database,
    user_id: int,
    roll: Optional[Roll] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    roll = roll or roll_die
    now = now or utcnow()
    async with db.transaction() as conn:
        row = await fetchone(
            conn, "SELECT last_roll FROM dice_rolls WHERE user_id = ?", (user_id,)
        )
        if not roll_ready(row["last_roll"] if row else None, now):
            raise CooldownActive()
        value = roll()
        points = dice_reward(value)
        await economy.credit(conn, user_id, points)
        await conn.execute(
            """
            INSERT INTO dice_rolls (user_id, last_roll) VALUES (?, ?)
            ON CONFLICT(user_id) DO UPDATE SET last_roll = excluded.last_roll
            """,
            (user_id, format_ts(now)),
        )
    logger.info("user %s rolled %s for %s points", user_id, value, points)
    return {"value": value, "points": points}


async def build_user_view(
    db: Database, user: Dict[str, Any], admin_ids: frozenset[int] = frozenset()
) -> Dict[str, Any]:
    user_id = int(user["user_id"])
    return {
        "id": user_id,
        "short_id": user["short_id"],
        "name": user["name"],
        "username": user["username"],
        "rating": user["rating"],
        "insta_verified": user["insta_verified"],
        "tiktok_verified": user["tiktok_verified"],
        "phone_verified": user["phone_verified"],
        "pvp_notifications": user["pvp_notifications"],
        "pvp_wins": await db.get_pvp_wins(user_id),
        "is_admin": await is_admin(db, user_id, admin_ids),
    }


async def is_admin(db: Database, user_id: int, admin_ids: frozenset[int] = frozenset()) -> bool:
    return user_id in admin_ids or await db.is_admin(user_id)


async def export_users(
    db: Database, user_id: int, admin_ids: frozenset[int] = frozenset()
) -> int:
    if not await is_admin(db, user_id, admin_ids):
        raise Forbidden()
    rows = await db.get_users_for_export()
    logger.info("admin %s exported %s users", user_id, len(rows))
    return len(rows)
