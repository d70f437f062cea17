"""Balance primitives.

Every function here runs on the connection of a transaction that is already
open (see ``Database.transaction``); none of them commit. A raised error makes
the caller's transaction roll back, so a failed debit never leaves the
triggering event half-recorded.
"""

from __future__ import annotations

import logging

import aiosqlite

from .db import fetchone, fits_integer
from .errors import InsufficientFunds, InvalidInput


logger = logging.getLogger(__name__)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise InvalidInput("Invalid amount")


async def balance(conn: aiosqlite.Connection, user_id: int) -> int:
    if not fits_integer(user_id):
        raise InvalidInput("User not found")
    row = await fetchone(conn, "SELECT rating FROM users WHERE user_id = ?", (user_id,))
    if row is None:
        raise InvalidInput("User not found")
    return int(row["rating"])


async def debit(conn: aiosqlite.Connection, user_id: int, amount: int) -> None:
    _check_amount(amount)
    if not fits_integer(amount):
        # No stored balance can cover it.
        await balance(conn, user_id)
        raise InsufficientFunds()
    if not fits_integer(user_id):
        raise InvalidInput("User not found")
    cursor = await conn.execute(
        "UPDATE users SET rating = rating - ? WHERE user_id = ? AND rating >= ?",
        (amount, user_id, amount),
    )
    if cursor.rowcount == 0:
        current = await balance(conn, user_id)
        logger.info("debit of %s refused for user %s (balance %s)", amount, user_id, current)
        raise InsufficientFunds()
    logger.debug("debited %s from user %s", amount, user_id)


async def credit(conn: aiosqlite.Connection, user_id: int, amount: int) -> None:
    _check_amount(amount)
    if not fits_integer(amount):
        raise InvalidInput("Invalid amount")
    if not fits_integer(user_id):
        raise InvalidInput("User not found")
    cursor = await conn.execute(
        "UPDATE users SET rating = rating + ? WHERE user_id = ?",
        (amount, user_id),
    )
    if cursor.rowcount == 0:
        raise InvalidInput("User not found")
    logger.debug("credited %s to user %s", amount, user_id)


async def transfer(
    conn: aiosqlite.Connection, from_id: int, to_id: int, amount: int
) -> None:
    _check_amount(amount)
    if from_id == to_id:
        return
    await debit(conn, from_id, amount)
    await credit(conn, to_id, amount)
