"""PvP dice duels.

An offer goes ``pending`` -> ``finished`` and never leaves ``finished``. The
challenger's stake is debited when the offer is created and sits in escrow
until settlement. The acceptor's stake is not escrowed: it is only collected
if the acceptor loses.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import economy
from .config import DEFAULTS
from .db import Database, fetchone, fits_integer, format_ts, utcnow
from .errors import InsufficientFunds, InvalidBet, OfferUnavailable, SelfAcceptance
from .game import Roll, roll_die


logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_FINISHED = "finished"

CHALLENGER_WINS = "challenger"
OPPONENT_WINS = "opponent"
TIE = "tie"


@dataclass(frozen=True)
class DuelResult:
    battle_id: int
    challenger_id: int
    opponent_id: int
    bet: int
    challenger_roll: int
    opponent_roll: int
    outcome: str
    message: str

    @property
    def winner_id(self) -> Optional[int]:
        if self.outcome == CHALLENGER_WINS:
            return self.challenger_id
        if self.outcome == OPPONENT_WINS:
            return self.opponent_id
        return None

    def as_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "winner": self.winner_id == self.opponent_id,
            "message": self.message,
            "challenger_roll": self.challenger_roll,
            "opponent_roll": self.opponent_roll,
        }


def compare_rolls(challenger_roll: int, opponent_roll: int) -> str:
    if challenger_roll > opponent_roll:
        return CHALLENGER_WINS
    if opponent_roll > challenger_roll:
        return OPPONENT_WINS
    return TIE


def outcome_message(outcome: str, bet: int) -> str:
    if outcome == CHALLENGER_WINS:
        return f"Победил создатель вызова! +{bet} PTS"
    if outcome == OPPONENT_WINS:
        return f"Вы победили! +{bet} PTS"
    return "Ничья! Ставки возвращены"


async def create_offer(db: Database, user_id: int, bet: int) -> int:
    if isinstance(bet, bool) or not isinstance(bet, int) or bet < DEFAULTS.min_bet:
        raise InvalidBet(f"Minimum bet is {DEFAULTS.min_bet}")
    async with db.transaction() as conn:
        await economy.debit(conn, user_id, bet)
        cursor = await conn.execute(
            """
            INSERT INTO pvp_battles (challenger_id, bet, status)
            VALUES (?, ?, ?)
            """,
            (user_id, bet, STATUS_PENDING),
        )
        battle_id = cursor.lastrowid
    logger.info("user %s opened duel %s with bet %s", user_id, battle_id, bet)
    return battle_id


async def list_offers(db: Database) -> List[Dict[str, Any]]:
    return await db.get_pending_offers()


async def accept_offer(
    db: Database, user_id: int, battle_id: int, roll: Optional[Roll] = None
) -> DuelResult:
    roll = roll or roll_die
    if not fits_integer(battle_id):
        raise OfferUnavailable()
    async with db.transaction() as conn:
        battle = await fetchone(
            conn, "SELECT * FROM pvp_battles WHERE battle_id = ?", (battle_id,)
        )
        if not battle or battle["status"] != STATUS_PENDING:
            raise OfferUnavailable()
        challenger_id = int(battle["challenger_id"])
        bet = int(battle["bet"])
        if challenger_id == user_id:
            raise SelfAcceptance()
        if await economy.balance(conn, user_id) < bet:
            raise InsufficientFunds()

        challenger_roll = roll()
        opponent_roll = roll()
        outcome = compare_rolls(challenger_roll, opponent_roll)

        if outcome == CHALLENGER_WINS:
            # Acceptor's stake moves to the challenger, whose escrow is released.
            await economy.transfer(conn, user_id, challenger_id, bet)
            await economy.credit(conn, challenger_id, bet)
        elif outcome == OPPONENT_WINS:
            await economy.credit(conn, user_id, bet)
        else:
            await economy.credit(conn, challenger_id, bet)

        result = DuelResult(
            battle_id=battle_id,
            challenger_id=challenger_id,
            opponent_id=user_id,
            bet=bet,
            challenger_roll=challenger_roll,
            opponent_roll=opponent_roll,
            outcome=outcome,
            message=outcome_message(outcome, bet),
        )
        cursor = await conn.execute(
            """
            UPDATE pvp_battles
            SET status = ?, opponent_id = ?, challenger_roll = ?, opponent_roll = ?,
                winner_id = ?, finished_at = ?
            WHERE battle_id = ? AND status = ?
            """,
            (
                STATUS_FINISHED,
                user_id,
                challenger_roll,
                opponent_roll,
                result.winner_id,
                format_ts(utcnow()),
                battle_id,
                STATUS_PENDING,
            ),
        )
        if cursor.rowcount != 1:
            raise OfferUnavailable()
        if result.winner_id is not None:
            await conn.execute(
                """
                INSERT INTO pvp_stats (user_id, wins) VALUES (?, 1)
                ON CONFLICT(user_id) DO UPDATE SET wins = wins + 1
                """,
                (result.winner_id,),
            )
    logger.info(
        "duel %s settled: %s (%s vs %s), bet %s",
        battle_id,
        outcome,
        challenger_roll,
        opponent_roll,
        bet,
    )
    return result
