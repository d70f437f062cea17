"""PvP duel lifecycle and settlement."""

from __future__ import annotations

import pytest

from conftest import fixed_rolls, make_user
from plombir import duel
from plombir.errors import (
    InsufficientFunds,
    InvalidBet,
    OfferUnavailable,
    SelfAcceptance,
)


class TestCompareRolls:
    @pytest.mark.parametrize(
        "challenger, opponent, expected",
        [(6, 1, duel.CHALLENGER_WINS), (2, 5, duel.OPPONENT_WINS), (3, 3, duel.TIE)],
    )
    def test_outcomes(self, challenger: int, opponent: int, expected: str) -> None:
        assert duel.compare_rolls(challenger, opponent) == expected

    def test_messages(self) -> None:
        assert duel.outcome_message(duel.CHALLENGER_WINS, 50) == "Победил создатель вызова! +50 PTS"
        assert duel.outcome_message(duel.OPPONENT_WINS, 50) == "Вы победили! +50 PTS"
        assert duel.outcome_message(duel.TIE, 50) == "Ничья! Ставки возвращены"


class TestCreateOffer:
    async def test_escrows_stake(self, db) -> None:
        await make_user(db, 1, rating=1000)

        battle_id = await duel.create_offer(db, 1, 50)

        assert await db.get_rating(1) == 950
        offer = await db.get_offer(battle_id)
        assert offer["status"] == duel.STATUS_PENDING
        assert offer["bet"] == 50
        assert offer["challenger_id"] == 1

    @pytest.mark.parametrize("bet", [9, 0, -10])
    async def test_rejects_small_bet(self, db, bet: int) -> None:
        await make_user(db, 1, rating=1000)

        with pytest.raises(InvalidBet):
            await duel.create_offer(db, 1, bet)

        assert await db.get_rating(1) == 1000
        assert await duel.list_offers(db) == []

    async def test_rejects_insufficient_funds(self, db) -> None:
        await make_user(db, 1, rating=20)

        with pytest.raises(InsufficientFunds):
            await duel.create_offer(db, 1, 21)

        assert await db.get_rating(1) == 20
        assert await duel.list_offers(db) == []

    async def test_lists_pending_newest_first(self, db) -> None:
        await make_user(db, 1, rating=1000, name="Ann")
        await make_user(db, 2, rating=1000, name="Bob")
        first = await duel.create_offer(db, 1, 10)
        second = await duel.create_offer(db, 2, 20)
        third = await duel.create_offer(db, 1, 30)
        await duel.accept_offer(db, 2, third, roll=fixed_rolls([3, 3]))

        offers = await duel.list_offers(db)

        assert [o["battle_id"] for o in offers] == [second, first]
        assert offers[0]["challenger_name"] == "Bob"
        assert offers[0]["challenger_short_id"] == 2


class TestAcceptOffer:
    async def test_acceptor_wins(self, db) -> None:
        await make_user(db, 1, rating=1000)
        await make_user(db, 2, rating=200)
        battle_id = await duel.create_offer(db, 1, 50)

        result = await duel.accept_offer(db, 2, battle_id, roll=fixed_rolls([2, 5]))

        assert result.winner_id == 2
        assert result.as_response()["winner"] is True
        assert result.message == "Вы победили! +50 PTS"
        assert await db.get_rating(1) == 950
        assert await db.get_rating(2) == 250
        offer = await db.get_offer(battle_id)
        assert offer["status"] == duel.STATUS_FINISHED
        assert offer["opponent_id"] == 2
        assert offer["winner_id"] == 2
        assert await db.get_pvp_wins(2) == 1

    async def test_challenger_wins(self, db) -> None:
        await make_user(db, 1, rating=1000)
        await make_user(db, 2, rating=200)
        battle_id = await duel.create_offer(db, 1, 50)

        result = await duel.accept_offer(db, 2, battle_id, roll=fixed_rolls([6, 1]))

        assert result.winner_id == 1
        assert result.as_response()["winner"] is False
        assert await db.get_rating(1) == 1050
        assert await db.get_rating(2) == 150
        assert await db.get_pvp_wins(1) == 1
        assert await db.get_pvp_wins(2) == 0

    async def test_tie_refunds_escrow(self, db) -> None:
        await make_user(db, 1, rating=1000)
        await make_user(db, 2, rating=200)
        battle_id = await duel.create_offer(db, 1, 50)

        result = await duel.accept_offer(db, 2, battle_id, roll=fixed_rolls([4, 4]))

        assert result.winner_id is None
        assert result.as_response()["winner"] is False
        assert await db.get_rating(1) == 1000
        assert await db.get_rating(2) == 200
        assert (await db.get_offer(battle_id))["status"] == duel.STATUS_FINISHED

    @pytest.mark.parametrize("rolls", [(6, 1), (1, 6), (2, 2)])
    async def test_total_changes_only_by_net_transfer(self, db, rolls) -> None:
        await make_user(db, 1, rating=500)
        await make_user(db, 2, rating=500)
        battle_id = await duel.create_offer(db, 1, 100)

        result = await duel.accept_offer(db, 2, battle_id, roll=fixed_rolls(rolls))

        challenger, acceptor = await db.get_rating(1), await db.get_rating(2)
        assert challenger + acceptor == 1000
        expected_shift = {
            duel.CHALLENGER_WINS: 100,
            duel.OPPONENT_WINS: -100,
            duel.TIE: 0,
        }[result.outcome]
        assert challenger - 500 == expected_shift
        assert acceptor - 500 == -expected_shift

    async def test_cannot_accept_own_offer(self, db) -> None:
        await make_user(db, 1, rating=1000)
        battle_id = await duel.create_offer(db, 1, 50)

        with pytest.raises(SelfAcceptance):
            await duel.accept_offer(db, 1, battle_id, roll=fixed_rolls([1, 2]))

        assert (await db.get_offer(battle_id))["status"] == duel.STATUS_PENDING
        assert await db.get_rating(1) == 950

    async def test_unknown_offer(self, db) -> None:
        await make_user(db, 2, rating=200)

        with pytest.raises(OfferUnavailable):
            await duel.accept_offer(db, 2, 12345, roll=fixed_rolls([1, 2]))

    async def test_huge_offer_id(self, db) -> None:
        await make_user(db, 2, rating=200)

        with pytest.raises(OfferUnavailable):
            await duel.accept_offer(db, 2, 10**20, roll=fixed_rolls([1, 2]))

    async def test_huge_bet_is_unaffordable(self, db) -> None:
        await make_user(db, 1, rating=1000)

        with pytest.raises(InsufficientFunds):
            await duel.create_offer(db, 1, 10**20)

        assert await db.get_rating(1) == 1000

    async def test_finished_offer_is_terminal(self, db) -> None:
        await make_user(db, 1, rating=1000)
        await make_user(db, 2, rating=200)
        await make_user(db, 3, rating=200)
        battle_id = await duel.create_offer(db, 1, 50)
        await duel.accept_offer(db, 2, battle_id, roll=fixed_rolls([2, 5]))

        with pytest.raises(OfferUnavailable):
            await duel.accept_offer(db, 3, battle_id, roll=fixed_rolls([6, 1]))

        assert await db.get_rating(1) == 950
        assert await db.get_rating(3) == 200

    async def test_acceptor_needs_the_stake(self, db) -> None:
        await make_user(db, 1, rating=1000)
        await make_user(db, 2, rating=49)
        battle_id = await duel.create_offer(db, 1, 50)

        with pytest.raises(InsufficientFunds):
            await duel.accept_offer(db, 2, battle_id, roll=fixed_rolls([2, 5]))

        assert (await db.get_offer(battle_id))["status"] == duel.STATUS_PENDING
        assert await db.get_rating(2) == 49
