"""Balance primitives and transaction rollback."""

from __future__ import annotations

import pytest

from conftest import make_user
from plombir import economy
from plombir.errors import InsufficientFunds, InvalidInput


class TestDebitCredit:
    async def test_debit_and_credit(self, db) -> None:
        await make_user(db, 1, rating=100)

        async with db.transaction() as conn:
            await economy.debit(conn, 1, 30)
            await economy.credit(conn, 1, 5)

        assert await db.get_rating(1) == 75

    async def test_debit_whole_balance(self, db) -> None:
        await make_user(db, 1, rating=100)

        async with db.transaction() as conn:
            await economy.debit(conn, 1, 100)

        assert await db.get_rating(1) == 0

    async def test_insufficient_funds_leaves_balance(self, db) -> None:
        await make_user(db, 1, rating=10)

        with pytest.raises(InsufficientFunds):
            async with db.transaction() as conn:
                await economy.debit(conn, 1, 11)

        assert await db.get_rating(1) == 10

    async def test_failure_rolls_back_earlier_statements(self, db) -> None:
        await make_user(db, 1, rating=50)

        with pytest.raises(InsufficientFunds):
            async with db.transaction() as conn:
                await economy.credit(conn, 1, 20)
                await conn.execute(
                    "INSERT INTO user_farm (user_id, animal_key) VALUES (?, ?)",
                    (1, "chicken"),
                )
                await economy.debit(conn, 1, 1000)

        assert await db.get_rating(1) == 50
        assert await db.get_farm_animals(1) == []

    @pytest.mark.parametrize("amount", [-1, 1.5, True])
    async def test_rejects_bad_amounts(self, db, amount) -> None:
        await make_user(db, 1, rating=10)

        with pytest.raises(InvalidInput):
            async with db.transaction() as conn:
                await economy.credit(conn, 1, amount)
        with pytest.raises(InvalidInput):
            async with db.transaction() as conn:
                await economy.debit(conn, 1, amount)

        assert await db.get_rating(1) == 10

    async def test_amount_beyond_storage_range(self, db) -> None:
        await make_user(db, 1, rating=10)

        with pytest.raises(InsufficientFunds):
            async with db.transaction() as conn:
                await economy.debit(conn, 1, 10**20)
        with pytest.raises(InvalidInput):
            async with db.transaction() as conn:
                await economy.credit(conn, 1, 10**20)
        with pytest.raises(InvalidInput):
            async with db.transaction() as conn:
                await economy.debit(conn, 10**20, 10**20)

        assert await db.get_rating(1) == 10

    async def test_unknown_user(self, db) -> None:
        with pytest.raises(InvalidInput):
            async with db.transaction() as conn:
                await economy.credit(conn, 999, 10)
        with pytest.raises(InvalidInput):
            async with db.transaction() as conn:
                await economy.debit(conn, 999, 10)


class TestTransfer:
    async def test_moves_amount(self, db) -> None:
        await make_user(db, 1, rating=100)
        await make_user(db, 2, rating=5)

        async with db.transaction() as conn:
            await economy.transfer(conn, 1, 2, 40)

        assert await db.get_rating(1) == 60
        assert await db.get_rating(2) == 45

    async def test_insufficient_funds_moves_nothing(self, db) -> None:
        await make_user(db, 1, rating=10)
        await make_user(db, 2, rating=0)

        with pytest.raises(InsufficientFunds):
            async with db.transaction() as conn:
                await economy.transfer(conn, 1, 2, 40)

        assert await db.get_rating(1) == 10
        assert await db.get_rating(2) == 0

    async def test_self_transfer_is_noop(self, db) -> None:
        await make_user(db, 1, rating=10)

        async with db.transaction() as conn:
            await economy.transfer(conn, 1, 1, 10)

        assert await db.get_rating(1) == 10

    async def test_balance_never_negative(self, db) -> None:
        await make_user(db, 1, rating=25)
        await make_user(db, 2, rating=0)

        for amount in (10, 10, 10, 10):
            try:
                async with db.transaction() as conn:
                    await economy.transfer(conn, 1, 2, amount)
            except InsufficientFunds:
                pass

        assert await db.get_rating(1) == 5
        assert await db.get_rating(2) == 20
