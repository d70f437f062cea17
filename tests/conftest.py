"""Shared test fixtures."""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from collections.abc import AsyncGenerator
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlencode

# Environment must be in place before plombir.config is imported.
os.environ["BOT_TOKEN"] = "test_bot_token"
os.environ["DB_PATH"] = ":memory:"
os.environ["ADMIN_IDS"] = ""
os.environ["WEBAPP_AUTH_SECRET"] = "test_session_secret"
os.environ["WEBAPP_AUTH_MAX_AGE"] = "0"
os.environ["WEBAPP_REQUIRE_TOKEN"] = "0"
os.environ["FRONTEND_DIR"] = "/nonexistent-frontend"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from plombir import economy
from plombir.auth import TgUser
from plombir.db import Database
from plombir.game import GameData


BOT_TOKEN = "test_bot_token"


def sign_init_data(fields: Dict[str, str], bot_token: str = BOT_TOKEN) -> str:
    """Build a URL-encoded init data string signed the way the Telegram client does."""
    check_string = "\n".join(f"{k}={fields[k]}" for k in sorted(fields))
    secret = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    digest = hmac.new(secret, check_string.encode(), hashlib.sha256).hexdigest()
    return urlencode({**fields, "hash": digest})


def init_fields(user_id: int, first_name: str = "Player", username: Optional[str] = None) -> Dict[str, str]:
    user = {"id": user_id, "first_name": first_name}
    if username:
        user["username"] = username
    return {
        "auth_date": "1700000000",
        "query_id": "AAE-test",
        "user": json.dumps(user, separators=(",", ":"), ensure_ascii=False),
    }


def fixed_rolls(values: Iterable[int]):
    it = iter(values)
    return lambda: next(it)


async def make_user(
    db: Database,
    user_id: int,
    rating: int = 0,
    name: str = "Player",
    username: Optional[str] = None,
) -> Dict[str, Any]:
    await db.register_user(TgUser(id=user_id, username=username, first_name=name))
    if rating:
        async with db.transaction() as conn:
            await economy.credit(conn, user_id, rating)
    return await db.get_user(user_id)


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[Database, None]:
    database = Database(":memory:")
    await database.connect()
    await database.init()
    yield database
    await database.close()


@pytest.fixture(scope="session")
def data() -> GameData:
    return GameData()


@pytest_asyncio.fixture
async def webapp():
    from plombir_webapp import app as webapp_module

    await webapp_module.db.connect()
    await webapp_module.db.init()
    yield webapp_module
    await webapp_module.db.close()


@pytest_asyncio.fixture
async def client(webapp) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=webapp.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
