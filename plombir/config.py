from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv


load_dotenv()


def _parse_int(value: str, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_ids(value: str) -> frozenset[int]:
    ids = set()
    for part in value.split(","):
        part = part.strip()
        if part.lstrip("-").isdigit():
            ids.add(int(part))
    return frozenset(ids)


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", BASE_DIR / "data"))
DB_PATH = Path(os.getenv("DB_PATH", BASE_DIR / "plombir_base.db"))
FRONTEND_DIR = Path(os.getenv("FRONTEND_DIR", BASE_DIR / "frontend"))
BOT_TOKEN = os.getenv("BOT_TOKEN", "").strip()
ADMIN_IDS = _parse_ids(os.getenv("ADMIN_IDS", ""))
WEBAPP_AUTH_SECRET = os.getenv("WEBAPP_AUTH_SECRET", "").strip() or BOT_TOKEN
WEBAPP_TOKEN_TTL = _parse_int(os.getenv("WEBAPP_TOKEN_TTL", "2592000"), 2592000)
WEBAPP_AUTH_MAX_AGE = _parse_int(os.getenv("WEBAPP_AUTH_MAX_AGE", "0"), 0)
WEBAPP_REQUIRE_TOKEN = os.getenv("WEBAPP_REQUIRE_TOKEN", "0").strip() == "1"
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "*").split(",")
    if origin.strip()
]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
WEBAPP_HOST = os.getenv("WEBAPP_HOST", "0.0.0.0").strip() or "0.0.0.0"
WEBAPP_PORT = _parse_int(os.getenv("WEBAPP_PORT", "8000"), 8000)


@dataclass(frozen=True)
class EconomyDefaults:
    start_rating: int = 0
    min_bet: int = 10
    dice_cooldown_hours: int = 24
    dice_one_reward: int = 100
    dice_step_reward: int = 10
    phone_reward: int = 20
    top_limit: int = 20


DEFAULTS = EconomyDefaults()
