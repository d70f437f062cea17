from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from .db import fits_integer


WEBAPP_DATA_KEY = b"WebAppData"


@dataclass
class TgUser:
    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


def data_check_string(pairs: Dict[str, str]) -> str:
    return "\n".join(f"{k}={pairs[k]}" for k in sorted(pairs))


def sign_pairs(pairs: Dict[str, str], bot_token: str) -> str:
    secret = hmac.new(
        WEBAPP_DATA_KEY,
        bot_token.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return hmac.new(
        secret, data_check_string(pairs).encode("utf-8"), hashlib.sha256
    ).hexdigest()


def validate_init_data(
    init_data: str,
    bot_token: str,
    max_age: int = 0,
    now: Optional[float] = None,
) -> Optional[Dict[str, str]]:
    """Return the signed fields of ``init_data`` or ``None`` if it is not authentic."""
    if not init_data or not bot_token:
        return None
    try:
        pairs = dict(parse_qsl(init_data, keep_blank_values=True, strict_parsing=True))
    except ValueError:
        return None
    received_hash = pairs.pop("hash", None)
    if not received_hash:
        return None
    calculated_hash = sign_pairs(pairs, bot_token)
    if not hmac.compare_digest(calculated_hash, received_hash):
        return None
    if max_age > 0:
        try:
            auth_ts = int(pairs.get("auth_date", ""))
        except ValueError:
            return None
        current = time.time() if now is None else now
        if current - auth_ts > max_age:
            return None
    return pairs


def parse_user(pairs: Dict[str, str]) -> Optional[TgUser]:
    raw_user = pairs.get("user")
    if not raw_user:
        return None
    try:
        payload = json.loads(raw_user)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return user_from_profile(payload)


def user_from_profile(payload: Optional[Dict[str, Any]]) -> Optional[TgUser]:
    if not payload:
        return None
    try:
        user_id = int(payload.get("id") or 0)
    except (TypeError, ValueError):
        return None
    if not user_id or not fits_integer(user_id):
        return None
    return TgUser(
        id=user_id,
        username=payload.get("username"),
        first_name=payload.get("first_name"),
        last_name=payload.get("last_name"),
    )


def create_token(user_id: int, secret: str, ttl: int) -> str:
    payload = {
        "uid": user_id,
        "exp": int(time.time()) + max(0, ttl),
    }
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    b64 = (
        base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")
    )
    sig = hmac.new(
        secret.encode("utf-8"), b64.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"{b64}.{sig}"


def verify_token(token: str, secret: str) -> Optional[int]:
    if not token or not secret:
        return None
    try:
        b64, sig = token.split(".", 1)
    except ValueError:
        return None
    expected = hmac.new(
        secret.encode("utf-8"), b64.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    if not hmac.compare_digest(expected, sig):
        return None
    padded = b64 + "=" * (-len(b64) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
        payload = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        exp = int(payload.get("exp", 0))
        uid = int(payload.get("uid", 0))
    except (TypeError, ValueError):
        return None
    if exp and time.time() > exp:
        return None
    if not fits_integer(uid):
        return None
    return uid or None


def parse_user_header(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    value = value.strip()
    digits = value.lstrip("-")
    # 19 digits covers every SQLite INTEGER.
    if not digits.isdigit() or len(digits) > 19:
        return None
    user_id = int(value)
    if not fits_integer(user_id):
        return None
    return user_id or None
