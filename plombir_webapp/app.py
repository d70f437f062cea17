from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import AliasChoices, BaseModel, Field

from plombir import duel, features
from plombir.auth import (
    create_token,
    parse_user,
    parse_user_header,
    validate_init_data,
    verify_token,
)
from plombir.config import (
    ADMIN_IDS,
    BOT_TOKEN,
    CORS_ORIGINS,
    DB_PATH,
    DEFAULTS,
    FRONTEND_DIR,
    LOG_LEVEL,
    WEBAPP_AUTH_MAX_AGE,
    WEBAPP_AUTH_SECRET,
    WEBAPP_HOST,
    WEBAPP_PORT,
    WEBAPP_REQUIRE_TOKEN,
    WEBAPP_TOKEN_TTL,
)
from plombir.db import Database
from plombir.errors import GameError, InvalidInput, Unauthenticated
from plombir.game import GameData


logger = logging.getLogger(__name__)

app = FastAPI(title="PLOMBIR Web App")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

db = Database(DB_PATH)
data = GameData()


class AuthRequest(BaseModel):
    init_data: str = Field(validation_alias=AliasChoices("init_data", "initData"))


class BuyAnimalRequest(BaseModel):
    animal_key: str


class BuyProtectionRequest(BaseModel):
    item_key: str


class TaskStartRequest(BaseModel):
    task_id: int


class PvpCreateRequest(BaseModel):
    bet: int


class PvpAcceptRequest(BaseModel):
    battle_id: int


class GiveawayJoinRequest(BaseModel):
    giveaway_id: int


class PromoActivateRequest(BaseModel):
    code: str = Field(max_length=64)


class SocialVerifyRequest(BaseModel):
    platform: str
    nick: str = Field(
        max_length=64, validation_alias=AliasChoices("nick", "nickname")
    )


class ProfileUpdateRequest(BaseModel):
    field: str
    value: Optional[str] = Field(default=None, max_length=128)


@app.on_event("startup")
async def startup() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not BOT_TOKEN:
        logger.warning("BOT_TOKEN is not set, every /api/auth call will be rejected")
    await db.connect()
    await db.init()
    logger.info("database ready at %s", db.path)


@app.on_event("shutdown")
async def shutdown() -> None:
    await db.close()


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.info("rejected %s %s: invalid body", request.method, request.url.path)
    return JSONResponse(
        status_code=InvalidInput.status_code,
        content={"error": InvalidInput.default_message},
    )


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    return {"status": "ok"}


async def _authorize(request: Request) -> int:
    authorization = request.headers.get("authorization", "")
    user_id: Optional[int] = None
    if authorization.lower().startswith("bearer "):
        user_id = verify_token(authorization[7:].strip(), WEBAPP_AUTH_SECRET)
    elif not WEBAPP_REQUIRE_TOKEN:
        user_id = parse_user_header(request.headers.get("x-user-id"))
    if user_id is None or not await db.get_user(user_id):
        raise Unauthenticated("Unauthorized")
    return user_id


@app.post("/api/auth")
async def auth(payload: AuthRequest) -> Dict[str, Any]:
    pairs = validate_init_data(payload.init_data, BOT_TOKEN, WEBAPP_AUTH_MAX_AGE)
    if pairs is None:
        logger.warning("rejected init data with bad signature")
        raise Unauthenticated()
    # Only the signed user is trusted; a profile sent alongside is ignored.
    tg_user = parse_user(pairs)
    if not tg_user:
        raise InvalidInput("User not found")
    user = await db.register_user(tg_user)
    return {
        "user": await features.build_user_view(db, user, ADMIN_IDS),
        "token": create_token(tg_user.id, WEBAPP_AUTH_SECRET, WEBAPP_TOKEN_TTL),
    }


@app.get("/api/farm")
async def farm(request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    return await features.build_farm(db, data, user_id)


@app.post("/api/farm/buy-animal")
async def buy_animal(payload: BuyAnimalRequest, request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    await features.buy_animal(db, data, user_id, payload.animal_key)
    return {"success": True}


@app.post("/api/farm/buy-protection")
async def buy_protection(payload: BuyProtectionRequest, request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    await features.buy_protection(db, data, user_id, payload.item_key)
    return {"success": True}


@app.get("/api/tasks")
async def tasks(request: Request) -> List[Dict[str, Any]]:
    user_id = await _authorize(request)
    return await features.list_tasks(db, user_id)


@app.post("/api/tasks/start")
async def task_start(payload: TaskStartRequest, request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    await features.start_task(db, user_id, payload.task_id)
    return {"success": True}


@app.get("/api/pvp/offers")
async def pvp_offers() -> List[Dict[str, Any]]:
    return await duel.list_offers(db)


@app.post("/api/pvp/create")
async def pvp_create(payload: PvpCreateRequest, request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    battle_id = await duel.create_offer(db, user_id, payload.bet)
    return {"success": True, "battle_id": battle_id}


@app.post("/api/pvp/accept")
async def pvp_accept(payload: PvpAcceptRequest, request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    result = await duel.accept_offer(db, user_id, payload.battle_id)
    return result.as_response()


@app.get("/api/top")
async def top() -> List[Dict[str, Any]]:
    return await db.get_top_users(DEFAULTS.top_limit)


@app.get("/api/giveaways")
async def giveaways() -> List[Dict[str, Any]]:
    return await db.get_active_giveaways()


@app.post("/api/giveaways/join")
async def giveaway_join(payload: GiveawayJoinRequest, request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    await features.join_giveaway(db, user_id, payload.giveaway_id)
    return {"success": True}


@app.post("/api/promo/activate")
async def promo_activate(payload: PromoActivateRequest, request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    reward = await features.activate_promo(db, user_id, payload.code)
    return {"success": True, "reward": reward}


@app.post("/api/social/verify")
async def social_verify(payload: SocialVerifyRequest, request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    await features.verify_social(db, user_id, payload.platform, payload.nick)
    return {"success": True}


@app.post("/api/social/verify-phone")
async def social_verify_phone(request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    reward = await features.verify_phone(db, user_id)
    return {"success": True, "reward": reward}


@app.post("/api/profile/update")
async def profile_update(payload: ProfileUpdateRequest, request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    await features.update_profile(db, user_id, payload.field, payload.value)
    return {"success": True}


@app.post("/api/dice/roll")
async def dice_roll(request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    outcome = await features.roll_dice(db, user_id)
    return {"success": True, **outcome}


@app.post("/api/admin/export")
async def admin_export(request: Request) -> Dict[str, Any]:
    user_id = await _authorize(request)
    count = await features.export_users(db, user_id, ADMIN_IDS)
    return {"success": True, "count": count}


if FRONTEND_DIR.is_dir():
    app.mount("/", StaticFiles(directory=str(FRONTEND_DIR), html=True), name="frontend")


if __name__ == "__main__":
    uvicorn.run(app, host=WEBAPP_HOST, port=WEBAPP_PORT, log_level=LOG_LEVEL.lower())
