import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import config
import database
import services
from auth import authenticate, create_token, current_user, federated_login, register_user, require_admin, \
    user_from_token
from chat import rooms
from errors import HemolinkError, InvalidInput
from schemas import (
    AuthPayload,
    BloodBankPayload,
    DonationInput,
    FeedbackPayload,
    GeoPoint,
    InventoryAdjustPayload,
    LoginPayload,
    ProfileUpdatePayload,
    RegisterPayload,
    RequestInput,
    StatusPayload,
    BloodGroup,
    to_naive_utc,
    utcnow,
)

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database.ensure_indexes()
    except Exception as e:
        logger.warning("Could not create indexes: %s", e)
    yield


app = FastAPI(title="Hemolink API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error rendering

@app.exception_handler(HemolinkError)
def hemolink_error(request, exc: HemolinkError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
def validation_error(request, exc: RequestValidationError):
    err = InvalidInput("Invalid input", errors=exc.errors())
    return JSONResponse(status_code=err.status_code, content=jsonable_encoder(err.to_dict()))


def _location(lat: Optional[float], lng: Optional[float]) -> Optional[GeoPoint]:
    if lat is None and lng is None:
        return None
    if lat is None or lng is None:
        raise InvalidInput("lat and lng must be given together")
    return GeoPoint.from_lon_lat(lng, lat)


# Auth

@app.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterPayload):
    user = register_user(payload)
    return {"success": True, "data": {"token": create_token(user), "user": user}}


@app.post("/auth/login")
def login(payload: LoginPayload):
    user = authenticate(payload.email, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"success": True, "data": {"token": create_token(user), "user": user}}


# Google sign-in: the client passes the verified profile (email, name, external id)
@app.post("/auth/google")
def auth_google(payload: AuthPayload):
    user = federated_login(payload)
    return {"success": True, "data": {"token": create_token(user), "user": user}}


# Users

@app.get("/users/me")
def me(user: dict = Depends(current_user)):
    return {"success": True, "data": user}


@app.patch("/users/me")
def update_me(payload: ProfileUpdatePayload, user: dict = Depends(current_user)):
    return {"success": True, "data": services.update_profile(user["id"], payload)}


class ActivePayload(BaseModel):
    is_active: bool


@app.patch("/users/{user_id}/active")
def set_active(user_id: str, payload: ActivePayload, admin: dict = Depends(require_admin)):
    return {"success": True, "data": services.set_user_active(user_id, payload.is_active)}


# Blood banks

@app.get("/blood-banks")
def list_blood_banks(
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    radius: int = Query(50000, ge=1, le=100000),
    blood_group: Optional[BloodGroup] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
):
    result = services.list_blood_banks(_location(lat, lng), radius, blood_group, page, limit)
    return {"success": True, **result}


@app.get("/blood-banks/{bank_id}")
def get_blood_bank(bank_id: str):
    return {"success": True, "data": services.get_blood_bank(bank_id)}


@app.post("/blood-banks", status_code=status.HTTP_201_CREATED)
def create_blood_bank(payload: BloodBankPayload, admin: dict = Depends(require_admin)):
    return {"success": True, "data": services.create_blood_bank(payload)}


@app.patch("/blood-banks/{bank_id}/inventory")
def adjust_inventory(bank_id: str, payload: InventoryAdjustPayload, admin: dict = Depends(require_admin)):
    return {"success": True, "data": services.adjust_inventory(bank_id, payload.blood_group, payload.delta)}


# Donations

@app.post("/donations", status_code=status.HTTP_201_CREATED)
def submit_donation(payload: DonationInput, user: dict = Depends(current_user)):
    outcome = services.submit_donation(user["id"], payload)
    if not outcome.accepted:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonable_encoder({"success": False, "error": "ineligible_donor", **outcome.as_dict()}),
        )
    return {"success": True, "data": outcome.as_dict()}


@app.get("/donations/eligibility")
def donation_eligibility(date: Optional[datetime] = None, user: dict = Depends(current_user)):
    proposed = to_naive_utc(date) if date else utcnow()
    result = services.check_donor_eligibility(user["id"], proposed)
    return {"success": True, "data": {"eligible": result.eligible, "next_eligible_date": result.next_eligible_date}}


@app.get("/donations/history")
def donation_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    status_filter: Optional[Literal["pending", "approved", "completed", "rejected", "cancelled"]] = Query(
        None, alias="status"),
    user: dict = Depends(current_user),
):
    return {"success": True, **services.donation_history(user["id"], page, limit, status_filter)}


@app.get("/donations/stats")
def donation_stats(user: dict = Depends(current_user)):
    return {"success": True, "data": services.donation_stats(user["id"])}


@app.get("/donations/{donation_id}")
def get_donation(donation_id: str, user: dict = Depends(current_user)):
    return {"success": True, "data": services.get_donation(donation_id, user)}


@app.patch("/donations/{donation_id}/status")
def update_donation_status(donation_id: str, payload: StatusPayload, admin: dict = Depends(require_admin)):
    return {"success": True,
            "data": services.update_donation_status(donation_id, payload.status, admin, payload.reason)}


@app.post("/donations/{donation_id}/feedback")
def donation_feedback(donation_id: str, payload: FeedbackPayload, user: dict = Depends(current_user)):
    return {"success": True,
            "data": services.add_donation_feedback(donation_id, user, payload.rating, payload.comment)}


# Blood requests

@app.post("/requests", status_code=status.HTTP_201_CREATED)
def create_request(payload: RequestInput, user: dict = Depends(current_user)):
    return {"success": True, "data": services.create_request(user["id"], payload).as_dict()}


@app.get("/requests")
def list_requests(
    status_filter: Optional[Literal["pending", "in-progress", "fulfilled", "cancelled"]] = Query(
        None, alias="status"),
    blood_group: Optional[BloodGroup] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
):
    return {"success": True, **services.list_requests(status_filter, blood_group, None, page, limit)}


@app.get("/requests/mine")
def my_requests(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=50),
                user: dict = Depends(current_user)):
    return {"success": True, **services.list_requests(requester_id=user["id"], page=page, limit=limit)}


@app.get("/requests/nearby")
def nearby_requests(lat: float = Query(..., ge=-90, le=90), lng: float = Query(..., ge=-180, le=180),
                    radius: int = Query(50000, ge=1, le=100000)):
    return {"success": True, "data": services.nearby_requests(GeoPoint.from_lon_lat(lng, lat), radius)}


@app.get("/requests/{request_id}")
def get_request(request_id: str):
    return {"success": True, "data": services.get_request(request_id)}


@app.get("/requests/{request_id}/candidates")
def request_candidates(request_id: str, user: dict = Depends(current_user)):
    return {"success": True, "data": services.request_candidates(request_id)}


@app.patch("/requests/{request_id}/status")
def update_request_status(request_id: str, payload: StatusPayload, user: dict = Depends(current_user)):
    return {"success": True, "data": services.update_request_status(request_id, payload.status, user)}


@app.post("/requests/{request_id}/respond")
def respond_to_request(request_id: str, user: dict = Depends(current_user)):
    return {"success": True, "data": services.respond_to_request(request_id, user["id"])}


@app.patch("/requests/{request_id}/responses/{donor_id}")
def update_donor_response(request_id: str, donor_id: str, payload: StatusPayload,
                          user: dict = Depends(current_user)):
    return {"success": True,
            "data": services.update_donor_response(request_id, donor_id, payload.status, user)}


@app.post("/requests/{request_id}/feedback")
def request_feedback(request_id: str, payload: FeedbackPayload, user: dict = Depends(current_user)):
    return {"success": True,
            "data": services.add_request_feedback(request_id, user, payload.rating, payload.comment)}


# Rewards

@app.get("/rewards/status")
def rewards_status(user: dict = Depends(current_user)):
    return {"success": True, "data": services.rewards_status(user)}


@app.get("/rewards/badges")
def rewards_badges(user: dict = Depends(current_user)):
    return {"success": True, "data": services.badge_catalogue(user)}


@app.get("/rewards/leaderboard")
def rewards_leaderboard(
    board: Literal["points", "donations", "streak", "lives"] = Query("points", alias="type"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(current_user),
):
    return {"success": True, "data": services.leaderboard(user, board, page, limit)}


# Support chat

@app.websocket("/ws/chat/{room_id}")
async def chat(websocket: WebSocket, room_id: str, token: str = ""):
    try:
        user = user_from_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await rooms.join(room_id, websocket)
    try:
        while True:
            await rooms.handle(room_id, user, await websocket.receive_text(), websocket)
    except WebSocketDisconnect:
        pass
    finally:
        rooms.leave(room_id, websocket)


@app.get("/health")
def health():
    return {"success": True, "message": "Server is healthy", "timestamp": utcnow()}


@app.get("/test")
def test_database():
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available" if database.db is None else "✅ Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            resp["collections"] = database.db.list_collection_names()
    except Exception as e:
        resp["database"] = f"⚠️ {str(e)[:80]}"
    return resp


@app.get("/")
def root():
    return {"message": "Hemolink backend is live"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
