import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pydantic import ValidationError as SchemaValidationError
from pymongo.errors import ConnectionFailure
from starlette.exceptions import HTTPException as StarletteHTTPException

import lifecycle
import reports
from database import Store, as_utc, get_store, serialize_id, utcnow
from errors import AppError, Conflict, NotFound, StoreUnavailable, ValidationError
from schemas import (
    Campaign, CampaignStatus, CampaignType, Category, Ewaste, ItemStatus, Location,
    Rewards, Role, User, WasteType,
)
from security import create_token, get_current_user, hash_password, require_admin, verify_password

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("ewaste")


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = app.dependency_overrides.get(get_store, get_store)()
    logger.info("Store backend: %s%s", store.backend, " (fallback mode)" if store.fallback else "")
    lifecycle.recover_pending_credits(store)
    yield


app = FastAPI(title="Campus E-Waste Tracker API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# Error handling
# -----------------------------

def _error_list(errors) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"message": "Validation failed", "error": _error_list(exc.errors())})


@app.exception_handler(SchemaValidationError)
async def schema_validation_handler(request: Request, exc: SchemaValidationError):
    return JSONResponse(status_code=400, content={"message": "Validation failed", "error": _error_list(exc.errors())})


@app.exception_handler(ConnectionFailure)
async def store_unavailable_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database unavailable on %s: %s", request.url.path, exc)
    error = StoreUnavailable("Database connection error. Please check if MongoDB is running.")
    return JSONResponse(status_code=error.status_code, content=error.to_body())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Something went wrong!"})


# -----------------------------
# Helpers
# -----------------------------

def auth_user(doc: dict) -> dict:
    return {
        "id": doc["id"],
        "username": doc.get("username"),
        "email": doc.get("email"),
        "role": doc.get("role"),
        "department": doc.get("department"),
        "greenScore": doc.get("greenScore", 0),
    }


def item_response(store: Store, doc: dict) -> dict:
    return serialize_id(lifecycle.expand_items(store, [doc])[0])


def campaign_response(store: Store, doc: dict) -> dict:
    return serialize_id(lifecycle.expand_campaigns(store, [doc])[0])


# -----------------------------
# Health & meta
# -----------------------------

@app.get("/")
def read_root():
    return {"message": "Campus E-Waste Tracker API running"}


@app.get("/api/health")
def health(store: Store = Depends(get_store)):
    """Report store connectivity and whether the app runs on the in-memory fallback"""
    connected = store.ping() and not store.fallback
    response = {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "database": "connected" if connected else "disconnected",
        "backend": store.backend,
        "fallbackMode": store.fallback,
        "collections": [],
        "message": "All systems operational" if connected else "Database connection issue detected",
    }
    if store.backend == "memory" and not store.fallback:
        response["message"] = "Running on in-memory storage"
    try:
        response["collections"] = store.list_collection_names()[:10]
    except ConnectionFailure as e:
        response["message"] = f"Connected but Error: {str(e)[:80]}"
    return response


@app.get("/schema")
def get_schema():
    """Expose basic schema info for viewer/tools"""
    return {
        "user": User.model_json_schema(),
        "ewaste": Ewaste.model_json_schema(),
        "campaign": Campaign.model_json_schema(),
    }


# -----------------------------
# Auth
# -----------------------------

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=80)
    email: EmailStr
    password: str = Field(..., min_length=1)
    department: str = Field(..., min_length=1)
    role: Optional[Role] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UpdateProfileRequest(BaseModel):
    username: Optional[str] = Field(None, min_length=1, max_length=80)
    department: Optional[str] = Field(None, min_length=1)


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest, store: Store = Depends(get_store)):
    existing = store.find_one("user", {"email": payload.email}) or store.find_one("user", {"username": payload.username})
    if existing:
        raise ValidationError("User already exists")

    user = User(
        username=payload.username,
        email=payload.email,
        password=hash_password(payload.password),
        department=payload.department,
        role=payload.role or "user",
    )
    try:
        user_id = store.insert("user", user)
    except Conflict:
        raise ValidationError("User already exists")
    doc = store.get("user", user_id)
    logger.info("Registered user %s (%s)", doc["username"], doc["role"])

    message = "User registered successfully"
    if store.fallback:
        message += " (Fallback Mode)"
    return {"message": message, "token": create_token(doc), "user": auth_user(doc)}


@app.post("/api/auth/login")
def login(payload: LoginRequest, store: Store = Depends(get_store)):
    user = store.find_one("user", {"email": payload.email})
    if not user or not verify_password(payload.password, user["password"]):
        raise ValidationError("Invalid credentials")
    logger.info("User %s logged in", user["username"])

    message = "Login successful"
    if store.fallback:
        message += " (Fallback Mode)"
    return {"message": message, "token": create_token(user), "user": auth_user(user)}


@app.get("/api/auth/profile")
def get_profile(current: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    user = store.get("user", current["userId"])
    if not user:
        raise NotFound("User not found")
    return serialize_id(lifecycle.public_user(user))


@app.put("/api/auth/profile")
def update_profile(payload: UpdateProfileRequest, current: dict = Depends(get_current_user),
                   store: Store = Depends(get_store)):
    updates = payload.model_dump(exclude_none=True)
    if "username" in updates:
        taken = store.find_one("user", {"username": updates["username"], "id": {"$ne": current["userId"]}})
        if taken:
            raise ValidationError("Username already taken")
    user = store.get("user", current["userId"])
    if not user:
        raise NotFound("User not found")
    if updates:
        try:
            user = store.update("user", current["userId"], updates)
        except Conflict:
            raise ValidationError("Username already taken")
    return serialize_id(lifecycle.public_user(user))


# -----------------------------
# E-waste
# -----------------------------

class ReportItemRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    category: Category
    type: WasteType
    description: str = Field(..., min_length=1, max_length=2000)
    department: str = Field(..., min_length=1)
    age: float = Field(..., ge=0, description="Age in years")
    weight: float = Field(..., gt=0, description="Weight in kg")
    location: Location = Field(default_factory=Location)


class UpdateStatusRequest(BaseModel):
    status: Optional[ItemStatus] = None
    scheduledPickup: Optional[datetime] = None
    vendor: Optional[str] = None


@app.post("/api/ewaste", status_code=201)
def report_item(payload: ReportItemRequest, current: dict = Depends(get_current_user),
                store: Store = Depends(get_store)):
    doc = lifecycle.report_item(store, current["userId"], payload.model_dump())
    item = item_response(store, doc)
    return {"message": "E-waste item reported successfully", "ewaste": item, "qrCode": item["qrCode"]}


@app.get("/api/ewaste")
def list_items(
    department: Optional[str] = None,
    category: Optional[Category] = None,
    status: Optional[ItemStatus] = None,
    type_: Optional[WasteType] = Query(None, alias="type"),
    current: dict = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    filter_q = {}
    if department:
        filter_q["department"] = department
    if category:
        filter_q["category"] = category
    if status:
        filter_q["status"] = status
    if type_:
        filter_q["type"] = type_
    docs = store.find("ewaste", filter_q, sort=[("createdAt", -1)])
    return serialize_id(lifecycle.expand_items(store, docs))


@app.get("/api/ewaste/stats/overview")
def ewaste_stats(current: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    return reports.ewaste_overview(store.find("ewaste"))


@app.get("/api/ewaste/search/qr/{item_code}")
def search_by_code(item_code: str, current: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    doc = store.find_one("ewaste", {"itemId": item_code})
    if not doc:
        raise NotFound("E-waste item not found")
    return item_response(store, doc)


@app.get("/api/ewaste/{item_id}")
def get_item(item_id: str, current: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    doc = store.get("ewaste", item_id)
    if not doc:
        raise NotFound("E-waste item not found")
    return item_response(store, doc)


@app.patch("/api/ewaste/{item_id}/status")
def update_item_status(item_id: str, payload: UpdateStatusRequest, current: dict = Depends(get_current_user),
                       store: Store = Depends(get_store)):
    doc = lifecycle.update_item_status(
        store,
        item_id,
        status=payload.status,
        scheduled_pickup=payload.scheduledPickup,
        vendor=payload.vendor,
        actor_id=current["userId"],
    )
    return item_response(store, doc)


# -----------------------------
# Campaigns
# -----------------------------

class CampaignCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    type: CampaignType
    startDate: datetime
    endDate: datetime
    targetAudience: Optional[List[str]] = None
    maxParticipants: Optional[int] = Field(None, ge=1)
    rewards: Rewards = Field(default_factory=Rewards)


class CampaignStatusRequest(BaseModel):
    status: CampaignStatus


@app.post("/api/campaigns", status_code=201)
def create_campaign(payload: CampaignCreateRequest, admin: dict = Depends(require_admin),
                    store: Store = Depends(get_store)):
    doc = lifecycle.create_campaign(store, payload.model_dump(exclude_none=True), admin["userId"])
    return campaign_response(store, doc)


@app.get("/api/campaigns")
def list_campaigns(
    type_: Optional[CampaignType] = Query(None, alias="type"),
    status: Optional[CampaignStatus] = None,
    store: Store = Depends(get_store),
):
    filter_q = {}
    if type_:
        filter_q["type"] = type_
    if status:
        filter_q["status"] = status
    docs = store.find("campaign", filter_q, sort=[("startDate", 1)])
    return serialize_id(lifecycle.expand_campaigns(store, docs))


@app.get("/api/campaigns/stats/overview")
def campaign_stats(current: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    upcoming = store.find(
        "campaign",
        {"status": "upcoming", "startDate": {"$gte": utcnow()}},
        sort=[("startDate", 1)],
        limit=5,
    )
    upcoming = serialize_id([lifecycle.with_participant_count(c) for c in upcoming])
    return reports.campaign_overview(store.find("campaign"), upcoming)


@app.get("/api/campaigns/{campaign_id}")
def get_campaign(campaign_id: str, store: Store = Depends(get_store)):
    return campaign_response(store, lifecycle.get_campaign(store, campaign_id))


@app.post("/api/campaigns/{campaign_id}/join")
def join_campaign(campaign_id: str, current: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    doc = lifecycle.join_campaign(store, campaign_id, current["userId"])
    return {"message": "Successfully joined campaign", "campaign": campaign_response(store, doc)}


@app.post("/api/campaigns/{campaign_id}/leave")
def leave_campaign(campaign_id: str, current: dict = Depends(get_current_user), store: Store = Depends(get_store)):
    doc = lifecycle.leave_campaign(store, campaign_id, current["userId"])
    return {"message": "Successfully left campaign", "campaign": campaign_response(store, doc)}


@app.patch("/api/campaigns/{campaign_id}/status")
def set_campaign_status(campaign_id: str, payload: CampaignStatusRequest, admin: dict = Depends(require_admin),
                        store: Store = Depends(get_store)):
    doc = lifecycle.set_campaign_status(store, campaign_id, payload.status)
    return campaign_response(store, doc)


@app.post("/api/campaigns/{campaign_id}/award")
def award_campaign(campaign_id: str, admin: dict = Depends(require_admin), store: Store = Depends(get_store)):
    return lifecycle.award_campaign(store, campaign_id)


# -----------------------------
# Users
# -----------------------------

class GreenScoreRequest(BaseModel):
    greenScore: int = Field(..., ge=0)


def leaderboard_entry(doc: dict) -> dict:
    return {
        "id": doc["id"],
        "username": doc.get("username"),
        "department": doc.get("department"),
        "greenScore": doc.get("greenScore", 0),
        "totalContribution": doc.get("totalContribution", 0),
    }


@app.get("/api/users")
def list_users(admin: dict = Depends(require_admin), store: Store = Depends(get_store)):
    docs = store.find("user", sort=[("greenScore", -1)])
    return serialize_id([lifecycle.public_user(d) for d in docs])


@app.get("/api/users/leaderboard")
def leaderboard(limit: int = Query(20, ge=1, le=100), store: Store = Depends(get_store)):
    docs = store.find("user", sort=[("greenScore", -1)], limit=limit)
    return [leaderboard_entry(d) for d in docs]


@app.get("/api/users/leaderboard/department/{department}")
def department_leaderboard(department: str, limit: int = Query(10, ge=1, le=100),
                           store: Store = Depends(get_store)):
    docs = store.find("user", {"department": department}, sort=[("greenScore", -1)], limit=limit)
    return [leaderboard_entry(d) for d in docs]


@app.patch("/api/users/{user_id}/green-score")
def set_green_score(user_id: str, payload: GreenScoreRequest, admin: dict = Depends(require_admin),
                    store: Store = Depends(get_store)):
    doc = store.update("user", user_id, {"greenScore": payload.greenScore})
    if not doc:
        raise NotFound("User not found")
    logger.info("Admin %s set green score of %s to %d", admin["userId"], user_id, payload.greenScore)
    return serialize_id(lifecycle.public_user(doc))


@app.get("/api/users/stats")
def user_stats(admin: dict = Depends(require_admin), store: Store = Depends(get_store)):
    return reports.user_overview(store.find("user"))


# -----------------------------
# Reports
# -----------------------------

@app.get("/api/reports/compliance")
def compliance_report(
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    admin: dict = Depends(require_admin),
    store: Store = Depends(get_store),
):
    filter_q = {}
    if startDate and endDate:
        filter_q["createdAt"] = {"$gte": as_utc(startDate), "$lte": as_utc(endDate)}
    items = store.find("ewaste", filter_q)
    return serialize_id(reports.compliance_report(
        items,
        startDate.isoformat() if startDate else None,
        endDate.isoformat() if endDate else None,
    ))


@app.get("/api/reports/inventory-audit")
def inventory_audit(admin: dict = Depends(require_admin), store: Store = Depends(get_store)):
    items = store.find("ewaste")
    users = lifecycle.load_users(store, [i.get("reportedBy") for i in items])
    return reports.inventory_audit(items, users)


@app.get("/api/reports/traceability/{item_id}")
def traceability_report(item_id: str, admin: dict = Depends(require_admin), store: Store = Depends(get_store)):
    item = store.get("ewaste", item_id)
    if not item:
        raise NotFound("E-waste item not found")
    ids = [item.get("reportedBy"), item.get("vendor")] + [h.get("by") for h in item.get("statusHistory", [])]
    return serialize_id(reports.traceability_report(item, lifecycle.load_users(store, ids)))


@app.get("/api/reports/monthly-summary")
def monthly_summary(
    year: int = Query(..., ge=1970, le=3000),
    month: int = Query(..., ge=1, le=12),
    admin: dict = Depends(require_admin),
    store: Store = Depends(get_store),
):
    start, end = reports.month_bounds(year, month)
    items = store.find("ewaste", {"createdAt": {"$gte": start, "$lt": end}})
    return serialize_id(reports.monthly_summary(items, year, month))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
