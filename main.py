import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError, PyMongoError

import ledger
from auth import (
    create_access_token,
    get_current_user,
    get_optional_user,
    hash_password,
    require_role,
    verify_password,
)
from config import settings
from database import create_document, ensure_indexes, get_db, get_documents, now, oid, to_public
from ledger import present_startup, present_transaction
from schemas import FundingStage, PaymentMethod, Startup, Update, User, Visibility
from uploads import router as uploads_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Unique indexes back the username, email and one-startup-per-owner rules
    database = app.dependency_overrides.get(get_db, get_db)()
    try:
        ensure_indexes(database)
    except PyMongoError:
        logger.error("Could not create indexes, refusing to start", exc_info=True)
        raise
    yield


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(uploads_router, prefix="/api/upload", tags=["Uploads"])
app.mount("/uploads", StaticFiles(directory=str(settings.UPLOAD_DIR), check_dir=False), name="uploads")

# Helpers

WALLET_PATTERN = r"^0x[0-9a-fA-F]{40}$"
UPI_PATTERN = r"^[\w.\-]{2,}@[A-Za-z]{2,}$"


def auth_response(user_doc: Dict[str, Any]) -> Dict[str, Any]:
    return {"token": create_access_token(str(user_doc["_id"])), "user": to_public(user_doc)}


def owned_startup(db, user: Dict[str, Any]) -> Dict[str, Any]:
    startup = db["startup"].find_one({"owner_user_id": str(user["_id"])})
    if not startup:
        raise HTTPException(status_code=404, detail="Startup not found")
    return startup


def ensure_unique_identity(db, username: Optional[str], email: Optional[str], exclude_id=None):
    others = {"_id": {"$ne": exclude_id}} if exclude_id else {}
    if username and db["user"].find_one({"username": username, **others}):
        raise HTTPException(status_code=400, detail="Username already taken")
    if email and db["user"].find_one({"email": email, **others}):
        raise HTTPException(status_code=400, detail="Email already registered")


def insert_user(db, user: Dict[str, Any]) -> str:
    try:
        return create_document(db, "user", user)
    except DuplicateKeyError:
        # a concurrent request claimed the name first
        ensure_unique_identity(db, user["username"], user["email"])
        raise HTTPException(status_code=400, detail="Username or email already registered")


# Request models
class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: str = Field(..., pattern=r"^(startup|investor)$")

class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)

class ProfileUpdateRequest(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=30)
    email: Optional[EmailStr] = None

class WalletConnectRequest(BaseModel):
    wallet_address: str = Field(..., min_length=42, max_length=42, pattern=WALLET_PATTERN)

class UpiConnectRequest(BaseModel):
    upi_id: str = Field(..., pattern=UPI_PATTERN)

class StartupCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    pitch: str = Field(..., min_length=1)
    stage: FundingStage
    funding_goal: Decimal = Field(..., gt=0, le=ledger.MAX_AMOUNT)
    end_date: Optional[datetime] = None
    wallet_address: Optional[str] = Field(None, pattern=WALLET_PATTERN)
    upi_id: Optional[str] = Field(None, pattern=UPI_PATTERN)

class StartupUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    pitch: Optional[str] = Field(None, min_length=1)
    stage: Optional[FundingStage] = None
    funding_goal: Optional[Decimal] = Field(None, gt=0, le=ledger.MAX_AMOUNT)
    end_date: Optional[datetime] = None
    wallet_address: Optional[str] = Field(None, pattern=WALLET_PATTERN)
    upi_id: Optional[str] = Field(None, pattern=UPI_PATTERN)

class UpdateCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    visibility: Visibility = Visibility.all_investors

class TransactionCreateRequest(BaseModel):
    startup_id: str
    amount: Decimal = Field(..., gt=0, le=ledger.MAX_AMOUNT)
    method: PaymentMethod
    reference: Optional[str] = None

class VerifyRequest(BaseModel):
    status: str

class AdminBootstrapRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password: str = Field(..., min_length=6)


@app.get("/")
def read_root():
    return {"message": "Startup Crowdfunding API running"}


@app.get("/test")
def test_database(db=Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        response["database_name"] = db.name
        response["collections"] = db.list_collection_names()
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# Auth
@app.post("/api/register", status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db)):
    email = str(payload.email).lower()
    ensure_unique_identity(db, payload.username, email)
    user = User(
        username=payload.username,
        email=email,
        password_hash=hash_password(payload.password),
        role=payload.role,
    ).model_dump()
    user_id = insert_user(db, user)
    logger.info("Registered %s user %s", payload.role, user_id)
    return auth_response(db["user"].find_one({"_id": oid(user_id)}))


@app.post("/api/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    user_doc = db["user"].find_one({"email": str(payload.email).lower()})
    if not user_doc or not verify_password(payload.password, user_doc.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    return auth_response(user_doc)


@app.get("/api/user")
def current_user(user=Depends(get_current_user)):
    return to_public(user)


# User settings
@app.patch("/api/user/profile")
def update_profile(payload: ProfileUpdateRequest, user=Depends(get_current_user), db=Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "email" in changes:
        changes["email"] = str(changes["email"]).lower()
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    ensure_unique_identity(db, changes.get("username"), changes.get("email"), exclude_id=user["_id"])
    changes["updated_at"] = now()
    try:
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        ensure_unique_identity(db, changes.get("username"), changes.get("email"), exclude_id=user["_id"])
        raise HTTPException(status_code=400, detail="Username or email already registered")
    return to_public(db["user"].find_one({"_id": user["_id"]}))


@app.post("/api/wallet-connect")
def connect_wallet(payload: WalletConnectRequest, user=Depends(get_current_user), db=Depends(get_db)):
    update = {"wallet_address": payload.wallet_address, "updated_at": now()}
    db["user"].update_one({"_id": user["_id"]}, {"$set": update})
    if user.get("role") == "startup":
        db["startup"].update_one({"owner_user_id": str(user["_id"])}, {"$set": update})
    return to_public(db["user"].find_one({"_id": user["_id"]}))


@app.post("/api/upi-connect")
def connect_upi(payload: UpiConnectRequest, user=Depends(get_current_user), db=Depends(get_db)):
    update = {"upi_id": payload.upi_id, "updated_at": now()}
    db["user"].update_one({"_id": user["_id"]}, {"$set": update})
    if user.get("role") == "startup":
        db["startup"].update_one({"owner_user_id": str(user["_id"])}, {"$set": update})
    return to_public(db["user"].find_one({"_id": user["_id"]}))


# Startups
@app.get("/api/startups")
def list_startups(stage: Optional[FundingStage] = None, db=Depends(get_db)):
    q = {}
    if stage:
        q["stage"] = stage.value
    return [present_startup(s) for s in db["startup"].find(q).sort("_id", -1)]


@app.post("/api/startups", status_code=201)
def create_startup(payload: StartupCreateRequest, user=Depends(require_role("startup")), db=Depends(get_db)):
    owner_id = str(user["_id"])
    if db["startup"].find_one({"owner_user_id": owner_id}):
        raise HTTPException(status_code=400, detail="You already have a startup profile")
    startup = Startup(
        owner_user_id=owner_id,
        name=payload.name,
        description=payload.description,
        pitch=payload.pitch,
        stage=payload.stage,
        funding_goal_minor=ledger.to_minor(payload.funding_goal),
        wallet_address=payload.wallet_address or user.get("wallet_address"),
        upi_id=payload.upi_id or user.get("upi_id"),
        end_date=payload.end_date,
    ).model_dump()
    try:
        startup_id = create_document(db, "startup", startup)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="You already have a startup profile")
    logger.info("Startup %s created by user %s", startup_id, owner_id)
    return present_startup(db["startup"].find_one({"_id": oid(startup_id)}))


@app.get("/api/startups/user/me")
def my_startup(user=Depends(get_current_user), db=Depends(get_db)):
    return present_startup(owned_startup(db, user))


@app.get("/api/startups/{startup_id}")
def get_startup(startup_id: str, db=Depends(get_db)):
    return present_startup(ledger.get_startup_or_404(db, startup_id))


@app.patch("/api/startups/{startup_id}")
def update_startup(
    startup_id: str,
    payload: StartupUpdateRequest,
    user=Depends(require_role("startup")),
    db=Depends(get_db),
):
    startup = ledger.get_startup_or_404(db, startup_id)
    if startup.get("owner_user_id") != str(user["_id"]):
        raise HTTPException(status_code=403, detail="You can only edit your own startup")
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    if "funding_goal" in changes:
        changes["funding_goal_minor"] = ledger.to_minor(changes.pop("funding_goal"))
    if "stage" in changes:
        changes["stage"] = changes["stage"].value
    changes["updated_at"] = now()
    db["startup"].update_one({"_id": startup["_id"]}, {"$set": changes})
    return present_startup(db["startup"].find_one({"_id": startup["_id"]}))


@app.get("/api/startups/{startup_id}/documents")
def list_documents(startup_id: str, db=Depends(get_db)):
    ledger.get_startup_or_404(db, startup_id)
    return [to_public(d) for d in get_documents(db, "document", {"startup_id": startup_id})]


@app.get("/api/startups/{startup_id}/funds")
def startup_funds(startup_id: str, db=Depends(get_db)):
    return ledger.funds_summary(db, startup_id)


# Updates
@app.post("/api/updates", status_code=201)
def create_update(payload: UpdateCreateRequest, user=Depends(require_role("startup")), db=Depends(get_db)):
    startup = owned_startup(db, user)
    update = Update(
        startup_id=str(startup["_id"]),
        title=payload.title,
        content=payload.content,
        visibility=payload.visibility,
    ).model_dump()
    update_id = create_document(db, "update", update)
    return to_public(db["update"].find_one({"_id": oid(update_id)}))


@app.get("/api/updates/startup/{startup_id}")
def startup_updates(startup_id: str, user=Depends(get_optional_user), db=Depends(get_db)):
    startup = ledger.get_startup_or_404(db, startup_id)
    q: Dict[str, Any] = {"startup_id": startup_id}
    # only the owner sees updates addressed to major investors here
    if not user or startup.get("owner_user_id") != str(user["_id"]):
        q["visibility"] = Visibility.all_investors.value
    return [to_public(u) for u in get_documents(db, "update", q)]


@app.get("/api/updates/investor/me")
def investor_updates(user=Depends(require_role("investor")), db=Depends(get_db)):
    contributions = ledger.investor_contributions(db, str(user["_id"]))
    if not contributions:
        return []
    major_minor = ledger.to_minor(settings.MAJOR_INVESTOR_THRESHOLD)
    items: List[Dict[str, Any]] = []
    for u in db["update"].find({"startup_id": {"$in": list(contributions)}}).sort("created_at", -1):
        if u.get("visibility") == Visibility.major_investors.value and contributions[u["startup_id"]] < major_minor:
            continue
        items.append(to_public(u))
    return items


# Transactions
@app.post("/api/transactions", status_code=201)
def create_transaction(payload: TransactionCreateRequest, user=Depends(require_role("investor")), db=Depends(get_db)):
    tx = ledger.record_transaction(
        db,
        user,
        payload.startup_id,
        payload.amount,
        payload.method.value,
        payload.reference,
    )
    return present_transaction(tx)


@app.get("/api/transactions/investor/me")
def investor_transactions(user=Depends(require_role("investor")), db=Depends(get_db)):
    txs = db["transaction"].find({"investor_id": str(user["_id"])}).sort("created_at", -1)
    return [present_transaction(t) for t in txs]


@app.get("/api/transactions/startup/me")
def startup_transactions(user=Depends(require_role("startup")), db=Depends(get_db)):
    startup = owned_startup(db, user)
    txs = db["transaction"].find({"startup_id": str(startup["_id"])}).sort("created_at", -1)
    return [present_transaction(t) for t in txs]


@app.get("/api/transactions/{tx_id}")
def get_transaction(tx_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    tx = ledger.get_transaction_or_404(db, tx_id)
    user_id = str(user["_id"])
    if user.get("role") != "admin" and tx["investor_id"] != user_id:
        startup = db["startup"].find_one({"_id": oid(tx["startup_id"])})
        if not startup or startup.get("owner_user_id") != user_id:
            raise HTTPException(status_code=403, detail="Forbidden")
    return present_transaction(tx)


@app.patch("/api/transactions/{tx_id}/verify")
def verify_transaction(tx_id: str, payload: VerifyRequest, user=Depends(get_current_user), db=Depends(get_db)):
    return present_transaction(ledger.verify_transaction(db, user, tx_id, payload.status))


# Admin
@app.post("/api/admin/bootstrap", status_code=201)
def admin_bootstrap(payload: AdminBootstrapRequest, db=Depends(get_db)):
    # Only allowed while no admin exists yet.
    if db["user"].find_one({"role": "admin"}):
        raise HTTPException(status_code=403, detail="An admin already exists")
    email = str(payload.email).lower()
    ensure_unique_identity(db, payload.username, email)
    admin = User(
        username=payload.username,
        email=email,
        password_hash=hash_password(payload.password),
        role="admin",
    ).model_dump()
    uid = insert_user(db, admin)
    logger.info("Bootstrapped admin user %s", uid)
    return auth_response(db["user"].find_one({"_id": oid(uid)}))


@app.get("/api/admin/analytics")
def analytics(user=Depends(require_role("admin")), db=Depends(get_db)):
    total_funds = 0
    for s in db["startup"].find({}, {"funds_raised_minor": 1}):
        total_funds += int(s.get("funds_raised_minor", 0) or 0)
    return {
        "users": db["user"].count_documents({}),
        "startups": db["startup"].count_documents({}),
        "investors": db["user"].count_documents({"role": "investor"}),
        "transactions": db["transaction"].count_documents({}),
        "pending_transactions": db["transaction"].count_documents({"status": "pending"}),
        "total_funds": ledger.from_minor(total_funds),
    }


@app.post("/api/admin/sync-wallets")
def sync_wallets(user=Depends(require_role("admin")), db=Depends(get_db)):
    """Copy each startup owner's wallet and UPI id onto their startup profile."""
    synced = 0
    for owner in db["user"].find({"role": "startup"}):
        fields = {k: owner[k] for k in ("wallet_address", "upi_id") if owner.get(k)}
        if not fields:
            continue
        res = db["startup"].update_one({"owner_user_id": str(owner["_id"])}, {"$set": fields})
        synced += res.modified_count
    logger.info("Synced payment details for %d startup(s)", synced)
    return {"synced": synced}


@app.post("/api/admin/startups/{startup_id}/reconcile")
def reconcile_startup(startup_id: str, user=Depends(require_role("admin")), db=Depends(get_db)):
    return ledger.reconcile_startup(db, startup_id)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
