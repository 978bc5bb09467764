import logging
import os
import re
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import TypeAdapter, ValidationError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from database import (
    BRANCHES,
    CATEGORIES,
    SALES,
    SETTINGS,
    StorageUnavailable,
    create_document,
    get_db,
    mask_uri,
    oid,
    to_str_id,
    to_utc_naive,
    update_document,
    utcnow,
)
from rendering import Representation, negotiate, render_settings
from schemas import (
    SETTINGS_DEFAULTS,
    SETTINGS_ID,
    BranchIn,
    BranchOut,
    BranchUpdate,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    SaleIn,
    SaleOut,
    SettingsOut,
    SettingsUpdate,
    changes,
)
from seed import seed_default_data

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
PORT = int(os.getenv("PORT", 4000))
CLIENT_DIR = Path(os.getenv("CLIENT_DIR", Path(__file__).resolve().parent / "public"))
MAX_BODY_BYTES = 1024 * 1024
STARTED_AT = time.monotonic()

DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_datetime = TypeAdapter(datetime)


# -----------------------------
# Startup
# -----------------------------

def log_connection_failure(exc: Exception) -> None:
    logger.error("MongoDB connection failed: %s", exc)
    logger.error("Check the MONGODB_URI environment variable")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting branch sales server (environment=%s, port=%s)", ENVIRONMENT, PORT)
    logger.info("MongoDB URI: %s", mask_uri(database.MONGO_URI))
    if database.connection_state() == "connected":
        db = database.db
    else:
        try:
            db = await run_in_threadpool(database.connect)
        except StorageUnavailable as e:
            log_connection_failure(e)
            raise
    try:
        await run_in_threadpool(seed_default_data, db)
    except PyMongoError:
        logger.exception("Seeding failed")
    logger.info("All systems ready, API endpoints active under /api")
    yield
    database.disconnect()


app = FastAPI(title="Branch Sales API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def access_log(request: Request, call_next):
    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > MAX_BODY_BYTES:
        return JSONResponse(status_code=413, content={"error": "Request body too large"})
    start = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - start) * 1000
    logger.info("%s %s %d %.1fms", request.method, request.url.path, response.status_code, elapsed)
    return response


# -----------------------------
# Error mapping
# -----------------------------

@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg"))
    return JSONResponse(status_code=400, content={"error": "; ".join(parts) or "Invalid request"})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=400, content={"error": "Duplicate value: a record with this name already exists"})


@app.exception_handler(PyMongoError)
async def storage_error(request: Request, exc: PyMongoError):
    logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


# -----------------------------
# Helpers
# -----------------------------

def parse_bound(value: str, name: str, end_of_day: bool = False) -> tuple:
    """Parse a date filter into (operator, naive UTC datetime). A bare `to` date covers the whole day."""
    try:
        parsed = to_utc_naive(_datetime.validate_python(value))
    except ValidationError:
        raise HTTPException(status_code=400, detail=f"Invalid '{name}' date: {value}")
    if end_of_day and DATE_ONLY.match(value):
        return "$lt", parsed + timedelta(days=1)
    return ("$lte" if end_of_day else "$gte"), parsed


def require_oid(value: str, label: str):
    _id = oid(value)
    if not _id:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return _id


# -----------------------------
# Health
# -----------------------------

@app.get("/api/health")
def health():
    state = database.connection_state()
    data = {
        "ok": True,
        "environment": ENVIRONMENT,
        "port": PORT,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "mongodb": {"connected": state == "connected", "state": state},
        "uptime": round(time.monotonic() - STARTED_AT, 3),
    }
    logger.debug("Health check: %s", data)
    return data


# -----------------------------
# Settings (singleton)
# -----------------------------

@app.get("/api/settings", response_model=SettingsOut)
def get_settings(request: Request, db: Database = Depends(get_db)):
    now = utcnow()
    doc = db[SETTINGS].find_one_and_update(
        {"_id": SETTINGS_ID},
        {"$setOnInsert": {**SETTINGS_DEFAULTS, "createdAt": now, "updatedAt": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    rep = negotiate(request.headers.get("accept"), [Representation.JSON, Representation.HTML])
    if rep is Representation.HTML:
        return HTMLResponse(render_settings(doc))
    return SettingsOut(**to_str_id(doc))


@app.put("/api/settings", response_model=SettingsOut)
def update_settings(payload: SettingsUpdate, db: Database = Depends(get_db)):
    to_set, on_insert = payload.merge()
    now = utcnow()
    doc = db[SETTINGS].find_one_and_update(
        {"_id": SETTINGS_ID},
        {"$set": {**to_set, "updatedAt": now}, "$setOnInsert": {**on_insert, "createdAt": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Settings updated: %s", sorted(to_set))
    return SettingsOut(**to_str_id(doc))


# -----------------------------
# Branches
# -----------------------------

@app.get("/api/branches", response_model=List[BranchOut])
def list_branches(db: Database = Depends(get_db)):
    docs = list(db[BRANCHES].find({}).sort("createdAt", -1))
    logger.info("Found %d branches", len(docs))
    return [BranchOut(**to_str_id(d)) for d in docs]


@app.post("/api/branches", response_model=BranchOut, status_code=201)
def create_branch(payload: BranchIn, db: Database = Depends(get_db)):
    doc = create_document(db, BRANCHES, payload.model_dump())
    logger.info("Branch created: %s", doc["_id"])
    return BranchOut(**to_str_id(doc))


@app.put("/api/branches/{branch_id}", response_model=BranchOut)
def update_branch(branch_id: str, payload: BranchUpdate, db: Database = Depends(get_db)):
    _id = require_oid(branch_id, "Branch")
    upd = update_document(db, BRANCHES, _id, changes(payload))
    if not upd:
        raise HTTPException(status_code=404, detail="Branch not found")
    return BranchOut(**to_str_id(upd))


@app.delete("/api/branches/{branch_id}")
def delete_branch(branch_id: str, db: Database = Depends(get_db)):
    _id = require_oid(branch_id, "Branch")
    db[BRANCHES].delete_one({"_id": _id})
    # Not transactional: the branch stays deleted even if its sales cannot be removed.
    try:
        res = db[SALES].delete_many({"branchId": _id})
    except PyMongoError as e:
        logger.error("Branch %s deleted but removing its sales failed: %s", branch_id, e)
        raise HTTPException(status_code=500, detail=f"Branch deleted but removing its sales failed: {e}")
    logger.info("Branch %s deleted with %d sales", branch_id, res.deleted_count)
    return {"ok": True}


# -----------------------------
# Categories
# -----------------------------

@app.get("/api/categories", response_model=List[CategoryOut])
def list_categories(db: Database = Depends(get_db)):
    docs = list(db[CATEGORIES].find({}).sort("createdAt", -1))
    logger.info("Found %d categories", len(docs))
    return [CategoryOut(**to_str_id(d)) for d in docs]


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(payload: CategoryIn, db: Database = Depends(get_db)):
    if db[CATEGORIES].find_one({"name": payload.name}):
        raise HTTPException(status_code=400, detail="Category already exists")
    doc = create_document(db, CATEGORIES, payload.model_dump())
    logger.info("Category created: %s", doc["_id"])
    return CategoryOut(**to_str_id(doc))


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(category_id: str, payload: CategoryUpdate, db: Database = Depends(get_db)):
    _id = require_oid(category_id, "Category")
    data = changes(payload)
    if "name" in data and db[CATEGORIES].find_one({"name": data["name"], "_id": {"$ne": _id}}):
        raise HTTPException(status_code=400, detail="Category already exists")
    upd = update_document(db, CATEGORIES, _id, data)
    if not upd:
        raise HTTPException(status_code=404, detail="Category not found")
    return CategoryOut(**to_str_id(upd))


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, db: Database = Depends(get_db)):
    _id = require_oid(category_id, "Category")
    db[CATEGORIES].delete_one({"_id": _id})
    return {"ok": True}


# -----------------------------
# Sales
# -----------------------------

@app.get("/api/sales", response_model=List[SaleOut])
def list_sales(
    branchId: Optional[str] = None,
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    db: Database = Depends(get_db),
):
    filt = {}
    if branchId:
        _id = oid(branchId)
        if not _id:
            raise HTTPException(status_code=400, detail=f"Invalid branchId: {branchId}")
        filt["branchId"] = _id
    if date_from or date_to:
        filt["date"] = {}
        if date_from:
            op, value = parse_bound(date_from, "from")
            filt["date"][op] = value
        if date_to:
            op, value = parse_bound(date_to, "to", end_of_day=True)
            filt["date"][op] = value

    docs = list(db[SALES].find(filt).sort("date", -1))

    # Resolve branch names for the response only; nothing is written back.
    ids = list({d["branchId"] for d in docs if d.get("branchId")})
    names = {}
    if ids:
        for b in db[BRANCHES].find({"_id": {"$in": ids}}, {"name": 1}):
            names[b["_id"]] = b.get("name")
    for d in docs:
        ref = d.get("branchId")
        d["branchId"] = {"_id": ref, "name": names[ref]} if ref in names else None

    logger.info("Found %d sales records", len(docs))
    return [SaleOut(**to_str_id(d)) for d in docs]


@app.post("/api/sales", response_model=SaleOut, status_code=201)
def create_sale(payload: SaleIn, db: Database = Depends(get_db)):
    branch_id = oid(payload.branchId)
    if not branch_id or not db[BRANCHES].find_one({"_id": branch_id}, {"_id": 1}):
        raise HTTPException(status_code=400, detail=f"Branch {payload.branchId} does not exist")
    data = payload.model_dump(exclude_unset=True)
    data["branchId"] = branch_id
    doc = create_document(db, SALES, data)
    logger.info("Sale created: %s", doc["_id"])
    return SaleOut(**to_str_id(doc))


# -----------------------------
# Fallbacks
# -----------------------------

@app.api_route("/api/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
def api_not_found(request: Request):
    return JSONResponse(status_code=404, content={"error": "API endpoint not found", "path": request.url.path})


def mount_client(app: FastAPI, directory: Path) -> bool:
    """Serve the front end from `directory`. Must be called after every API route is declared."""
    if not directory.is_dir():
        logger.warning("Client directory %s not found, static files disabled", directory)
        return False
    app.mount("/", StaticFiles(directory=str(directory), html=True), name="client")
    logger.info("Serving static files from %s", directory)
    return True


mount_client(app, CLIENT_DIR)


def serve() -> None:
    """Entry point: verify storage first so an unreachable MongoDB exits with status 1."""
    import uvicorn

    try:
        database.connect()
    except StorageUnavailable as e:
        log_connection_failure(e)
        sys.exit(1)
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=PORT)


if __name__ == "__main__":
    serve()
