import logging
import os
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError
import jwt
from passlib.context import CryptContext

from database import db, create_document, paginate, ensure_indexes, now_utc, ERROR_STATUS
from schemas import (
    User, Product, UserRegister, UserLogin, UserUpdate, AdminUserUpdate, ProductCreate, ProductUpdate,
)
from ratelimit import MemoryRateLimitStore, MongoRateLimitStore

# Settings
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
IS_DEVELOPMENT = ENVIRONMENT == "development"
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", str(7 * 24 * 60)))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(15 * 60)))
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory")
TRUST_PROXY = os.getenv("TRUST_PROXY", "false").lower() in ("1", "true", "yes")
MAX_BODY_BYTES = int(os.getenv("MAX_BODY_BYTES", str(10 * 1024 * 1024)))

if IS_DEVELOPMENT:
    ALLOWED_ORIGINS = ["*"]
else:
    ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "").split(",") if o.strip()]

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("store_api")

# App setup
app = FastAPI(title="Store API", version="1.0.0")
app.state.rate_limiter = MemoryRateLimitStore(RATE_LIMIT_WINDOW_SECONDS, RATE_LIMIT_MAX_REQUESTS)

# Security/JWT setup
security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Cross-Origin-Resource-Policy": "same-origin",
}

# Public sort keys -> stored field
PRODUCT_SORT_FIELDS = {
    "name": "name",
    "price": "price",
    "stock": "stock",
    "category": "category",
    "brand": "brand",
    "rating": "ratings.average",
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "updated_at": "updated_at",
}


# Utilities
def parse_object_id(value: str) -> Optional[ObjectId]:
    return ObjectId(value) if ObjectId.is_valid(value) else None


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


def public_user(user: dict) -> dict:
    data = serialize_doc(user)
    data.pop("hashed_password", None)
    return data


def load_owners(products: List[dict]) -> Dict[str, dict]:
    ids = {parse_object_id(p.get("created_by") or "") for p in products}
    ids.discard(None)
    if not ids:
        return {}
    cursor = db["user"].find({"_id": {"$in": list(ids)}}, {"name": 1, "email": 1})
    return {str(u["_id"]): {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")} for u in cursor}


def serialize_product(doc: dict, owners: Dict[str, dict]) -> dict:
    data = serialize_doc(doc)
    stock = data.get("stock", 0)
    price = data.get("price", 0.0)
    data["in_stock"] = stock > 0
    # 10% off while stock is high
    data["discounted_price"] = round(price * 0.9, 2) if stock > 50 else price
    owner_id = data.get("created_by")
    data["created_by"] = owners.get(owner_id, {"id": owner_id})
    return data


def serialize_products(docs: List[dict]) -> List[dict]:
    owners = load_owners(docs)
    return [serialize_product(d, owners) for d in docs]


def client_address(request: Request) -> str:
    if TRUST_PROXY:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # only the hop appended by our own proxy can be trusted
            return forwarded.split(",")[-1].strip()
    return request.client.host if request.client else "unknown"


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    content = {"success": False, "message": message}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    issued = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "role": user.get("role", "user"),
        "iat": issued,
        "exp": issued + timedelta(minutes=JWT_EXPIRES_MIN),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Not authorized, invalid token")


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authorized, no token", headers={"WWW-Authenticate": "Bearer"})
    payload = decode_token(credentials.credentials)
    uid = parse_object_id(str(payload.get("sub", "")))
    user = db["user"].find_one({"_id": uid}) if uid else None
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Not authorized, user not found")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return user


# Middleware (last registered runs first)
@app.middleware("http")
async def log_requests(request: Request, call_next):
    if not IS_DEVELOPMENT:
        return await call_next(request)
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - started) * 1000
    logger.info(
        "%s %s - IP: %s - %s (%.1fms)",
        request.method, request.url.path, client_address(request), response.status_code, elapsed,
    )
    return response


@app.middleware("http")
async def rate_limit(request: Request, call_next):
    key = client_address(request)
    allowed, retry_after = await run_in_threadpool(request.app.state.rate_limiter.hit, key, time.time())
    if not allowed:
        logger.warning("Rate limit exceeded for %s", key)
        response = error_response(
            429, "Too many requests, please try again later.", retry_after=retry_after,
        )
        response.headers["Retry-After"] = str(retry_after)
        return response
    return await call_next(request)


@app.middleware("http")
async def limit_body_size(request: Request, call_next):
    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > MAX_BODY_BYTES:
        return error_response(413, "Request body too large")
    return await call_next(request)


@app.middleware("http")
async def catch_unexpected_errors(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception as exc:
        return unexpected_error_response(request, exc)


app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


# Error handling
def format_validation_error(err: dict) -> str:
    loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
    msg = err.get("msg", "Invalid value").removeprefix("Value error, ")
    return f"{'.'.join(loc)}: {msg}" if loc else msg


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail
    if exc.status_code == 404 and exc.detail == "Not Found":
        message = f"Route {request.method} {request.url.path} not found"
    response = error_response(exc.status_code, message)
    if getattr(exc, "headers", None):
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(400, "Invalid data", errors=[format_validation_error(e) for e in exc.errors()])


@app.exception_handler(PyMongoError)
async def database_exception_handler(request: Request, exc: PyMongoError):
    status_code, message = ERROR_STATUS.get(getattr(exc, "code", None), (500, "Internal server error"))
    if status_code == 500:
        logger.exception("Database error on %s %s", request.method, request.url.path)
        if IS_DEVELOPMENT:
            return error_response(status_code, message, error=str(exc))
    return error_response(status_code, message)


def unexpected_error_response(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    if IS_DEVELOPMENT:
        return error_response(500, "Internal server error", error=str(exc))
    return error_response(500, "Internal server error")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    return unexpected_error_response(request, exc)


@app.on_event("startup")
def startup():
    logger.info("Starting Store API (%s)", ENVIRONMENT)
    if db is None:
        logger.critical("Database not configured: set DATABASE_URL and DATABASE_NAME")
        raise RuntimeError("Database not configured")
    try:
        db.list_collection_names()
        ensure_indexes()
    except PyMongoError as e:
        logger.critical("Could not connect to MongoDB: %s", e)
        raise
    if RATE_LIMIT_BACKEND == "mongo":
        app.state.rate_limiter = MongoRateLimitStore(
            db["ratelimit"], RATE_LIMIT_WINDOW_SECONDS, RATE_LIMIT_MAX_REQUESTS,
        )
    logger.info("Connected to database %s", db.name)


# Health and helpers
@app.get("/")
def root():
    return {
        "success": True,
        "message": "Store API running",
        "version": app.version,
        "endpoints": {"health": "/health", "users": "/api/users", "products": "/api/products"},
    }


@app.get("/health")
def health():
    database = "connected"
    try:
        db.list_collection_names()
    except Exception as e:
        database = f"error: {str(e)[:80]}"
    return {
        "success": True,
        "message": "API is running",
        "timestamp": now_utc().isoformat(),
        "environment": ENVIRONMENT,
        "database": database,
    }


# Users
def user_id_or_400(user_id: str) -> ObjectId:
    oid = parse_object_id(user_id)
    if oid is None:
        raise HTTPException(status_code=400, detail="Invalid user id")
    return oid


def ensure_self_or_admin(current_user: dict, oid: ObjectId) -> None:
    if current_user["_id"] != oid and current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Not authorized to access this user")


def apply_user_update(user: dict, changes: Dict[str, Any]) -> dict:
    """Persist a validated subset of user fields and return the fresh record."""
    users = db["user"]
    if "email" in changes and changes["email"] != user.get("email"):
        if users.find_one({"email": changes["email"], "_id": {"$ne": user["_id"]}}):
            raise HTTPException(status_code=409, detail="Email already in use")
    if "password" in changes:
        changes["hashed_password"] = hash_password(changes.pop("password"))
    changes["updated_at"] = now_utc()
    try:
        users.update_one({"_id": user["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email already in use")
    return users.find_one({"_id": user["_id"]})


@app.post("/api/users/register", status_code=201)
@app.post("/api/users", status_code=201)
def register(payload: UserRegister):
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(status_code=409, detail="User already exists with this email")
    record = User(name=payload.name, email=payload.email, hashed_password=hash_password(payload.password))
    try:
        user_id = create_document("user", record)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="User already exists with this email")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    logger.info("Registered user %s", user_id)
    return {
        "success": True,
        "message": "User created successfully",
        "data": {"user": public_user(user), "token": create_token(user)},
    }


@app.post("/api/users/login")
def login(payload: UserLogin):
    user = db["user"].find_one({"email": payload.email})
    if not user or not user.get("is_active", True) or not verify_password(payload.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    stamp = now_utc()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": stamp, "updated_at": stamp}})
    user.update({"last_login": stamp, "updated_at": stamp})
    return {
        "success": True,
        "message": "Login successful",
        "data": {"user": public_user(user), "token": create_token(user)},
    }


@app.get("/api/users/profile")
def get_profile(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": public_user(current_user)}


@app.put("/api/users/profile")
def update_profile(payload: UserUpdate, current_user: dict = Depends(get_current_user)):
    user = apply_user_update(current_user, payload.model_dump(exclude_none=True))
    return {"success": True, "message": "Profile updated successfully", "data": public_user(user)}


@app.get("/api/users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin: dict = Depends(require_admin),
):
    users, pagination = paginate(
        "user", {"is_active": True}, [("created_at", DESCENDING), ("_id", DESCENDING)],
        page, limit, projection={"hashed_password": 0},
    )
    return {"success": True, "data": [public_user(u) for u in users], "pagination": pagination}


@app.get("/api/users/{user_id}")
def get_user(user_id: str, current_user: dict = Depends(get_current_user)):
    oid = user_id_or_400(user_id)
    ensure_self_or_admin(current_user, oid)
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "data": public_user(user)}


@app.put("/api/users/{user_id}")
def update_user(user_id: str, payload: AdminUserUpdate, current_user: dict = Depends(get_current_user)):
    oid = user_id_or_400(user_id)
    ensure_self_or_admin(current_user, oid)
    changes = payload.model_dump(exclude_none=True)
    if current_user.get("role") != "admin" and ("role" in changes or "is_active" in changes):
        raise HTTPException(status_code=403, detail="Only admins can change role or status")
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    user = apply_user_update(user, changes)
    return {"success": True, "message": "User updated successfully", "data": public_user(user)}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, admin: dict = Depends(require_admin)):
    oid = user_id_or_400(user_id)
    result = db["user"].delete_one({"_id": oid})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("User %s deleted by %s", user_id, admin["_id"])
    return {"success": True, "message": "User deleted successfully"}


# Products
def product_sort(sort_by: Optional[str], sort_order: str) -> List[tuple]:
    if not sort_by:
        return [("created_at", DESCENDING), ("_id", DESCENDING)]
    field = PRODUCT_SORT_FIELDS.get(sort_by)
    if field is None:
        allowed = ", ".join(sorted(PRODUCT_SORT_FIELDS))
        raise HTTPException(status_code=400, detail=f"Cannot sort by '{sort_by}'. Allowed fields: {allowed}")
    direction = ASCENDING if sort_order == "asc" else DESCENDING
    return [(field, direction), ("_id", direction)]


def find_active_product(product_id: str) -> dict:
    oid = parse_object_id(product_id)
    product = db["product"].find_one({"_id": oid, "is_active": True}) if oid else None
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def ensure_can_modify(product: dict, user: dict, action: str) -> None:
    if product.get("created_by") != str(user["_id"]) and user.get("role") != "admin":
        raise HTTPException(status_code=403, detail=f"Not authorized to {action} this product")


@app.get("/api/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[float] = Query(None, alias="maxPrice", ge=0),
    search: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
):
    filt: Dict[str, Any] = {"is_active": True}
    if category:
        filt["category"] = category.lower()
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    if search:
        pattern = re.escape(search)
        filt["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]

    products, pagination = paginate("product", filt, product_sort(sort_by, sort_order), page, limit)
    return {"success": True, "data": serialize_products(products), "pagination": pagination}


@app.get("/api/products/category/{category}")
def list_products_by_category(
    category: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    filt = {"category": category.lower(), "is_active": True}
    products, pagination = paginate("product", filt, [("created_at", DESCENDING), ("_id", DESCENDING)], page, limit)
    return {"success": True, "data": serialize_products(products), "pagination": pagination}


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    product = find_active_product(product_id)
    return {"success": True, "data": serialize_products([product])[0]}


@app.post("/api/products", status_code=201)
def create_product(payload: ProductCreate, user: dict = Depends(get_current_user)):
    record = Product(**payload.model_dump(mode="json"), created_by=str(user["_id"]))
    product_id = create_document("product", record)
    product = db["product"].find_one({"_id": ObjectId(product_id)})
    logger.info("Product %s created by %s", product_id, user["_id"])
    return {"success": True, "message": "Product created successfully", "data": serialize_products([product])[0]}


@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, user: dict = Depends(get_current_user)):
    product = find_active_product(product_id)
    ensure_can_modify(product, user, "update")
    changes = payload.model_dump(mode="json", exclude_none=True)
    changes["updated_at"] = now_utc()
    db["product"].update_one({"_id": product["_id"]}, {"$set": changes})
    product = db["product"].find_one({"_id": product["_id"]})
    return {"success": True, "message": "Product updated successfully", "data": serialize_products([product])[0]}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user: dict = Depends(get_current_user)):
    product = find_active_product(product_id)
    ensure_can_modify(product, user, "delete")
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"is_active": False, "updated_at": now_utc()}})
    logger.info("Product %s deactivated by %s", product_id, user["_id"])
    return {"success": True, "message": "Product deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
