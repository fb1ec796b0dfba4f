import asyncio
import hashlib
import logging
import math
import os
import re
import secrets
import time
import traceback
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pymongo import TEXT
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import orders
from database import create_document, parse_object_id, serialize_doc
from mailer import EmailDeliveryError, EmailJSMailer
from otp import SWEEP_INTERVAL_SECONDS, OtpError, OtpStore
from products import (
    FEATURED_LIMIT,
    LISTING_PROJECTION,
    build_product_query,
    has_text_index,
    product_payload,
    rating_summary,
)
from ratelimit import FixedWindowLimiter
from schemas import (
    Category,
    OrderStatus,
    Parameter,
    ParameterType,
    PaymentMethod,
    PaymentResult,
    Product,
    ProductImage,
    Review,
    Role,
    SelectedParameter,
    ShippingAddress,
    User,
    UserAddress,
    utcnow,
)
from users import build_user_query, order_summary, user_payload, user_stats

# Environment / Auth settings
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
RESET_TOKEN_TTL_SECONDS = 60 * 60

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)

send_otp_limiter = FixedWindowLimiter(5, 60 * 60, "Too many OTP requests. Please try again later.")
verify_otp_limiter = FixedWindowLimiter(10, 15 * 60, "Too many OTP verification attempts. Please try again later.")
login_limiter = FixedWindowLimiter(5, 15 * 60, "Too many login attempts. Please try again later.")

mailer = EmailJSMailer()


def ensure_indexes():
    if database.db is None:
        return
    try:
        database.db["product"].create_index([("name", TEXT), ("description", TEXT)])
        database.db["product"].create_index("sku", unique=True)
        database.db["user"].create_index("email", unique=True)
        database.db["order"].create_index("user_id")
        database.db["order"].create_index("order_status")
        database.db["order"].create_index([("created_at", -1)])
        database.db["category"].create_index("name", unique=True)
        database.db["parameter"].create_index("name")
    except PyMongoError as exc:
        logger.warning("Unable to ensure indexes: %s", exc)


async def sweep_expired_otps(store: OtpStore, interval: float = SWEEP_INTERVAL_SECONDS):
    while True:
        await asyncio.sleep(interval)
        try:
            store.sweep()
        except Exception:
            logger.exception("OTP sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes()
    sweeper = asyncio.create_task(sweep_expired_otps(app.state.otp_store, SWEEP_INTERVAL_SECONDS))
    yield
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper


app = FastAPI(title="Storefront API", lifespan=lifespan)
app.state.otp_store = OtpStore()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error responses
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(orders.OrderError)
async def order_exception_handler(request: Request, exc: orders.OrderError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(OtpError)
async def otp_exception_handler(request: Request, exc: OtpError):
    return JSONResponse(status_code=400, content={"message": exc.message})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"message": "Internal server error"}
    if ENVIRONMENT != "production":
        content["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=500, content=content)


# Utility functions
def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def pagination(page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total": total,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


# Dependencies
def get_db():
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return database.db


def get_otp_store(request: Request) -> OtpStore:
    return request.app.state.otp_store


def get_mailer():
    return mailer


def _user_from_token(token: str, db):
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    user_id = payload.get("sub")
    oid = parse_object_id(user_id)
    if oid is None:
        return None
    return db["user"].find_one({"_id": oid})


def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        user = _user_from_token(token, db)
    except JWTError:
        raise credentials_exception

    if not user:
        raise credentials_exception
    return user


def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme), db=Depends(get_db)):
    if not token:
        return None
    try:
        return _user_from_token(token, db)
    except JWTError:
        return None


# Admin guard
def require_admin(user=Depends(get_current_user)):
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Not authorized as admin")
    return user


def is_admin(user) -> bool:
    return bool(user) and user.get("role") == "admin"


# Routes
@app.get("/")
def root():
    return {"message": "Storefront API is running"}


@app.get("/api/health")
def health():
    return {"status": "OK", "message": "Server is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"

    return response


# Auth models
class EmailIn(BaseModel):
    email: EmailStr


class VerifyOtpIn(BaseModel):
    email: EmailStr
    otp: str = Field(..., min_length=1)


class RegisterIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=50, pattern=r"^[a-zA-Z\s]+$")
    email: EmailStr
    password: str = Field(..., min_length=8)
    confirm_password: Optional[str] = None

    @field_validator("password")
    @classmethod
    def password_strength(cls, value):
        if not (re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)):
            raise ValueError("Password must contain at least one uppercase letter, one lowercase letter, and one number")
        return value

    @model_validator(mode="after")
    def passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match")
        return self


class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9 ()-]{7,20}$")
    address: Optional[UserAddress] = None


class ChangePasswordIn(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class ResetPasswordIn(BaseModel):
    email: EmailStr
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


# Auth endpoints
@app.post("/api/auth/send-otp", dependencies=[Depends(send_otp_limiter)])
def send_otp(payload: EmailIn, db=Depends(get_db), store: OtpStore = Depends(get_otp_store),
             mail=Depends(get_mailer)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="User already exists with this email")

    code = store.issue(email)
    try:
        mail.send("otp", {"email": email, "passcode": code})
    except EmailDeliveryError as exc:
        logger.error("OTP dispatch failed for %s: %s", email, exc)
        raise
    return {"message": "OTP sent to email."}


@app.post("/api/auth/verify-otp", dependencies=[Depends(verify_otp_limiter)])
def verify_otp(payload: VerifyOtpIn, store: OtpStore = Depends(get_otp_store)):
    store.verify(payload.email.lower(), payload.otp.strip())
    return {"message": "Email verified"}


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterIn, db=Depends(get_db), store: OtpStore = Depends(get_otp_store)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="User already exists with this email")
    if not store.consume_verified(email):
        raise HTTPException(
            status_code=400,
            detail="Please verify your email before registering. Check your email for the OTP and verify before registering.",
        )

    user = User(
        name=payload.name.strip(),
        email=email,
        password_hash=get_password_hash(payload.password),
        is_email_verified=True,
        last_login=utcnow(),
    )
    user_id = create_document("user", user)
    logger.info("Registered user %s", user_id)
    return {
        "message": "User registered successfully",
        "token": create_access_token({"sub": user_id}),
        "user": {"id": user_id, "name": user.name, "email": user.email, "role": user.role},
    }


@app.post("/api/auth/login", dependencies=[Depends(login_limiter)])
def login(payload: LoginIn, db=Depends(get_db)):
    email = payload.email.lower()
    user = db["user"].find_one({"email": email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        logger.warning("Login failed for %s", email)
        raise HTTPException(status_code=401, detail="Invalid email or password")

    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": utcnow()}})
    access_token = create_access_token({"sub": str(user["_id"])})
    return {
        "message": "Login successful",
        "access_token": access_token,
        "token_type": "bearer",
        "user": user_payload(user),
    }


@app.get("/api/auth/profile")
def get_profile(user=Depends(get_current_user)):
    return {"user": user_payload(user)}


@app.put("/api/auth/profile")
def update_profile(payload: ProfileUpdateIn, user=Depends(get_current_user), db=Depends(get_db)):
    update = {}
    if payload.name:
        update["name"] = payload.name.strip()
    if payload.phone:
        update["phone"] = payload.phone
    if payload.address is not None:
        current = user.get("address") or {}
        update["address"] = {**current, **payload.address.model_dump(exclude_unset=True)}
    update["updated_at"] = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": update})
    return {
        "message": "Profile updated successfully",
        "user": user_payload(db["user"].find_one({"_id": user["_id"]})),
    }


@app.put("/api/auth/change-password")
def change_password(payload: ChangePasswordIn, user=Depends(get_current_user), db=Depends(get_db)):
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": get_password_hash(payload.new_password), "updated_at": utcnow()}},
    )
    return {"message": "Password changed successfully"}


@app.get("/api/auth/verify")
def verify_token(user=Depends(get_current_user)):
    return {
        "valid": True,
        "user": {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email"),
                 "role": user.get("role")},
    }


@app.post("/api/auth/forgot-password")
def forgot_password(payload: EmailIn, db=Depends(get_db), mail=Depends(get_mailer)):
    email = payload.email.lower()
    reply = {"message": "If an account with that email exists, a reset link has been sent."}

    user = db["user"].find_one({"email": email})
    if not user:
        return reply

    reset_token = secrets.token_hex(32)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "reset_password_token": hash_token(reset_token),
            "reset_password_expires": time.time() + RESET_TOKEN_TTL_SECONDS,
        }},
    )
    link = f"{FRONTEND_URL}/reset-password?token={reset_token}&email={quote(email)}"
    try:
        mail.send("link", {"email": email, "link": link})
    except EmailDeliveryError as exc:
        logger.error("Password reset email failed for %s: %s", email, exc)
        raise
    return reply


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordIn, db=Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not user.get("reset_password_token") or not user.get("reset_password_expires"):
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")
    if user["reset_password_expires"] < time.time():
        raise HTTPException(status_code=400, detail="Reset token has expired")
    if not secrets.compare_digest(hash_token(payload.token), user["reset_password_token"]):
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")

    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password_hash": get_password_hash(payload.new_password), "updated_at": utcnow()},
            "$unset": {"reset_password_token": "", "reset_password_expires": ""},
        },
    )
    return {"message": "Password has been reset successfully"}


# Product models
class ProductIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., max_length=2000)
    price: float = Field(..., ge=0)
    original_price: float = 0
    discount: float = Field(0, ge=0, le=100)
    category: str
    subcategory: str = ""
    brand: str = ""
    sku: str
    images: List[ProductImage] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    low_stock_threshold: int = 10
    tags: List[str] = Field(default_factory=list)
    is_active: bool = True
    is_featured: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = None
    discount: Optional[float] = Field(None, ge=0, le=100)
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    images: Optional[List[dict]] = None
    stock: Optional[int] = Field(None, ge=0)
    low_stock_threshold: Optional[int] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=10, max_length=500)

    @field_validator("comment", mode="before")
    @classmethod
    def strip_comment(cls, value):
        return value.strip() if isinstance(value, str) else value


# Product endpoints
@app.get("/api/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    search: Optional[str] = None,
    brand: Optional[str] = None,
    min_rating: Optional[float] = None,
    sort_by: Optional[str] = None,
    user=Depends(get_optional_user),
    db=Depends(get_db),
):
    filt, (sort_field, direction) = build_product_query(
        category=category,
        min_price=min_price,
        max_price=max_price,
        search=search,
        brand=brand,
        min_rating=min_rating,
        sort_by=sort_by,
        include_inactive=is_admin(user),
        text_search=bool(search) and has_text_index(db["product"]),
    )
    cursor = (db["product"].find(filt, LISTING_PROJECTION)
              .sort(sort_field, direction).skip((page - 1) * limit).limit(limit))
    items = [product_payload(doc) for doc in cursor]
    total = db["product"].count_documents(filt)
    return {"products": items, "pagination": pagination(page, limit, total)}


@app.get("/api/products/featured/list")
def featured_products(db=Depends(get_db)):
    cursor = (db["product"].find({"is_featured": True, "is_active": True}, LISTING_PROJECTION)
              .sort("created_at", -1).limit(FEATURED_LIMIT))
    return [product_payload(doc) for doc in cursor]


@app.get("/api/products/category/{category}")
def products_by_category(category: str, db=Depends(get_db)):
    cursor = db["product"].find({"category": category, "is_active": True}, LISTING_PROJECTION).sort("created_at", -1)
    return [product_payload(doc) for doc in cursor]


@app.get("/api/products/{product_id}")
def get_product(product_id: str, user=Depends(get_optional_user), db=Depends(get_db)):
    oid = parse_object_id(product_id)
    doc = db["product"].find_one({"_id": oid}) if oid else None
    if not doc or (not doc.get("is_active", True) and not is_admin(user)):
        raise HTTPException(status_code=404, detail="Product not found")
    return product_payload(doc)


@app.post("/api/products", status_code=201)
def create_product(payload: ProductIn, user=Depends(require_admin), db=Depends(get_db)):
    if db["product"].find_one({"sku": payload.sku}):
        raise HTTPException(status_code=400, detail="Product with this SKU already exists")
    product = Product(**payload.model_dump(), created_by=str(user["_id"]))
    pid = create_document("product", product)
    return {"message": "Product created successfully", "product": product_payload(db["product"].find_one({"_id": parse_object_id(pid)}))}


@app.put("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, payload: ProductUpdate, db=Depends(get_db)):
    oid = parse_object_id(product_id)
    update = payload.model_dump(exclude_none=True)
    if not update:
        raise HTTPException(status_code=400, detail="No fields to update")
    update["updated_at"] = utcnow()
    res = db["product"].update_one({"_id": oid}, {"$set": update}) if oid else None
    if res is None or res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"message": "Product updated successfully", "product": product_payload(db["product"].find_one({"_id": oid}))}


@app.delete("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str, db=Depends(get_db)):
    oid = parse_object_id(product_id)
    res = db["product"].delete_one({"_id": oid}) if oid else None
    if res is None or res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"message": "Product deleted successfully"}


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, payload: ReviewIn, user=Depends(get_current_user), db=Depends(get_db)):
    oid = parse_object_id(product_id)
    doc = db["product"].find_one({"_id": oid}) if oid else None
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")

    user_id = str(user["_id"])
    reviews = doc.get("reviews", [])
    if any(r.get("user_id") == user_id for r in reviews):
        raise HTTPException(status_code=400, detail="You have already reviewed this product")

    review = Review(user_id=user_id, name=user.get("name", ""), rating=payload.rating,
                    comment=payload.comment).model_dump()
    rating, num_reviews = rating_summary(reviews + [review])
    db["product"].update_one(
        {"_id": oid},
        {"$push": {"reviews": review}, "$set": {"rating": rating, "num_reviews": num_reviews, "updated_at": utcnow()}},
    )
    return {"message": "Review added successfully", "review": review}


# Category models
class CategoryUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=2, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None


def get_category_or_404(category_id: str, db):
    oid = parse_object_id(category_id)
    doc = db["category"].find_one({"_id": oid}) if oid else None
    if not doc:
        raise HTTPException(status_code=404, detail="Category not found")
    return doc


# Category endpoints
@app.get("/api/categories")
def list_categories(db=Depends(get_db)):
    return [serialize_doc(doc) for doc in db["category"].find().sort("name", 1)]


@app.get("/api/categories/{category_id}")
def get_category(category_id: str, db=Depends(get_db)):
    return serialize_doc(get_category_or_404(category_id, db))


@app.post("/api/categories", status_code=201, dependencies=[Depends(require_admin)])
def create_category(payload: Category, db=Depends(get_db)):
    if db["category"].find_one({"name": payload.name}):
        raise HTTPException(status_code=400, detail="Category already exists")
    cid = create_document("category", payload)
    return {"message": "Category created", "category": serialize_doc(db["category"].find_one({"_id": parse_object_id(cid)}))}


@app.put("/api/categories/{category_id}", dependencies=[Depends(require_admin)])
def update_category(category_id: str, payload: CategoryUpdate, db=Depends(get_db)):
    doc = get_category_or_404(category_id, db)
    update = payload.model_dump(exclude_none=True)
    if "name" in update and update["name"] != doc["name"] and db["category"].find_one({"name": update["name"]}):
        raise HTTPException(status_code=400, detail="Category already exists")
    update["updated_at"] = utcnow()
    db["category"].update_one({"_id": doc["_id"]}, {"$set": update})
    return {"message": "Category updated", "category": serialize_doc(db["category"].find_one({"_id": doc["_id"]}))}


@app.delete("/api/categories/{category_id}", dependencies=[Depends(require_admin)])
def delete_category(category_id: str, db=Depends(get_db)):
    doc = get_category_or_404(category_id, db)
    db["category"].delete_one({"_id": doc["_id"]})
    return {"message": "Category deleted"}


# Parameter models
class ParameterUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    type: Optional[ParameterType] = None
    options: Optional[List[str]] = None
    required: Optional[bool] = None
    unit: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    allow_custom: Optional[bool] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


def get_parameter_or_404(parameter_id: str, db):
    oid = parse_object_id(parameter_id)
    doc = db["parameter"].find_one({"_id": oid}) if oid else None
    if not doc:
        raise HTTPException(status_code=404, detail="Parameter not found")
    return doc


# Parameter endpoints
@app.get("/api/parameters")
def list_parameters(db=Depends(get_db)):
    docs = db["parameter"].find({"is_active": True}).sort("name", 1)
    return {"success": True, "data": [serialize_doc(doc) for doc in docs]}


@app.get("/api/parameters/{parameter_id}")
def get_parameter(parameter_id: str, db=Depends(get_db)):
    return {"success": True, "data": serialize_doc(get_parameter_or_404(parameter_id, db))}


@app.post("/api/parameters", status_code=201, dependencies=[Depends(require_admin)])
def create_parameter(payload: Parameter, db=Depends(get_db)):
    pid = create_document("parameter", payload)
    return {
        "success": True,
        "message": "Parameter created successfully",
        "data": serialize_doc(db["parameter"].find_one({"_id": parse_object_id(pid)})),
    }


@app.put("/api/parameters/{parameter_id}", dependencies=[Depends(require_admin)])
def update_parameter(parameter_id: str, payload: ParameterUpdate, db=Depends(get_db)):
    doc = get_parameter_or_404(parameter_id, db)
    update = payload.model_dump(exclude_none=True)
    update["updated_at"] = utcnow()
    db["parameter"].update_one({"_id": doc["_id"]}, {"$set": update})
    return {
        "success": True,
        "message": "Parameter updated successfully",
        "data": serialize_doc(db["parameter"].find_one({"_id": doc["_id"]})),
    }


@app.delete("/api/parameters/{parameter_id}", dependencies=[Depends(require_admin)])
def delete_parameter(parameter_id: str, db=Depends(get_db)):
    doc = get_parameter_or_404(parameter_id, db)
    db["parameter"].delete_one({"_id": doc["_id"]})
    return {"success": True, "message": "Parameter deleted successfully"}


# Order models
class OrderLineIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    selected_parameters: List[SelectedParameter] = Field(default_factory=list)


class OrderCreateIn(BaseModel):
    order_items: List[OrderLineIn] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "Negotiable"


class PayIn(BaseModel):
    payment_result: PaymentResult


class CancelIn(BaseModel):
    reason: Optional[str] = None


class StatusUpdateIn(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class NegotiationIn(BaseModel):
    negotiation_notes: Optional[str] = None


class PaymentStatusIn(BaseModel):
    is_paid: bool


def get_owned_order(order_id: str, user, db, action: str = "view"):
    loaded = orders.load_order(db, order_id)
    if loaded is None:
        raise HTTPException(status_code=404, detail="Order not found")
    oid, order = loaded
    if order.user_id != str(user["_id"]) and not is_admin(user):
        raise HTTPException(status_code=403, detail=f"Not authorized to {action} this order")
    return oid, order


def get_order_or_404(order_id: str, db):
    loaded = orders.load_order(db, order_id)
    if loaded is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return loaded


# Checkout / Orders
@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreateIn, user=Depends(get_current_user), db=Depends(get_db)):
    order_id = orders.create_order(
        db,
        user_id=str(user["_id"]),
        lines=[line.model_dump() for line in payload.order_items],
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
    )
    return {"message": "Order created successfully", "order": orders.order_payload(db, order_id)}


@app.get("/api/orders/my-orders")
def my_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
              user=Depends(get_current_user), db=Depends(get_db)):
    items, total = orders.list_order_payloads(db, {"user_id": str(user["_id"])}, page, limit)
    return {"orders": items, "pagination": pagination(page, limit, total)}


@app.get("/api/orders/stats/overview", dependencies=[Depends(require_admin)])
def order_stats(db=Depends(get_db)):
    return orders.order_stats(db)


@app.get("/api/orders", dependencies=[Depends(require_admin)])
def list_orders(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                status_filter: Optional[OrderStatus] = Query(None, alias="status"),
                is_paid: Optional[bool] = None, db=Depends(get_db)):
    filt = {}
    if status_filter:
        filt["order_status"] = status_filter
    if is_paid is not None:
        filt["is_paid"] = is_paid
    items, total = orders.list_order_payloads(db, filt, page, limit)
    return {"orders": items, "pagination": pagination(page, limit, total)}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    oid, _ = get_owned_order(order_id, user, db)
    return orders.order_payload(db, oid)


@app.put("/api/orders/{order_id}/pay")
def pay_order(order_id: str, payload: PayIn, user=Depends(get_current_user), db=Depends(get_db)):
    oid, order = get_owned_order(order_id, user, db, action="update")
    orders.pay(db, oid, order, payload.payment_result)
    return {"message": "Order marked as paid", "order": orders.order_payload(db, oid)}


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: Optional[CancelIn] = None, user=Depends(get_current_user),
                 db=Depends(get_db)):
    oid, order = get_owned_order(order_id, user, db, action="cancel")
    orders.cancel(db, oid, order, payload.reason if payload else None)
    return {"message": "Order cancelled successfully", "order": orders.order_payload(db, oid)}


@app.put("/api/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, payload: StatusUpdateIn, db=Depends(get_db)):
    oid, order = get_order_or_404(order_id, db)
    previous = order.order_status
    orders.fill_item_defaults(order)
    orders.apply_status(order, payload.status, payload.tracking_number, payload.estimated_delivery)
    orders.save_order(db, order, oid)
    logger.info("Order %s status %s -> %s", oid, previous, order.order_status)
    return {"message": "Order status updated successfully", "order": orders.order_payload(db, oid)}


@app.put("/api/orders/{order_id}/negotiation", dependencies=[Depends(require_admin)])
def update_negotiation_notes(order_id: str, payload: NegotiationIn, db=Depends(get_db)):
    oid, order = get_order_or_404(order_id, db)
    order.negotiation_notes = payload.negotiation_notes or order.negotiation_notes
    orders.save_order(db, order, oid)
    return {"message": "Negotiation notes updated", "order": orders.order_payload(db, oid)}


@app.put("/api/orders/{order_id}/payment-status", dependencies=[Depends(require_admin)])
def update_payment_status(order_id: str, payload: PaymentStatusIn, db=Depends(get_db)):
    oid, order = get_order_or_404(order_id, db)
    orders.set_payment_status(order, payload.is_paid)
    orders.save_order(db, order, oid)
    return {"message": "Payment status updated successfully", "order": orders.order_payload(db, oid)}


# Admin user models
class AdminUserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9 ()-]{7,20}$")
    is_email_verified: Optional[bool] = None
    address: Optional[UserAddress] = None


class AdminCreateIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)


def get_user_or_404(user_id: str, db):
    oid = parse_object_id(user_id)
    doc = db["user"].find_one({"_id": oid}) if oid else None
    if not doc:
        raise HTTPException(status_code=404, detail="User not found")
    return doc


# Admin user endpoints
@app.get("/api/users", dependencies=[Depends(require_admin)])
def list_users(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
               role: Optional[Role] = None, search: Optional[str] = None, db=Depends(get_db)):
    filt = build_user_query(role, search)
    cursor = db["user"].find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    items = [user_payload(doc) for doc in cursor]
    return {"users": items, "pagination": pagination(page, limit, db["user"].count_documents(filt))}


@app.get("/api/users/stats/overview", dependencies=[Depends(require_admin)])
def users_overview(db=Depends(get_db)):
    return user_stats(db)


@app.post("/api/users/create-admin", status_code=201, dependencies=[Depends(require_admin)])
def create_admin(payload: AdminCreateIn, db=Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="User already exists with this email")
    user = User(
        name=payload.name.strip(),
        email=email,
        password_hash=get_password_hash(payload.password),
        role="admin",
        is_email_verified=True,
    )
    user_id = create_document("user", user)
    logger.info("Created admin user %s", user_id)
    return {
        "message": "Admin user created successfully",
        "user": {"id": user_id, "name": user.name, "email": user.email, "role": user.role},
    }


@app.get("/api/users/{user_id}", dependencies=[Depends(require_admin)])
def get_user(user_id: str, db=Depends(get_db)):
    doc = get_user_or_404(user_id, db)
    return {"user": user_payload(doc), "order_stats": order_summary(db, str(doc["_id"]))}


@app.put("/api/users/{user_id}", dependencies=[Depends(require_admin)])
def update_user(user_id: str, payload: AdminUserUpdate, db=Depends(get_db)):
    doc = get_user_or_404(user_id, db)
    update = payload.model_dump(exclude_none=True, exclude={"address"})
    if "email" in update:
        update["email"] = update["email"].lower()
        if update["email"] != doc.get("email") and db["user"].find_one({"email": update["email"]}):
            raise HTTPException(status_code=400, detail="Email already exists")
    if payload.address is not None:
        update["address"] = {**(doc.get("address") or {}), **payload.address.model_dump(exclude_unset=True)}
    update["updated_at"] = utcnow()
    db["user"].update_one({"_id": doc["_id"]}, {"$set": update})
    return {"message": "User updated successfully", "user": user_payload(db["user"].find_one({"_id": doc["_id"]}))}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    doc = get_user_or_404(user_id, db)
    if doc["_id"] == admin["_id"]:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    if db["order"].count_documents({"user_id": str(doc["_id"])}):
        raise HTTPException(
            status_code=400,
            detail="Cannot delete user with existing orders. Consider deactivating instead.",
        )
    db["user"].delete_one({"_id": doc["_id"]})
    logger.info("Deleted user %s", doc["_id"])
    return {"message": "User deleted successfully"}


@app.put("/api/users/{user_id}/toggle-status")
def toggle_user_status(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    doc = get_user_or_404(user_id, db)
    if doc["_id"] == admin["_id"]:
        raise HTTPException(status_code=400, detail="Cannot modify your own account status")
    # email verification doubles as the active flag
    active = not doc.get("is_email_verified", False)
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {"is_email_verified": active, "updated_at": utcnow()}})
    return {
        "message": f"User {'activated' if active else 'deactivated'} successfully",
        "user": {"id": str(doc["_id"]), "name": doc.get("name"), "email": doc.get("email"),
                 "is_email_verified": active},
    }


# Simple seed endpoint to create a demo catalog (admin only)
DEMO_PRODUCTS = [
    {"name": "Oak Dining Table", "description": "Solid oak table, custom sizes on request.", "price": 450.0,
     "category": "Home & Garden", "brand": "Woodcraft", "sku": "WC-TABLE-OAK", "stock": 5},
    {"name": "Linen Throw Pillow", "description": "Washed linen cover with feather insert.", "price": 29.99,
     "category": "Home & Garden", "brand": "Loom", "sku": "LM-PILLOW-01", "stock": 40},
    {"name": "Wireless Earbuds", "description": "Noise cancelling earbuds with charging case.", "price": 89.0,
     "category": "Electronics", "brand": "Sonic", "sku": "SN-EARBUD-2", "stock": 25},
    {"name": "Trail Running Shoes", "description": "Lightweight shoes with grippy outsole.", "price": 120.0,
     "category": "Sports", "brand": "Stride", "sku": "ST-TRAIL-42", "stock": 12},
    {"name": "Field Notes Journal", "description": "Dot grid notebook, 192 pages.", "price": 14.5,
     "category": "Books", "brand": "Papier", "sku": "PP-JOURNAL-DG", "stock": 60},
]


@app.post("/seed")
def seed(user=Depends(require_admin), db=Depends(get_db)):
    created = 0
    for p in DEMO_PRODUCTS:
        if not db["product"].find_one({"sku": p["sku"]}):
            create_document("product", Product(**p, created_by=str(user["_id"])))
            created += 1
    return {"status": "ok", "created": created}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
