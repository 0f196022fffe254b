import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import Settings, get_settings
from database import create_document, get_db, parse_object_id, serialize_doc
from schemas import LoginRequest, RegisterRequest, User

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)
router = APIRouter(prefix="/api/auth", tags=["auth"])


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


def create_token(user_id: str, settings: Settings) -> str:
    payload = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(days=settings.jwt_expires_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Token is not valid")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
    db: Database = Depends(get_db),
) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="No token, authorization denied")
    payload = decode_token(credentials.credentials, settings)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token is not valid")
    user = db["users"].find_one({"_id": parse_object_id(user_id, "User")})
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not found")
    return user


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "phone": user["phone"],
        "role": user.get("role", "customer"),
        "wallet": {"balance": user.get("wallet", {}).get("balance", 0)},
    }


@router.post("/register", status_code=201)
def register(
    payload: RegisterRequest,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    existing = db["users"].find_one({"$or": [{"email": payload.email}, {"phone": payload.phone}]})
    if existing:
        field = "email" if existing["email"] == payload.email else "phone number"
        raise HTTPException(status_code=400, detail=f"User already exists with this {field}")
    user = User(
        name=payload.name,
        email=payload.email,
        phone=payload.phone,
        password_hash=hash_password(payload.password),
    )
    try:
        user_id = create_document(db, "users", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="User already exists")
    user_doc = db["users"].find_one({"_id": parse_object_id(user_id, "User")})
    logger.info("Registered user %s", user_id)
    return {
        "success": True,
        "message": "User registered successfully",
        "token": create_token(user_id, settings),
        "user": public_user(user_doc),
    }


@router.post("/login")
def login(
    payload: LoginRequest,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    user = db["users"].find_one({"email": payload.email})
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    if not check_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    return {
        "success": True,
        "message": "Login successful",
        "token": create_token(str(user["_id"]), settings),
        "user": public_user(user),
    }


@router.get("/me")
def me(user: dict = Depends(get_current_user)):
    doc = dict(user)
    doc.pop("password_hash", None)
    return {"success": True, "user": serialize_doc(doc)}
