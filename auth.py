"""
Identity: local and federated sign-in, JWT bearer tokens, and the FastAPI
dependencies that resolve the calling user.
"""

import logging
from datetime import timedelta
from typing import Optional

import bcrypt
import jwt
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.errors import DuplicateKeyError

import config
from database import create_document, find_one, get_collection, normalize, with_retry
from errors import Conflict, InvalidInput
from schemas import LIVES_PER_DONATION, AuthPayload, RegisterPayload, User, utcnow

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)

# Never leaves the server
PRIVATE_FIELDS = {"password_hash": 0, "voided_donations": 0}


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return bcrypt.checkpw(password.encode("utf-8")[:72], password_hash.encode("utf-8"))


def create_token(user: dict) -> str:
    payload = {
        "sub": user["id"],
        "email": user["email"],
        "exp": utcnow() + timedelta(days=config.JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise InvalidInput(f"{value!r} is not a valid id")


@with_retry
def find_user(user_id: str) -> Optional[dict]:
    return normalize(get_collection("user").find_one({"_id": object_id(user_id)}, PRIVATE_FIELDS))


def public_user(user: dict) -> dict:
    user = {k: v for k, v in user.items() if k not in PRIVATE_FIELDS}
    user["lives_impacted"] = user.get("total_donations", 0) * LIVES_PER_DONATION
    return user


def register_user(payload: RegisterPayload) -> dict:
    email = payload.email.lower()
    if find_one("user", {"email": email}, {"_id": 1}):
        raise Conflict("Email already registered")
    user_model = User(
        email=email,
        name=payload.name,
        password_hash=hash_password(payload.password),
        blood_group=payload.blood_group,
        is_donor=payload.role == "donor",
        phone=payload.phone,
        location=payload.location,
    )
    try:
        user_id = create_document("user", user_model)
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    logger.info("Registered user %s", user_id)
    return public_user(normalize(find_one("user", {"_id": ObjectId(user_id)})))


@with_retry
def authenticate(email: str, password: str) -> Optional[dict]:
    user = get_collection("user").find_one({"email": email.lower()})
    if not user or not user.get("is_active", True):
        return None
    if not verify_password(password, user.get("password_hash")):
        return None
    return public_user(normalize(user))


@with_retry
def federated_login(payload: AuthPayload) -> dict:
    """Sign in with a Google identity, linking it to an existing account by email."""
    col = get_collection("user")
    email = payload.email.lower()
    existing = col.find_one({"$or": [{"google_id": payload.external_id}, {"email": email}]})
    if existing:
        if not existing.get("is_active", True):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account deactivated")
        update = {"google_id": payload.external_id, "updated_at": utcnow()}
        if payload.name:
            update["name"] = payload.name
        col.update_one({"_id": existing["_id"]}, {"$set": update})
        user = col.find_one({"_id": existing["_id"]})
    else:
        if not payload.blood_group:
            raise InvalidInput("blood_group is required to create an account")
        user_model = User(
            email=email,
            name=payload.name or email.split("@")[0],
            google_id=payload.external_id,
            blood_group=payload.blood_group,
        )
        user_id = create_document("user", user_model)
        logger.info("Registered federated user %s", user_id)
        user = col.find_one({"_id": ObjectId(user_id)})
    return public_user(normalize(user))


def current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> dict:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="No authentication token found")
    return user_from_token(credentials.credentials)


def user_from_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Invalid authentication token")
    try:
        user = find_user(payload.get("sub", ""))
    except InvalidInput:
        user = None
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Invalid authentication token")
    return public_user(user)


def require_admin(user: dict = Depends(current_user)) -> dict:
    if not user.get("is_admin"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
