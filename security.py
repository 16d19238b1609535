"""
Auth gate: password hashing, bearer tokens and the FastAPI dependencies that
guard the routes.
"""

import logging
import os
from datetime import timedelta
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from werkzeug.security import check_password_hash, generate_password_hash

from database import utcnow
from errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

bearer_scheme = HTTPBearer(auto_error=False)


DEVELOPMENT_SECRET = "campus-ewaste-tracker-development-secret"
_secret_warned = False


def jwt_secret() -> str:
    global _secret_warned
    secret = os.getenv("JWT_SECRET")
    if not secret:
        if not _secret_warned:
            _secret_warned = True
            logger.warning("JWT_SECRET is not set, signing tokens with the development secret")
        return DEVELOPMENT_SECRET
    return secret


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return check_password_hash(password_hash, password)


def create_token(user: dict) -> str:
    hours = int(os.getenv("JWT_EXPIRES_HOURS", "24"))
    now = utcnow()
    payload = {
        "userId": user["id"],
        "email": user["email"],
        "role": user["role"],
        "iat": now,
        "exp": now + timedelta(hours=hours),
    }
    return jwt.encode(payload, jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        claims = jwt.decode(token, jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError as e:
        logger.info("Rejected bearer token: %s", e)
        raise Forbidden("Invalid or expired token")
    return {"userId": claims.get("userId"), "email": claims.get("email"), "role": claims.get("role")}


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> dict:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Access token required")
    return decode_token(credentials.credentials)


def require_admin(current: dict = Depends(get_current_user)) -> dict:
    if current.get("role") != "admin":
        raise Forbidden("Access denied")
    return current
