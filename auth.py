import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Request
from passlib.context import CryptContext

import models
from config import Settings
from errors import Unauthenticated
from schemas import Identity

logger = logging.getLogger("expense_tracker.auth")

TOKEN_COOKIE = "token"


# ---------------- PASSWORD HASHING ----------------

def make_password_context(rounds: int = 10) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


async def hash_password(pwd_context: CryptContext, password: str) -> str:
    """Hash a password with bcrypt in a worker thread."""
    return await asyncio.to_thread(pwd_context.hash, password)


async def verify_password(pwd_context: CryptContext, password: str, hashed: str) -> bool:
    try:
        return await asyncio.to_thread(pwd_context.verify, password, hashed)
    except ValueError:
        # unrecognized or corrupt hash
        logger.warning("Stored password hash could not be verified")
        return False


# ---------------- TOKENS ----------------

def generate_token(user: models.User, settings: Settings) -> str:
    """Issue a signed token for ``user`` that expires after the configured window."""
    now = datetime.now(timezone.utc)
    payload = {
        "id": user.id,
        "username": user.username,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_expire_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> Identity:
    """
    Verify signature and expiry of ``token`` and return the identity it carries.

    Raises Unauthenticated for anything short of a valid, unexpired token.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "iat"]},
        )
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token has expired. Please log in again.")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid token.")

    user_id = payload.get("id")
    username = payload.get("username")
    if not isinstance(user_id, int) or isinstance(user_id, bool) or not isinstance(username, str):
        raise Unauthenticated("Invalid token.")
    return Identity(id=user_id, username=username)


# ---------------- IDENTITY RESOLVER ----------------

def extract_token(request: Request) -> Optional[str]:
    """
    Expect Authorization: Bearer <token>, falling back to the token cookie.
    """
    authorization = request.headers.get("Authorization")
    if authorization:
        parts = authorization.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise Unauthenticated("Invalid authorization header.")
        return parts[1]
    return request.cookies.get(TOKEN_COOKIE) or None


def get_current_user(request: Request) -> Identity:
    """
    Resolve the caller from their token without touching the database.

    A token stays valid until it expires even if its user no longer exists.
    """
    token = extract_token(request)
    if not token:
        raise Unauthenticated("Access denied. No token provided.")
    try:
        identity = decode_token(token, request.app.state.settings)
    except Unauthenticated as exc:
        logger.warning("Rejected token on %s %s: %s", request.method, request.url.path, exc.message)
        raise
    request.state.user = identity
    return identity
