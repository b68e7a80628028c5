"""Merchant credentials and session tokens.

Tokens carry the account claims every billing check keys on:
    {"sub": account_id, "account_id": ..., "role": "merchant" | "admin", "email": ..., "iat", "exp"}
"""
from passlib.context import CryptContext
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
import logging
import os

from models import UserRole

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))
MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def password_problem(password: str) -> Optional[str]:
    """Reason the password is unacceptable, or None."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    return None


def create_account_token(
    account_id: str,
    role: str = UserRole.MERCHANT.value,
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": account_id,
        "account_id": account_id,
        "role": UserRole(role).value,
        "email": email,
        "iat": now,
        "exp": now + (expires_delta or timedelta(hours=JWT_EXPIRATION_HOURS)),
    }
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_account_token(token: str) -> Optional[Dict[str, Any]]:
    """Account claims of a valid token; None for bad signatures, expiry or missing claims."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.debug(f"Rejected access token: {e}")
        return None

    account_id = payload.get("account_id") or payload.get("sub")
    if not account_id:
        return None
    try:
        role = UserRole(payload.get("role", UserRole.MERCHANT.value))
    except ValueError:
        logger.warning(f"Access token for {account_id} carries unknown role {payload.get('role')!r}")
        return None
    return {"account_id": account_id, "role": role.value, "email": payload.get("email")}
