"""Credentials and session tokens for entitlement accounts.

Accounts created at checkout get a generated temporary credential that is
emailed once and stored only as a bcrypt hash. API callers authenticate
with a JWT whose claims carry ``account_id`` and, for operators, ``is_admin``.
"""
from passlib.context import CryptContext
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
import os
import secrets
import string

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)

JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
TOKEN_TTL_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))

TEMP_PASSWORD_LENGTH = 16
TEMP_PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


def generate_temp_password(length: int = TEMP_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(TEMP_PASSWORD_ALPHABET) for _ in range(length))


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, password_hash: str) -> bool:
    return pwd_context.verify(plain_password, password_hash)


def create_access_token(claims: Dict, ttl: Optional[timedelta] = None) -> str:
    """Sign ``claims`` into a JWT expiring after ``ttl`` (default TOKEN_TTL_HOURS)."""
    expires_at = datetime.now(timezone.utc) + (ttl or timedelta(hours=TOKEN_TTL_HOURS))
    return jwt.encode({**claims, "exp": expires_at}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict]:
    """Return the token claims, or None when the signature or expiry is invalid."""
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
