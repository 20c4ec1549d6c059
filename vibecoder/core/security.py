import secrets
from datetime import timedelta
from typing import Any

from jose import jwt
from passlib.context import CryptContext

from vibecoder.core.clock import utcnow
from vibecoder.core.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ALGO = "HS256"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def make_access_token(user_id: str, role: str) -> str:
    now = utcnow()
    payload: dict[str, Any] = {
        "iss": settings.JWT_ISSUER,
        "sub": user_id,
        "role": role,
        "type": "access",
        "exp": now + timedelta(minutes=settings.ACCESS_TTL_MIN),
        "iat": now,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGO)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(
        token, settings.JWT_SECRET, algorithms=[ALGO], issuer=settings.JWT_ISSUER
    )


def new_download_token() -> str:
    return secrets.token_urlsafe(32)  # 43 chars, opaque
