from fastapi import Depends, Request
from sqlalchemy.orm import Session

from vibecoder.core.errors import Unauthenticated
from vibecoder.core.security import decode_token
from vibecoder.db.session import get_db
from vibecoder.models.user import User

ACCESS_COOKIE = "access_token"


def _bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization") or ""
    scheme, _, credentials = auth.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(ACCESS_COOKIE)


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    token = _bearer_token(request)
    if not token:
        raise Unauthenticated("Not authenticated")

    try:
        payload = decode_token(token)
    except Exception:
        raise Unauthenticated("Invalid access token")

    if payload.get("type") != "access":
        raise Unauthenticated("Invalid access token")

    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated("Invalid access token")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise Unauthenticated("User not found")

    return user
