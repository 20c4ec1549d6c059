import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from vibecoder.core.config import settings
from vibecoder.core.deps import ACCESS_COOKIE
from vibecoder.core.security import hash_password, make_access_token, verify_password
from vibecoder.db.session import get_db
from vibecoder.models.user import User
from vibecoder.schemas.auth import AuthOut, LoginIn, SignupIn, UserOut
from vibecoder.schemas.common import Envelope

logger = logging.getLogger("vibecoder.auth")
router = APIRouter(prefix="/auth", tags=["auth"])


def _set_auth_cookie(resp: Response, access: str):
    common = dict(
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        path="/",
    )
    if settings.COOKIE_DOMAIN:
        common["domain"] = settings.COOKIE_DOMAIN

    resp.set_cookie(
        key=ACCESS_COOKIE,
        value=access,
        max_age=settings.ACCESS_TTL_MIN * 60,
        **common,
    )


def _auth_out(user: User) -> AuthOut:
    return AuthOut(
        user=UserOut.model_validate(user),
        access_token=make_access_token(user.id, user.role),
    )


@router.post("/register", response_model=Envelope[AuthOut], status_code=201)
def register(payload: SignupIn, response: Response, db: Session = Depends(get_db)):
    email = payload.email.lower().strip()

    existing = db.query(User).filter(User.email == email).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already in use")

    user = User(
        email=email,
        password_hash=hash_password(payload.password),
        first_name=payload.first_name.strip(),
        last_name=payload.last_name.strip(),
        role=payload.role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("User registered id=%s role=%s", user.id, user.role)

    out = _auth_out(user)
    _set_auth_cookie(response, out.access_token)
    return Envelope(message="Registered successfully", data=out)


@router.post("/login", response_model=Envelope[AuthOut])
def login(payload: LoginIn, response: Response, db: Session = Depends(get_db)):
    email = payload.email.lower().strip()
    user = db.query(User).filter(User.email == email).first()

    if not user or not user.password_hash:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    out = _auth_out(user)
    _set_auth_cookie(response, out.access_token)
    return Envelope(message="Logged in successfully", data=out)


@router.post("/logout")
def logout(response: Response):
    common = dict(path="/")
    if settings.COOKIE_DOMAIN:
        common["domain"] = settings.COOKIE_DOMAIN
    response.delete_cookie(ACCESS_COOKIE, **common)
    return {"success": True, "message": "Logged out"}
