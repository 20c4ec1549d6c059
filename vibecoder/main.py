import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from vibecoder.core.config import settings
from vibecoder.core.errors import (
    AppError,
    app_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from vibecoder.core.logging import configure_logging, new_request_id, request_id_ctx
from vibecoder.db.session import init_db
from vibecoder.routers.admin import router as admin_router
from vibecoder.routers.auth import router as auth_router
from vibecoder.routers.downloads import router as downloads_router
from vibecoder.routers.me import router as me_router
from vibecoder.routers.payments import router as payments_router
from vibecoder.routers.webhooks import router as webhooks_router

configure_logging()
logger = logging.getLogger("vibecoder")


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("x-request-id") or new_request_id()
        token = request_id_ctx.set(rid)
        try:
            response = await call_next(request)
            response.headers["x-request-id"] = rid
            return response
        finally:
            request_id_ctx.reset(token)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.AUTO_CREATE_TABLES:
        init_db()
    if not settings.RAZORPAY_KEY_ID or not settings.RAZORPAY_KEY_SECRET:
        logger.warning("Razorpay credentials missing; payment endpoints will fail")
    logger.info("VibeCoder API started env=%s", settings.ENV)
    yield


app = FastAPI(title="VibeCoder API", lifespan=lifespan)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["content-disposition", "x-request-id"],
)


app.include_router(auth_router)
app.include_router(me_router)
app.include_router(payments_router)
app.include_router(webhooks_router)
app.include_router(downloads_router)
app.include_router(admin_router)


app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/")
def root():
    return {"status": "ok", "docs": "/docs"}
