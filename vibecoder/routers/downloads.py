import logging
import re
from functools import partial
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session, sessionmaker

from vibecoder.core.admin import require_admin
from vibecoder.core.config import settings
from vibecoder.core.deps import get_current_user
from vibecoder.core.errors import AppError, StreamFailure
from vibecoder.core.logging import client_meta
from vibecoder.core.permissions import require_project_owner
from vibecoder.db.session import get_db, get_session_factory
from vibecoder.models.download import DownloadSession
from vibecoder.models.user import User
from vibecoder.schemas.common import Envelope, paginate
from vibecoder.schemas.download import (
    DownloadAnalyticsOut,
    DownloadSessionCreatedOut,
    DownloadSessionOut,
    DownloadSessionPage,
    ProjectFileOut,
    PurchaseStatusOut,
    SessionSummaryOut,
    TokenValidationOut,
    ValidateTokenIn,
)
from vibecoder.services import downloads
from vibecoder.services.streaming import TrackedFileStream, TrackedStreamingResponse

logger = logging.getLogger("vibecoder.routers.downloads")
router = APIRouter(prefix="/downloads", tags=["downloads"])


def _session_out(s: DownloadSession) -> DownloadSessionOut:
    return DownloadSessionOut(
        id=s.id,
        project_id=s.project_id,
        project_title=s.project.title if s.project else None,
        user_id=s.user_id,
        access_type=s.access_type,
        status=s.status,
        download_count=s.download_count,
        bytes_transferred=s.bytes_transferred,
        expires_at=s.expires_at,
        last_download_at=s.last_download_at,
        created_at=s.created_at,
    )


def _content_disposition(name: str) -> str:
    cleaned = re.sub(r'[\x00-\x1f\x7f"\\/]', "_", name).strip() or "download"
    ascii_name = cleaned.encode("ascii", "replace").decode("ascii").replace("?", "_")
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(cleaned)}"


def _record_completion(
    session_factory: sessionmaker,
    session_id: str,
    file_size: int,
    ip: str | None,
    user_agent: str | None,
    success: bool,
    bytes_transferred: int,
):
    # the request session may already be closed by the time the body finishes
    db = session_factory()
    try:
        downloads.complete_download(
            db,
            session_id,
            success,
            bytes_transferred,
            ip,
            user_agent,
            file_size=file_size,
        )
    finally:
        db.close()


@router.post(
    "/projects/{project_id}/session",
    response_model=Envelope[DownloadSessionCreatedOut],
    status_code=201,
)
def create_session(
    project_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    ip, ua = client_meta(request)
    s = downloads.create_download_session(db, user, project_id, ip, ua)
    return Envelope(
        message="Download session created successfully",
        data=DownloadSessionCreatedOut(
            download_id=s.id,
            token=s.token,
            expires_at=s.expires_at,
            access_type=s.access_type,
        ),
    )


@router.get(
    "/projects/{project_id}/purchase-status",
    response_model=Envelope[PurchaseStatusOut],
)
def purchase_status(
    project_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    st = downloads.check_purchase_status(db, user, project_id)
    return Envelope(
        message="Purchase status retrieved successfully",
        data=PurchaseStatusOut(
            project_id=project_id,
            has_purchased=st.has_purchased,
            access_type=st.access_type,
            can_download=st.has_purchased,
        ),
    )


@router.get(
    "/projects/{project_id}/analytics",
    response_model=Envelope[DownloadAnalyticsOut],
)
def project_analytics(
    project_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    project = require_project_owner(db, user, project_id)
    return Envelope(
        message="Download analytics retrieved successfully",
        data=DownloadAnalyticsOut(**downloads.get_project_download_analytics(db, project)),
    )


@router.get("/file")
def download_file(
    request: Request,
    token: str | None = Query(None),
    db: Session = Depends(get_db),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    if not token:
        raise HTTPException(status_code=400, detail="Download token is required")

    ip, ua = client_meta(request)
    check = downloads.validate_download_access(db, token, ip, ua)
    if not check.is_valid or not check.session:
        raise HTTPException(status_code=403, detail="Invalid download access")

    session_id = check.session.id
    try:
        info = downloads.start_download(db, session_id, ip, ua)
    except AppError:
        downloads.complete_download(db, session_id, False, 0, ip, ua)
        raise

    stream = TrackedFileStream(
        partial(open, info.file_path, "rb"),
        chunk_size=settings.DOWNLOAD_CHUNK_SIZE,
        on_finish=partial(
            _record_completion, session_factory, session_id, info.file_size, ip, ua
        ),
    )
    # Nothing has been sent yet: a failure here can still be a JSON error.
    try:
        stream.prime()
    except OSError:
        logger.exception("Could not open download file for session %s", session_id)
        raise StreamFailure("File download failed")

    headers = {
        "Content-Length": str(info.file_size),
        "Content-Disposition": _content_disposition(info.file_name),
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
    }
    logger.info("Download started session=%s size=%s", session_id, info.file_size)
    return TrackedStreamingResponse(stream, media_type=info.mime_type, headers=headers)


@router.post("/validate", response_model=Envelope[TokenValidationOut])
def validate_token(
    payload: ValidateTokenIn,
    request: Request,
    db: Session = Depends(get_db),
):
    ip, ua = client_meta(request)
    try:
        check = downloads.validate_download_access(db, payload.token, ip, ua)
    except Exception:
        # unauthenticated caller: never leak internal failure detail
        db.rollback()
        logger.exception("Token validation errored")
        return Envelope(
            message="Download token validation completed",
            data=TokenValidationOut(
                is_valid=False, can_download=False, error="Token validation failed"
            ),
        )

    if not check.is_valid:
        return Envelope(
            message="Download token validation completed",
            data=TokenValidationOut(is_valid=False, can_download=False, error=check.reason),
        )

    s, p = check.session, check.project
    return Envelope(
        message="Download token validated successfully",
        data=TokenValidationOut(
            is_valid=True,
            can_download=True,
            project=ProjectFileOut(
                id=p.id,
                title=p.title,
                file_name=p.original_file_name or p.main_file,
                file_size=p.file_size,
            ),
            session=SessionSummaryOut(
                id=s.id,
                access_type=s.access_type,
                status=s.status,
                expires_at=s.expires_at,
                download_count=s.download_count,
            ),
        ),
    )


@router.get("/history", response_model=Envelope[DownloadSessionPage])
def download_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    rows, total = downloads.get_user_download_history(db, user, page, limit)
    return Envelope(
        message="Download history retrieved successfully",
        data=DownloadSessionPage(
            sessions=[_session_out(s) for s in rows],
            pagination=paginate(page, limit, total),
        ),
    )


@router.get("/sessions/{session_id}", response_model=Envelope[DownloadSessionOut])
def session_status(
    session_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    s = downloads.get_download_session_status(db, user, session_id)
    return Envelope(
        message="Download session status retrieved successfully",
        data=_session_out(s),
    )


@router.get("/admin/sessions", response_model=Envelope[DownloadSessionPage])
def all_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: str | None = None,
    project_id: str | None = Query(None, alias="projectId"),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    rows, total = downloads.list_download_sessions(db, page, limit, status, project_id)
    return Envelope(
        message="All download sessions retrieved successfully",
        data=DownloadSessionPage(
            sessions=[_session_out(s) for s in rows],
            pagination=paginate(page, limit, total),
        ),
    )
