"""
Download access: proof of purchase -> opaque session token -> one file stream.
"""

import logging
import mimetypes
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import distinct, func
from sqlalchemy.orm import Session

from vibecoder.core.clock import ensure_utc, utcnow
from vibecoder.core.config import settings
from vibecoder.core.errors import Forbidden, NotFound
from vibecoder.core.security import new_download_token
from vibecoder.models.download import (
    DownloadAccessType,
    DownloadAction,
    DownloadLog,
    DownloadSession,
    DownloadStatus,
)
from vibecoder.models.project import Project, ProjectStatus
from vibecoder.models.transaction import Transaction, TransactionStatus
from vibecoder.models.user import User

logger = logging.getLogger("vibecoder.downloads")


@dataclass
class PurchaseStatus:
    has_purchased: bool
    access_type: str
    transaction: Transaction | None = None


@dataclass
class AccessCheck:
    is_valid: bool
    session: DownloadSession | None = None
    project: Project | None = None
    reason: str | None = None


@dataclass
class DownloadInfo:
    file_path: Path
    file_name: str
    file_size: int
    mime_type: str


def _log(
    db: Session,
    action: DownloadAction,
    *,
    session_id: str | None,
    project_id: str | None,
    user_id: str | None,
    ip: str | None,
    user_agent: str | None,
    **details: Any,
) -> None:
    db.add(
        DownloadLog(
            download_session_id=session_id,
            project_id=project_id,
            user_id=user_id,
            action=action.value,
            ip_address=ip,
            user_agent=(user_agent or "")[:400] or None,
            details=details,
        )
    )


def projects_dir() -> Path:
    return Path(settings.UPLOAD_DIR).resolve() / "projects"


# ---- purchase gate ----


def check_purchase_status(db: Session, user: User, project_id: str) -> PurchaseStatus:
    project = db.get(Project, project_id)
    if not project:
        raise NotFound("Project not found")

    if project.seller_id == user.id:
        return PurchaseStatus(True, DownloadAccessType.OWNER.value)
    if user.is_admin:
        return PurchaseStatus(True, DownloadAccessType.ADMIN.value)
    if project.price == 0:
        return PurchaseStatus(True, DownloadAccessType.FREE.value)

    tx = (
        db.query(Transaction)
        .filter(
            Transaction.project_id == project_id,
            Transaction.buyer_id == user.id,
            Transaction.status == TransactionStatus.COMPLETED.value,
        )
        .order_by(Transaction.completed_at.desc())
        .first()
    )
    if tx:
        return PurchaseStatus(True, DownloadAccessType.PURCHASED.value, tx)
    return PurchaseStatus(False, DownloadAccessType.PURCHASED.value)


def create_download_session(
    db: Session,
    user: User,
    project_id: str,
    ip: str | None = None,
    user_agent: str | None = None,
) -> DownloadSession:
    status = check_purchase_status(db, user, project_id)
    if not status.has_purchased:
        raise Forbidden("You must purchase this project before downloading")

    session = DownloadSession(
        token=new_download_token(),
        user_id=user.id,
        project_id=project_id,
        transaction_id=status.transaction.id if status.transaction else None,
        access_type=status.access_type,
        status=DownloadStatus.INITIATED.value,
        download_count=0,
        bytes_transferred=0,
        expires_at=utcnow() + timedelta(hours=settings.DOWNLOAD_TTL_HOURS),
        ip_address=ip,
        user_agent=(user_agent or "")[:400] or None,
    )
    db.add(session)
    db.flush()
    _log(
        db,
        DownloadAction.SESSION_CREATED,
        session_id=session.id,
        project_id=project_id,
        user_id=user.id,
        ip=ip,
        user_agent=user_agent,
        access_type=status.access_type,
        transaction_id=session.transaction_id,
    )
    db.commit()
    db.refresh(session)
    logger.info(
        "Download session %s created user=%s project=%s access=%s",
        session.id,
        user.id,
        project_id,
        session.access_type,
    )
    return session


# ---- token validation ----


def _limit_reached(session: DownloadSession) -> bool:
    cap = settings.DOWNLOAD_MAX_COUNT
    return cap is not None and session.download_count >= cap


def _purchase_lapsed(db: Session, session: DownloadSession) -> bool:
    if session.access_type != DownloadAccessType.PURCHASED:
        return False
    tx = db.get(Transaction, session.transaction_id) if session.transaction_id else None
    return not tx or tx.status != TransactionStatus.COMPLETED


def _deny(
    db: Session,
    session: DownloadSession | None,
    reason: str,
    ip: str | None,
    user_agent: str | None,
) -> AccessCheck:
    if session is not None:
        _log(
            db,
            DownloadAction.ACCESS_DENIED,
            session_id=session.id,
            project_id=session.project_id,
            user_id=session.user_id,
            ip=ip,
            user_agent=user_agent,
            reason=reason,
        )
        db.commit()
    logger.info("Download access denied: %s", reason)
    return AccessCheck(False, session, None, reason)


def validate_download_access(
    db: Session,
    token: str | None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> AccessCheck:
    """Fail closed: every business-rule failure is an invalid result, not an exception."""
    if not token:
        return AccessCheck(False, reason="Download token is required")

    session = db.query(DownloadSession).filter(DownloadSession.token == token).first()
    if not session:
        return _deny(db, None, "Invalid download token", ip, user_agent)

    if ensure_utc(session.expires_at) <= utcnow():
        session.status = DownloadStatus.EXPIRED.value
        db.add(session)
        return _deny(db, session, "Download session has expired", ip, user_agent)

    if _limit_reached(session):
        return _deny(db, session, "Download limit reached", ip, user_agent)

    if _purchase_lapsed(db, session):
        return _deny(db, session, "Purchase is no longer active", ip, user_agent)

    project = session.project
    if not project or not project.main_file:
        return _deny(db, session, "Project file not available", ip, user_agent)

    if project.status != ProjectStatus.APPROVED and session.access_type not in (
        DownloadAccessType.OWNER,
        DownloadAccessType.ADMIN,
    ):
        return _deny(db, session, "Project is not available for download", ip, user_agent)

    _log(
        db,
        DownloadAction.ACCESS_VALIDATED,
        session_id=session.id,
        project_id=session.project_id,
        user_id=session.user_id,
        ip=ip,
        user_agent=user_agent,
        session_status=session.status,
    )
    db.commit()
    return AccessCheck(True, session, project)


# ---- streaming lifecycle ----


def _resolve_project_file(project: Project) -> Path:
    base = projects_dir()
    path = (base / (project.main_file or "")).resolve()
    if base not in path.parents:
        raise NotFound("Project file not found on server")
    if not path.is_file():
        raise NotFound("Project file not found on server")
    return path


def start_download(
    db: Session,
    session_id: str,
    ip: str | None = None,
    user_agent: str | None = None,
) -> DownloadInfo:
    session = (
        db.query(DownloadSession)
        .filter(DownloadSession.id == session_id)
        .with_for_update()
        .first()
    )
    if not session:
        raise NotFound("Download session not found")

    # re-check right before the stream opens
    if ensure_utc(session.expires_at) <= utcnow():
        session.status = DownloadStatus.EXPIRED.value
        db.add(session)
        db.commit()
        raise Forbidden("Download session has expired")

    # a concurrent request or a refund may have landed since validation
    if _limit_reached(session):
        db.rollback()
        raise Forbidden("Download limit reached")
    if _purchase_lapsed(db, session):
        db.rollback()
        raise Forbidden("Purchase is no longer active")

    project = session.project
    if not project or not project.main_file:
        raise NotFound("Project file not available")

    path = _resolve_project_file(project)
    size = path.stat().st_size
    file_name = project.original_file_name or project.main_file
    mime_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"

    session.status = DownloadStatus.IN_PROGRESS.value
    session.download_count += 1
    session.bytes_transferred = 0
    session.last_download_at = utcnow()
    project.download_count += 1
    db.add_all([session, project])
    _log(
        db,
        DownloadAction.DOWNLOAD_STARTED,
        session_id=session.id,
        project_id=session.project_id,
        user_id=session.user_id,
        ip=ip,
        user_agent=user_agent,
        file_name=file_name,
        file_size=size,
        download_count=session.download_count,
    )
    db.commit()

    return DownloadInfo(
        file_path=path, file_name=file_name, file_size=size, mime_type=mime_type
    )


def complete_download(
    db: Session,
    session_id: str,
    success: bool,
    bytes_transferred: int = 0,
    ip: str | None = None,
    user_agent: str | None = None,
    file_size: int | None = None,
) -> None:
    """Record how a stream attempt ended. Never raises: the download may have succeeded."""
    try:
        session = db.get(DownloadSession, session_id)
        if not session:
            logger.warning("complete_download: unknown session %s", session_id)
            return

        session.status = (
            DownloadStatus.COMPLETED.value if success else DownloadStatus.FAILED.value
        )
        session.bytes_transferred = bytes_transferred
        db.add(session)
        _log(
            db,
            DownloadAction.DOWNLOAD_COMPLETED if success else DownloadAction.DOWNLOAD_FAILED,
            session_id=session.id,
            project_id=session.project_id,
            user_id=session.user_id,
            ip=ip,
            user_agent=user_agent,
            success=success,
            bytes_transferred=bytes_transferred,
            file_size=file_size,
            partial=file_size is not None and bytes_transferred < file_size,
        )
        db.commit()
        if not success:
            logger.warning(
                "Download %s failed after %s/%s bytes",
                session_id,
                bytes_transferred,
                file_size,
            )
    except Exception:
        db.rollback()
        logger.exception("Failed to record download completion for %s", session_id)


# ---- history / admin / analytics ----


def get_user_download_history(
    db: Session, user: User, page: int, limit: int
) -> tuple[list[DownloadSession], int]:
    q = db.query(DownloadSession).filter(DownloadSession.user_id == user.id)
    total = q.count()
    rows = (
        q.order_by(DownloadSession.created_at.desc(), DownloadSession.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return rows, total


def get_download_session_status(
    db: Session, user: User, session_id: str
) -> DownloadSession:
    session = db.get(DownloadSession, session_id)
    if not session:
        raise NotFound("Download session not found")
    if session.user_id != user.id and not user.is_admin:
        raise Forbidden("You do not have access to this download session")
    return session


def list_download_sessions(
    db: Session,
    page: int,
    limit: int,
    status: str | None = None,
    project_id: str | None = None,
) -> tuple[list[DownloadSession], int]:
    q = db.query(DownloadSession)
    if status:
        q = q.filter(DownloadSession.status == status.upper())
    if project_id:
        q = q.filter(DownloadSession.project_id == project_id)
    total = q.count()
    rows = (
        q.order_by(DownloadSession.created_at.desc(), DownloadSession.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return rows, total


def get_project_download_analytics(db: Session, project: Project) -> dict[str, Any]:
    sessions = db.query(DownloadSession).filter(DownloadSession.project_id == project.id)
    total_downloads = int(
        sessions.with_entities(
            func.coalesce(func.sum(DownloadSession.download_count), 0)
        ).scalar()
        or 0
    )
    unique = int(
        sessions.filter(DownloadSession.download_count > 0)
        .with_entities(func.count(distinct(DownloadSession.user_id)))
        .scalar()
        or 0
    )

    logs = db.query(DownloadLog).filter(DownloadLog.project_id == project.id)
    completed = logs.filter(DownloadLog.action == DownloadAction.DOWNLOAD_COMPLETED.value)
    failed_count = logs.filter(
        DownloadLog.action == DownloadAction.DOWNLOAD_FAILED.value
    ).count()

    recent = completed.order_by(DownloadLog.created_at.desc()).limit(10).all()
    bytes_delivered = sum(
        int((row.details or {}).get("bytes_transferred") or 0) for row in completed.all()
    )

    return {
        "project_id": project.id,
        "total_downloads": total_downloads,
        "unique_downloaders": unique,
        "completed_attempts": completed.count(),
        "failed_attempts": failed_count,
        "bytes_delivered": bytes_delivered,
        "recent_downloads": [
            {
                "session_id": row.download_session_id,
                "user_id": row.user_id,
                "downloaded_at": row.created_at,
                "bytes_transferred": (row.details or {}).get("bytes_transferred"),
            }
            for row in recent
        ],
    }
