import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vibecoder.db.base import Base
from vibecoder.models.project import Project
from vibecoder.models.user import User


class DownloadAccessType(str, enum.Enum):
    OWNER = "OWNER"
    PURCHASED = "PURCHASED"
    ADMIN = "ADMIN"
    FREE = "FREE"


class DownloadStatus(str, enum.Enum):
    INITIATED = "INITIATED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class DownloadAction(str, enum.Enum):
    SESSION_CREATED = "SESSION_CREATED"
    ACCESS_VALIDATED = "ACCESS_VALIDATED"
    ACCESS_DENIED = "ACCESS_DENIED"
    DOWNLOAD_STARTED = "DOWNLOAD_STARTED"
    DOWNLOAD_COMPLETED = "DOWNLOAD_COMPLETED"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"


class DownloadSession(Base):
    """
    Short-lived grant to fetch one project's file.
    Usable repeatedly until expires_at (or DOWNLOAD_MAX_COUNT, when set).
    """

    __tablename__ = "download_sessions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    token: Mapped[str] = mapped_column(
        String(120), unique=True, index=True, nullable=False
    )

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    transaction_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True
    )

    access_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DownloadStatus.INITIATED.value
    )

    download_count: Mapped[int] = mapped_column(nullable=False, default=0)
    # bytes sent on the most recent attempt
    bytes_transferred: Mapped[int] = mapped_column(nullable=False, default=0)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_download_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(400), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    project: Mapped[Project] = relationship()
    user: Mapped[User] = relationship()


class DownloadLog(Base):
    __tablename__ = "download_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    download_session_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("download_sessions.id", ondelete="CASCADE"),
        index=True,
        nullable=True,
    )
    project_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    action: Mapped[str] = mapped_column(String(24), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(400), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
