from datetime import datetime

from pydantic import BaseModel

from vibecoder.schemas.common import CamelModel, Pagination


class DownloadSessionCreatedOut(CamelModel):
    download_id: str
    token: str
    expires_at: datetime
    access_type: str


class PurchaseStatusOut(CamelModel):
    project_id: str
    has_purchased: bool
    access_type: str
    can_download: bool


class ValidateTokenIn(BaseModel):
    token: str | None = None


class ProjectFileOut(CamelModel):
    id: str
    title: str
    file_name: str | None
    file_size: int | None


class SessionSummaryOut(CamelModel):
    id: str
    access_type: str
    status: str
    expires_at: datetime
    download_count: int


class TokenValidationOut(CamelModel):
    is_valid: bool
    can_download: bool
    project: ProjectFileOut | None = None
    session: SessionSummaryOut | None = None
    error: str | None = None


class DownloadSessionOut(CamelModel):
    id: str
    project_id: str
    project_title: str | None
    user_id: str
    access_type: str
    status: str
    download_count: int
    bytes_transferred: int
    expires_at: datetime
    last_download_at: datetime | None
    created_at: datetime | None


class DownloadSessionPage(CamelModel):
    sessions: list[DownloadSessionOut]
    pagination: Pagination


class RecentDownloadOut(CamelModel):
    session_id: str | None
    user_id: str | None
    downloaded_at: datetime | None
    bytes_transferred: int | None


class DownloadAnalyticsOut(CamelModel):
    project_id: str
    total_downloads: int
    unique_downloaders: int
    completed_attempts: int
    failed_attempts: int
    bytes_delivered: int
    recent_downloads: list[RecentDownloadOut]
