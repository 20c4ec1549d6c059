from datetime import timedelta
from pathlib import Path

from fastapi.testclient import TestClient

import vibecoder.routers.downloads as downloads_router
from conftest import FlakyFile, auth
from vibecoder.core.clock import utcnow
from vibecoder.core.config import settings
from vibecoder.main import app
from vibecoder.models.download import DownloadSession, DownloadStatus
from vibecoder.models.transaction import TransactionStatus

CONTENT = b"#!/usr/bin/env vibe\n" * 200


def _session(client, user, project):
    r = client.post(f"/downloads/projects/{project.id}/session", headers=auth(user))
    assert r.status_code == 201, r.text
    return r.json()["data"]


def test_purchase_status(client, seller, buyer, make_project, make_transaction):
    project = make_project(seller)

    r = client.get(f"/downloads/projects/{project.id}/purchase-status", headers=auth(buyer))
    assert r.json()["data"] == {
        "projectId": project.id,
        "hasPurchased": False,
        "accessType": "PURCHASED",
        "canDownload": False,
    }

    make_transaction(project, buyer)
    r = client.get(f"/downloads/projects/{project.id}/purchase-status", headers=auth(buyer))
    assert r.json()["data"]["canDownload"] is True


def test_unpaid_buyer_cannot_open_session(client, seller, buyer, make_project):
    project = make_project(seller)
    r = client.post(f"/downloads/projects/{project.id}/session", headers=auth(buyer))
    assert r.status_code == 403
    assert r.json()["success"] is False


def test_purchase_to_file(client, db, seller, buyer, make_project, make_transaction):
    project = make_project(seller, content=CONTENT, file_name="vibe kit.zip")
    make_transaction(project, buyer)

    created = _session(client, buyer, project)
    assert created["accessType"] == "PURCHASED"

    r = client.post("/downloads/validate", json={"token": created["token"]})
    data = r.json()["data"]
    assert data["isValid"] is True
    assert data["project"]["fileName"] == "vibe kit.zip"
    assert data["session"]["downloadCount"] == 0

    r = client.get("/downloads/file", params={"token": created["token"]})
    assert r.status_code == 200
    assert r.content == CONTENT
    assert r.headers["content-length"] == str(len(CONTENT))
    assert r.headers["content-disposition"] == (
        "attachment; filename=\"vibe kit.zip\"; filename*=UTF-8''vibe%20kit.zip"
    )
    assert r.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert r.headers["content-type"] == "application/zip"

    row = db.query(DownloadSession).filter_by(token=created["token"]).one()
    assert row.status == DownloadStatus.COMPLETED
    assert row.download_count == 1
    assert row.bytes_transferred == len(CONTENT)


def test_file_without_token(client):
    r = client.get("/downloads/file")
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "Download token is required"}


def test_file_with_unknown_token(client):
    r = client.get("/downloads/file", params={"token": "forged"})
    assert r.status_code == 403
    assert r.json()["error"] == "Invalid download access"


def test_expired_token_is_refused(client, db, seller, make_project):
    project = make_project(seller)
    created = _session(client, seller, project)
    row = db.query(DownloadSession).filter_by(token=created["token"]).one()
    row.expires_at = utcnow() - timedelta(minutes=5)
    db.commit()

    assert client.get("/downloads/file", params={"token": created["token"]}).status_code == 403
    r = client.post("/downloads/validate", json={"token": created["token"]})
    assert r.status_code == 200
    assert r.json()["data"]["isValid"] is False
    assert r.json()["data"]["error"] == "Download session has expired"


def test_refunded_purchase_loses_access(
    client, db, seller, buyer, make_project, make_transaction
):
    project = make_project(seller)
    tx = make_transaction(project, buyer)
    created = _session(client, buyer, project)

    tx.status = TransactionStatus.REFUNDED.value
    db.commit()

    assert client.get("/downloads/file", params={"token": created["token"]}).status_code == 403


def test_validate_without_token_is_not_an_error(client):
    r = client.post("/downloads/validate", json={})
    assert r.status_code == 200
    assert r.json()["data"]["isValid"] is False


def test_missing_file_fails_before_streaming(client, db, seller, make_project, upload_dir):
    project = make_project(seller)
    created = _session(client, seller, project)
    (upload_dir / "projects" / project.main_file).unlink()

    r = client.get("/downloads/file", params={"token": created["token"]})

    # the validator reports the record as present; the disk disagrees
    assert r.status_code == 404
    row = db.query(DownloadSession).filter_by(token=created["token"]).one()
    assert row.status == DownloadStatus.FAILED


def test_unreadable_file_is_json_500(client, db, seller, make_project, monkeypatch):
    project = make_project(seller)
    created = _session(client, seller, project)

    def refuse(*args, **kwargs):
        raise PermissionError("denied")

    monkeypatch.setattr(downloads_router, "open", refuse, raising=False)

    r = client.get("/downloads/file", params={"token": created["token"]})

    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "File download failed"}
    row = db.query(DownloadSession).filter_by(token=created["token"]).one()
    assert row.status == DownloadStatus.FAILED
    assert row.bytes_transferred == 0


def test_disk_failure_mid_body_truncates_without_json_tail(
    client, db, seller, make_project, monkeypatch
):
    project = make_project(seller, content=CONTENT)
    created = _session(client, seller, project)
    cut = len(CONTENT) * 40 // 100

    monkeypatch.setattr(settings, "DOWNLOAD_CHUNK_SIZE", 400)
    monkeypatch.setattr(
        downloads_router,
        "open",
        lambda path, mode: FlakyFile(Path(path).read_bytes(), fail_at=cut),
        raising=False,
    )

    # headers are already out when the disk fails; let the partial body through
    partial_client = TestClient(app, raise_server_exceptions=False)
    r = partial_client.get("/downloads/file", params={"token": created["token"]})

    assert r.status_code == 200
    assert r.headers["content-length"] == str(len(CONTENT))
    assert r.content == CONTENT[:cut]
    assert b"success" not in r.content

    db.expire_all()
    row = db.query(DownloadSession).filter_by(token=created["token"]).one()
    assert row.status == DownloadStatus.FAILED
    assert row.bytes_transferred == cut == project.file_size * 40 // 100


def test_history_and_session_status(client, seller, buyer, make_project):
    free = make_project(seller, price=0)
    created = _session(client, buyer, free)

    r = client.get("/downloads/history", headers=auth(buyer))
    page = r.json()["data"]
    assert page["pagination"]["total"] == 1
    assert page["sessions"][0]["projectTitle"] == free.title
    assert page["sessions"][0]["accessType"] == "FREE"

    r = client.get(f"/downloads/sessions/{created['downloadId']}", headers=auth(buyer))
    assert r.json()["data"]["status"] == "INITIATED"
    r = client.get(f"/downloads/sessions/{created['downloadId']}", headers=auth(seller))
    assert r.status_code == 403


def test_admin_session_listing(client, seller, buyer, admin, make_project):
    free = make_project(seller, price=0)
    _session(client, buyer, free)
    _session(client, seller, free)

    assert client.get("/downloads/admin/sessions", headers=auth(buyer)).status_code == 403
    r = client.get(
        "/downloads/admin/sessions",
        params={"projectId": free.id, "status": "INITIATED"},
        headers=auth(admin),
    )
    assert r.json()["data"]["pagination"]["total"] == 2


def test_project_analytics_owner_only(client, seller, buyer, make_user, make_project):
    project = make_project(seller, price=0, content=CONTENT)
    created = _session(client, buyer, project)
    client.get("/downloads/file", params={"token": created["token"]})

    r = client.get(f"/downloads/projects/{project.id}/analytics", headers=auth(seller))
    assert r.status_code == 200
    stats = r.json()["data"]
    assert stats["totalDownloads"] == 1
    assert stats["completedAttempts"] == 1
    assert stats["bytesDelivered"] == len(CONTENT)

    other = make_user()
    r = client.get(f"/downloads/projects/{project.id}/analytics", headers=auth(other))
    assert r.status_code == 403
