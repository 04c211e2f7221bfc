import importlib
import io
import sys
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from conftest import FakeS3Client

BUCKET = "app-bucket"


def _prepare_client(tmp_path, monkeypatch, *, filesystem_disk="s3", chunk_size=str(4)):
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        sys.path.insert(0, project_root_str)

    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("ENABLE_WORKER", "false")
    monkeypatch.setenv("FILESYSTEM_DISK", filesystem_disk)
    monkeypatch.setenv("ARCHIVE_DISK", filesystem_disk)
    monkeypatch.setenv("S3_BUCKET", BUCKET)
    monkeypatch.setenv("LOCAL_DISK_ROOT", str(tmp_path / "local"))
    monkeypatch.setenv("SIGNING_KEY", "test-signing-key")
    monkeypatch.setenv("UPLOAD_CHUNK_SIZE_BYTES", chunk_size)
    monkeypatch.setenv("ARCHIVE_RETRY_BASE_DELAY_SECONDS", "0")

    # Reload modules so configuration changes take effect cleanly.
    module_order = [
        "filevault.config",
        "filevault.core.metrics",
        "filevault.core.redis_client",
        "filevault.db",
        "filevault.storage",
        "filevault.sessions",
        "filevault.locks",
        "filevault.services.stats",
        "filevault.services.documents",
        "filevault.services.job_store",
        "filevault.services.uploads",
        "filevault.services.archive_builder",
        "filevault.services.archives",
        "filevault.worker",
        "filevault.deps",
        "filevault.api.routes",
        "filevault.main",
    ]

    for module_name in module_order:
        module = importlib.import_module(module_name)
        importlib.reload(module)

    fake_s3 = FakeS3Client()
    monkeypatch.setattr(sys.modules["filevault.storage"], "_build_s3_client", lambda: fake_s3)

    main = sys.modules["filevault.main"]
    test_client = TestClient(main.app)
    test_client.s3 = fake_s3  # type: ignore[attr-defined]
    return test_client


@pytest.fixture
def client(tmp_path, monkeypatch):
    test_client = _prepare_client(tmp_path, monkeypatch)
    with test_client as c:
        yield c


def _upload(client, filename, data, chunk_size=4, order=None, folder=None):
    total_chunks = max(1, -(-len(data) // chunk_size))
    body = {"filename": filename, "total_size": len(data), "total_chunks": total_chunks}
    if folder:
        body["folder"] = folder
    init = client.post("/files/chunked/init", json=body)
    assert init.status_code == 201
    upload_id = init.json()["upload_id"]

    for index in order or range(total_chunks):
        chunk = data[index * chunk_size:(index + 1) * chunk_size]
        response = client.post(
            "/files/chunked/upload",
            data={"upload_id": upload_id, "chunk_index": str(index)},
            files={"chunk": ("blob", chunk, "application/octet-stream")},
        )
        assert response.status_code == 200

    finalize = client.post("/files/chunked/finalize", json={"upload_id": upload_id})
    assert finalize.status_code == 201
    return finalize.json()["document"]


def test_chunked_upload_round_trip(client):
    init = client.post("/files/chunked/init", json={"filename": "hello.txt", "total_size": 10, "total_chunks": 3})
    assert init.status_code == 201
    payload = init.json()
    assert payload["chunk_size"] == 4
    upload_id = payload["upload_id"]

    for index, chunk in [(2, b"ij"), (0, b"abcd"), (1, b"efgh")]:
        response = client.post(
            "/files/chunked/upload",
            data={"upload_id": upload_id, "chunk_index": str(index)},
            files={"chunk": ("blob", chunk, "application/octet-stream")},
        )
        assert response.status_code == 200

    assert response.json() == {
        "message": "Chunk uploaded successfully",
        "uploaded_chunks": 3,
        "total_chunks": 3,
        "complete": True,
    }

    status = client.get(f"/files/chunked/{upload_id}")
    assert status.json()["uploaded_chunks"] == [0, 1, 2]

    finalize = client.post("/files/chunked/finalize", json={"upload_id": upload_id})
    assert finalize.status_code == 201
    document = finalize.json()["document"]
    assert document["original_name"] == "hello.txt"
    assert document["size"] == 10
    assert client.s3.objects[(BUCKET, document["path"])] == b"abcdefghij"  # type: ignore[attr-defined]

    assert client.get(f"/files/chunked/{upload_id}").status_code == 404


def test_duplicate_chunk_is_acknowledged(client):
    init = client.post("/files/chunked/init", json={"filename": "a.txt", "total_size": 8, "total_chunks": 2})
    upload_id = init.json()["upload_id"]
    form = {"upload_id": upload_id, "chunk_index": "0"}

    client.post("/files/chunked/upload", data=form, files={"chunk": ("blob", b"abcd", "text/plain")})
    again = client.post("/files/chunked/upload", data=form, files={"chunk": ("blob", b"abcd", "text/plain")})

    assert again.status_code == 200
    assert again.json()["uploaded_chunks"] == 1
    assert again.json()["message"] == "Chunk already received"


def test_upload_errors_map_to_status_codes(client):
    init = client.post("/files/chunked/init", json={"filename": "a.txt", "total_size": 8, "total_chunks": 2})
    upload_id = init.json()["upload_id"]

    bad_index = client.post(
        "/files/chunked/upload",
        data={"upload_id": upload_id, "chunk_index": "5"},
        files={"chunk": ("blob", b"abcd", "text/plain")},
    )
    assert bad_index.status_code == 422
    assert bad_index.json()["detail"] == "Invalid chunk index."

    incomplete = client.post("/files/chunked/finalize", json={"upload_id": upload_id})
    assert incomplete.status_code == 409
    assert incomplete.json() == {
        "detail": "Not all chunks have been uploaded.",
        "uploaded_chunks": 0,
        "total_chunks": 2,
    }

    missing = client.post("/files/chunked/finalize", json={"upload_id": "nope"})
    assert missing.status_code == 404

    too_long = client.post("/files/chunked/init", json={"filename": "x" * 256, "total_size": 1, "total_chunks": 1})
    assert too_long.status_code == 422


def test_abort_discards_upload(client):
    init = client.post("/files/chunked/init", json={"filename": "a.txt", "total_size": 8, "total_chunks": 2})
    upload_id = init.json()["upload_id"]
    client.post(
        "/files/chunked/upload",
        data={"upload_id": upload_id, "chunk_index": "1"},
        files={"chunk": ("blob", b"efgh", "text/plain")},
    )

    response = client.post("/files/chunked/abort", json={"upload_id": upload_id})

    assert response.status_code == 200
    assert client.s3.keys("temp-uploads/") == []  # type: ignore[attr-defined]
    assert client.get(f"/files/chunked/{upload_id}").status_code == 404


def test_document_listing_is_paginated(client):
    for i in range(3):
        _upload(client, f"file{i}.txt", b"data")

    listing = client.get("/files", params={"page": 1})
    assert listing.status_code == 200
    payload = listing.json()
    assert payload["total"] == 3
    assert payload["per_page"] == 25
    assert payload["last_page"] == 1
    assert {doc["original_name"] for doc in payload["data"]} == {"file0.txt", "file1.txt", "file2.txt"}


def test_zip_job_completes_with_download_link(client):
    first = _upload(client, "one.txt", b"first file")
    second = _upload(client, "two.txt", b"second", order=[1, 0])

    created = client.post("/files/zip-jobs", json={"document_ids": [second["id"], first["id"]]})
    assert created.status_code == 202
    job_id = created.json()["job_id"]

    status = client.get(f"/files/zip-jobs/{job_id}")
    assert status.status_code == 200
    payload = status.json()
    assert payload["status"] == "completed"
    assert payload["progress"] == 100
    assert payload["expires_in_minutes"] == 15
    query = parse_qs(urlparse(payload["download_url"]).query)
    assert query["X-Amz-Expires"] == ["900"]
    assert query["response-content-disposition"][0].startswith('attachment; filename="filevault_')

    archive_key = urlparse(payload["download_url"]).path.split(f"/{BUCKET}/", 1)[1]
    archive = zipfile.ZipFile(io.BytesIO(client.s3.objects[(BUCKET, archive_key)]))  # type: ignore[attr-defined]
    assert archive.namelist() == ["two.txt", "one.txt"]

    metrics = client.get("/metrics").json()
    assert metrics["archives_requested"] == 1
    assert metrics["archives_completed"] == 1
    assert metrics["total_files"] == 2


def test_zip_job_validation(client):
    assert client.post("/files/zip-jobs", json={"document_ids": []}).status_code == 422
    assert client.post("/files/zip-jobs", json={"document_ids": [4242]}).status_code == 404
    assert client.get("/files/zip-jobs/unknown").status_code == 404


def test_zip_job_rejects_partially_unknown_ids(client):
    document = _upload(client, "one.txt", b"first file")

    response = client.post("/files/zip-jobs", json={"document_ids": [document["id"], 999999]})

    assert response.status_code == 404
    assert response.json()["missing"] == [999999]
    jobs = sys.modules["filevault.deps"].get_job_store()
    assert jobs.ids_with_status("queued", datetime.now(timezone.utc) + timedelta(minutes=1)) == []
    assert client.get("/metrics").json()["archives_requested"] == 0
    assert client.s3.keys("filevault/archives/") == []  # type: ignore[attr-defined]


def test_zip_job_rejects_documents_on_local_disk(tmp_path, monkeypatch):
    with _prepare_client(tmp_path, monkeypatch) as c:
        registry = sys.modules["filevault.deps"].get_document_registry()
        doc = registry.create(
            disk="local",
            path="uploads/a.txt",
            original_name="a.txt",
            extension="txt",
            size=1,
            mime_type="text/plain",
        )
        response = c.post("/files/zip-jobs", json={"document_ids": [doc.id]})
        assert response.status_code == 422


def test_local_signed_download(client, tmp_path):
    storage = sys.modules["filevault.storage"]
    disk = storage.get_disk("local")
    disk.put("archives/bundle.zip", b"PK-data")
    url = disk.signed_download_url("archives/bundle.zip", timedelta(minutes=5), "bundle.zip", "application/zip")

    response = client.get(url)
    assert response.status_code == 200
    assert response.content == b"PK-data"
    assert response.headers["content-disposition"] == "attachment; filename=\"bundle.zip\"; filename*=UTF-8''bundle.zip"

    tampered = client.get(url.replace("bundle.zip?", "other.zip?"))
    assert tampered.status_code == 403


def test_health_and_metrics(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json() == {"status": "ok", "database": True}

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert metrics.headers["Cache-Control"] == "no-store, no-cache, must-revalidate"
    assert metrics.json()["total_files"] == 0
