import io
import sys
from pathlib import Path
from urllib.parse import quote

import pytest
from botocore.exceptions import ClientError
from sqlmodel import create_engine

project_root_str = str(Path(__file__).resolve().parents[1])
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)

from filevault.core.metrics import MetricsStore  # noqa: E402
from filevault.db import init_db  # noqa: E402
from filevault.services.documents import DocumentRegistry  # noqa: E402
from filevault.services.job_store import ArchiveJobStore  # noqa: E402
from filevault.services.uploads import ChunkedUploadManager  # noqa: E402
from filevault.sessions import MemorySessionStore  # noqa: E402
from filevault.storage import LocalDisk, RemoteObjectDisk  # noqa: E402


class FakeS3Client:
    """Just enough of the boto3 S3 client for the calls the disks make."""

    def __init__(self):
        self.objects = {}
        self.range_requests = []
        self.uploaded_keys = []

    @staticmethod
    def _missing(operation, code="NoSuchKey"):
        return ClientError({"Error": {"Code": code, "Message": "Not Found"}}, operation)

    def put_object(self, Bucket, Key, Body, IfNoneMatch=None):
        if IfNoneMatch == "*" and (Bucket, Key) in self.objects:
            raise ClientError(
                {"Error": {"Code": "PreconditionFailed", "Message": "At least one of the pre-conditions failed"}},
                "PutObject",
            )
        self.objects[(Bucket, Key)] = bytes(Body)
        return {}

    def upload_fileobj(self, Fileobj, Bucket, Key):
        self.objects[(Bucket, Key)] = Fileobj.read()
        self.uploaded_keys.append(Key)

    def get_object(self, Bucket, Key, Range=None):
        if (Bucket, Key) not in self.objects:
            raise self._missing("GetObject")
        data = self.objects[(Bucket, Key)]
        if Range is not None:
            start, end = Range[len("bytes="):].split("-")
            self.range_requests.append((Key, int(start), int(end)))
            data = data[int(start):int(end) + 1]
        return {"Body": io.BytesIO(data), "ContentLength": len(data)}

    def head_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise self._missing("HeadObject", code="404")
        return {"ContentLength": len(self.objects[(Bucket, Key)])}

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)
        return {}

    def generate_presigned_url(self, ClientMethod, Params=None, ExpiresIn=3600):
        disposition = quote(Params["ResponseContentDisposition"])
        return (
            f"https://s3.test/{Params['Bucket']}/{Params['Key']}"
            f"?X-Amz-Expires={ExpiresIn}&response-content-disposition={disposition}"
        )

    def keys(self, prefix=""):
        return sorted(key for _, key in self.objects if key.startswith(prefix))


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def s3_disk(s3_client):
    return RemoteObjectDisk("s3", "test-bucket", client=s3_client, range_chunk_size=1024)


@pytest.fixture
def local_disk(tmp_path):
    return LocalDisk("local", str(tmp_path / "disk"), "/files/local", "test-signing-key")


@pytest.fixture
def disks(s3_disk, local_disk):
    return {"s3": s3_disk, "local": local_disk}


@pytest.fixture
def engine(tmp_path):
    bind = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})
    init_db(bind)
    yield bind
    bind.dispose()


@pytest.fixture
def registry(engine):
    return DocumentRegistry(engine)


@pytest.fixture
def job_store(engine):
    return ArchiveJobStore(engine)


@pytest.fixture
def metrics_store():
    return MetricsStore()


@pytest.fixture
def upload_manager(registry, disks, metrics_store):
    return ChunkedUploadManager(
        sessions=MemorySessionStore(),
        documents=registry,
        disk_resolver=disks.__getitem__,
        upload_disk="s3",
        chunk_size=10 * 1024 * 1024,
        metrics_store=metrics_store,
    )
