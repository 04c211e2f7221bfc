import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"true", "1", "yes"}


DB_URL = os.getenv("DB_URL", "sqlite:///./filevault.db")
DB_CONNECT_ARGS = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Redis Configuration (sessions + job locks fall back to memory when unset)
REDIS_URL = os.getenv("REDIS_URL", "")

# Disks
FILESYSTEM_DISK = os.getenv("FILESYSTEM_DISK", "s3")
ARCHIVE_DISK = os.getenv("ARCHIVE_DISK", FILESYSTEM_DISK)
LOCAL_DISK_ROOT = os.getenv(
    "LOCAL_DISK_ROOT", os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "storage"))
)
LOCAL_DISK_URL = os.getenv("LOCAL_DISK_URL", "/files/local")
SIGNING_KEY = os.getenv("SIGNING_KEY", "filevault-dev-signing-key")

# S3 Configuration
S3_BUCKET = os.getenv("S3_BUCKET", "filevault")
S3_REGION = os.getenv("S3_REGION", "us-east-1")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "") or None
AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID", "") or None
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY", "") or None
S3_USE_PATH_STYLE = _flag("S3_USE_PATH_STYLE", "false")

# Chunked uploads
UPLOAD_DEFAULT_FOLDER = os.getenv("UPLOAD_DEFAULT_FOLDER", "uploads")
UPLOAD_TEMP_PREFIX = os.getenv("UPLOAD_TEMP_PREFIX", "temp-uploads").strip("/")
UPLOAD_SESSION_TTL_HOURS = int(os.getenv("UPLOAD_SESSION_TTL_HOURS", "24"))
UPLOAD_CHUNK_SIZE = int(os.getenv("UPLOAD_CHUNK_SIZE_BYTES", str(10 * 1024 * 1024)))
MAX_FILENAME_LENGTH = int(os.getenv("MAX_FILENAME_LENGTH", "255"))

# Archive jobs
ARCHIVE_PREFIX = os.getenv("ARCHIVE_PREFIX", "filevault/archives").strip("/")
ARCHIVE_FILENAME_PREFIX = os.getenv("ARCHIVE_FILENAME_PREFIX", "filevault")
ARCHIVE_RANGE_CHUNK_SIZE = int(os.getenv("ARCHIVE_RANGE_CHUNK_BYTES", str(1024 * 1024)))
ARCHIVE_JOB_TIMEOUT_SECONDS = max(60, min(7200, int(os.getenv("ARCHIVE_JOB_TIMEOUT_SECONDS", "1800"))))
ARCHIVE_LOCK_TTL_SECONDS = int(os.getenv("ARCHIVE_LOCK_TTL_SECONDS", "7200"))
ARCHIVE_MAX_ATTEMPTS = max(1, int(os.getenv("ARCHIVE_MAX_ATTEMPTS", "3")))
ARCHIVE_RETRY_BASE_DELAY_SECONDS = float(os.getenv("ARCHIVE_RETRY_BASE_DELAY_SECONDS", "1"))
ARCHIVE_DOWNLOAD_TTL_MINUTES = int(os.getenv("ARCHIVE_DOWNLOAD_TTL_MINUTES", "15"))

# Worker
ENABLE_WORKER = _flag("ENABLE_WORKER", "true")
WORKER_POOL_SIZE = max(1, int(os.getenv("WORKER_POOL_SIZE", "4")))
RECOVERY_INTERVAL_MINUTES = int(os.getenv("RECOVERY_INTERVAL_MINUTES", "10"))
RECOVERY_QUEUED_GRACE_MINUTES = int(os.getenv("RECOVERY_QUEUED_GRACE_MINUTES", "30"))
