"""Runtime settings for audience-sync, read from the environment (.env supported)."""
import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.environ.get("DATABASE_URL")

DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", "5"))
DB_MAX_OVERFLOW = int(os.environ.get("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.environ.get("DB_POOL_TIMEOUT", "30"))

# Sync orchestration
SYNC_BATCH_SIZE = int(os.environ.get("SYNC_BATCH_SIZE", "100"))
INCREMENTAL_FALLBACK_HOURS = int(os.environ.get("INCREMENTAL_FALLBACK_HOURS", "24"))
JOB_ERROR_TAIL = int(os.environ.get("JOB_ERROR_TAIL", "20"))
JOB_STATUS_ERRORS = 5
CONTACT_SYNC_ERROR_LIMIT = int(os.environ.get("CONTACT_SYNC_ERROR_LIMIT", "10"))

# Bulk export
EXPORT_DIRECT_LIMIT = int(os.environ.get("EXPORT_DIRECT_LIMIT", "10000"))
EXPORT_PAGE_SIZE = int(os.environ.get("EXPORT_PAGE_SIZE", "1000"))
EXPORT_CHUNK_SIZE = int(os.environ.get("EXPORT_CHUNK_SIZE", "10000"))
EXPORT_PROGRESS_TTL_SECONDS = int(os.environ.get("EXPORT_PROGRESS_TTL_SECONDS", "300"))
EXPORT_TIMEOUT_SECONDS = int(os.environ.get("EXPORT_TIMEOUT_SECONDS", "600"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
