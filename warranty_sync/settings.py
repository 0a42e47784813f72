"""Configuration for the receipt & warranty sync engine."""
import os
import uuid
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = BASE_DIR / "logs"
LOGS_DIR.mkdir(exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")
LOG_FILE = os.getenv("LOG_FILE", "sync.log")  # under LOGS_DIR; empty disables file logging
LOG_FILE_MAX_BYTES = int(os.getenv("LOG_FILE_MAX_BYTES", str(10 * 1024 * 1024)))
LOG_FILE_BACKUPS = int(os.getenv("LOG_FILE_BACKUPS", "5"))
# Per-logger overrides, e.g. "urllib3=ERROR,warranty_sync=DEBUG"
LOG_LEVELS = os.getenv("LOG_LEVELS", "")

# Remote sync API
API_BASE_URL = os.getenv("API_BASE_URL", "")
API_TOKEN = os.getenv("API_TOKEN")  # optional pre-provisioned session
USER_ID = os.getenv("USER_ID")
REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "30"))

# Local durable store (shared by every instance on this device)
DATABASE_PATH = os.getenv("DATABASE_PATH", str(BASE_DIR / "data" / "warranty_sync.db"))
DB_BUSY_TIMEOUT = float(os.getenv("DB_BUSY_TIMEOUT", "10"))
STALE_IN_FLIGHT_SECONDS = int(os.getenv("STALE_IN_FLIGHT_SECONDS", "600"))

# Cross-instance broadcast
BROADCAST_SPOOL_DIR = os.getenv("BROADCAST_SPOOL_DIR", str(BASE_DIR / "data" / "broadcast"))
BROADCAST_POLL_INTERVAL = float(os.getenv("BROADCAST_POLL_INTERVAL", "0.5"))  # seconds between spool scans
BROADCAST_MESSAGE_TTL = int(os.getenv("BROADCAST_MESSAGE_TTL", "60"))
INSTANCE_ID = os.getenv("INSTANCE_ID") or uuid.uuid4().hex


def validate_config():
    """Validate required configuration."""
    errors = []

    if not API_BASE_URL:
        errors.append("API_BASE_URL is required")
    elif not API_BASE_URL.startswith(("http://", "https://")):
        errors.append(f"API_BASE_URL must be an http(s) URL: {API_BASE_URL}")

    if API_TOKEN and not USER_ID:
        errors.append("USER_ID is required when API_TOKEN is set")

    if REQUEST_TIMEOUT <= 0:
        errors.append("REQUEST_TIMEOUT must be positive")

    for name, value in (("DATABASE_PATH", DATABASE_PATH), ("BROADCAST_SPOOL_DIR", BROADCAST_SPOOL_DIR)):
        path = Path(value)
        if not path.is_absolute():
            errors.append(f"{name} must be absolute: {value}")
            continue
        target = path.parent if name == "DATABASE_PATH" else path
        try:
            target.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            errors.append(f"Cannot create {name}: {e}")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
