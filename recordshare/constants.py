"""
Constants for the record sharing platform.

This module reads configuration from the environment (and a local .env file),
including storage locations, blob store endpoints and authentication policy.
"""

import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Role definitions
ROLES = {
    "PATIENT": "patient",
    "DOCTOR": "doctor",
}

# Scope value for a grant covering every record of a patient
ALL_RECORDS = "*"

# Blob store backend: "ipfs" or "local"
BLOB_STORE = os.getenv("BLOB_STORE", "ipfs")

# IPFS HTTP API and gateway
IPFS_API_URL = os.getenv("IPFS_API_URL", "http://127.0.0.1:5001/api/v0")
IPFS_GATEWAY_URL = os.getenv("IPFS_GATEWAY_URL", "http://127.0.0.1:8080/ipfs")

# Local storage
LOCAL_STORAGE_DIR = os.getenv("LOCAL_STORAGE_DIR", "local_storage")
PENDING_DIR = os.getenv("PENDING_DIR", os.path.join(LOCAL_STORAGE_DIR, "pending"))
TABLE_STORE_PATH = os.getenv("TABLE_STORE_PATH", os.path.join(LOCAL_STORAGE_DIR, "tables.json"))

# Seconds before a blob store call is abandoned
BLOB_STORE_TIMEOUT = float(os.getenv("BLOB_STORE_TIMEOUT", "10"))

# Wallet challenge policy (seconds)
CHALLENGE_MAX_AGE = int(os.getenv("CHALLENGE_MAX_AGE", "300"))
CHALLENGE_CLOCK_SKEW = int(os.getenv("CHALLENGE_CLOCK_SKEW", "30"))

# Session expiration time (in seconds)
SESSION_EXPIRATION = int(os.getenv("SESSION_EXPIRATION", "3600"))

# Signed URLs
SIGNED_URL_TTL = int(os.getenv("SIGNED_URL_TTL", "3600"))
SIGNED_URL_SECRET = os.getenv("SIGNED_URL_SECRET", "recordshare-dev-secret-change-me")

# Uploads
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", 10 * 1024 * 1024))  # 10MB default
ALLOWED_MIME_TYPES = [
    t.strip() for t in os.getenv(
        "ALLOWED_MIME_TYPES",
        "application/pdf,image/jpeg,image/png,application/msword,"
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document,"
        "text/plain",
    ).split(",") if t.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
