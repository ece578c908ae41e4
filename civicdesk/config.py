# Runtime configuration for the civic report triage service

import os
import logging
from pathlib import Path

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
# Try multiple .env locations: next to this package, one level up, then cwd
_package_dir = Path(__file__).resolve().parent
for _env_path in [_package_dir / ".env", _package_dir.parent / ".env", Path.cwd() / ".env"]:
    if _env_path.is_file():
        load_dotenv(_env_path)
        break
else:
    load_dotenv()  # fall back to python-dotenv's own search

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

# ---------------------------------------------------------------------------
# Connection strings
# ---------------------------------------------------------------------------
MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB  = os.getenv("MONGODB_DB", "civic_reports")

JWT_SECRET = os.getenv("JWT_SECRET", "")
if not JWT_SECRET or len(JWT_SECRET) < 32:
    raise RuntimeError(
        "FATAL: JWT_SECRET must be set in the environment and be at least 32 characters. "
        "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
    )
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# ---------------------------------------------------------------------------
# Reverse geocoding (OpenCage)
# ---------------------------------------------------------------------------
OPENCAGE_API_KEY      = os.getenv("OPENCAGE_API_KEY")
GEOCODER_URL          = os.getenv("GEOCODER_URL", "https://api.opencagedata.com/geocode/v1/json")
GEOCODER_COUNTRY_CODE = os.getenv("GEOCODER_COUNTRY_CODE", "in")
GEOCODER_TIMEOUT      = float(os.getenv("GEOCODER_TIMEOUT", "10"))

# ---------------------------------------------------------------------------
# Triage tuning
# ---------------------------------------------------------------------------
JURISDICTION_RADIUS_M = int(os.getenv("JURISDICTION_RADIUS_M", "20000"))
MAX_WRITE_RETRIES     = int(os.getenv("MAX_WRITE_RETRIES", "5"))
MEDIA_MAX_BYTES       = int(os.getenv("MEDIA_MAX_BYTES", str(10 * 1024 * 1024)))
REPORT_RATE_LIMIT     = os.getenv("REPORT_RATE_LIMIT", "10/minute")
