import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookinglink.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Staff API key guarding link issuance
STAFF_API_KEY = os.getenv("STAFF_API_KEY")

# Frontend base URL used to build /r/{token} links
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", FRONTEND_URL).split(",")
    if origin.strip()
]

# Google Calendar OAuth Configuration (refresh only, acquisition lives elsewhere)
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")

# CRM (Lawmatics-style JSON:API) Configuration
CRM_BASE_URL = os.getenv("CRM_BASE_URL", "https://api.lawmatics.com")

# Scheduling defaults
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/New_York")
# Zone the business-hours window is evaluated in; set to the firm's zone in deployment
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "UTC")
BOOKING_REQUEST_EXPIRES_DAYS = int(os.getenv("BOOKING_REQUEST_EXPIRES_DAYS", "7"))
MIN_NOTICE_HOURS_FOR_CHANGES = int(os.getenv("MIN_NOTICE_HOURS_FOR_CHANGES", "24"))
DEFAULT_SEARCH_WINDOW_DAYS = int(os.getenv("DEFAULT_SEARCH_WINDOW_DAYS", "14"))

# Outbound call timeouts (seconds)
CALENDAR_TIMEOUT_SECONDS = float(os.getenv("CALENDAR_TIMEOUT_SECONDS", "15"))
CRM_TIMEOUT_SECONDS = float(os.getenv("CRM_TIMEOUT_SECONDS", "30"))
TOKEN_TIMEOUT_SECONDS = float(os.getenv("TOKEN_TIMEOUT_SECONDS", "15"))
PROGRESS_POLL_TIMEOUT_SECONDS = float(os.getenv("PROGRESS_POLL_TIMEOUT_SECONDS", "60"))
PROGRESS_POLL_INTERVAL_SECONDS = float(os.getenv("PROGRESS_POLL_INTERVAL_SECONDS", "1"))
