import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import config
from .security_utils import constant_time_compare, mask_sensitive_data

logger = logging.getLogger(__name__)

security = HTTPBearer()


def require_staff(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """Gate staff-only routes behind the shared STAFF_API_KEY bearer token"""
    if not config.STAFF_API_KEY:
        logger.error("❌ STAFF_API_KEY not configured, refusing staff request")
        raise HTTPException(status_code=503, detail="Staff access is not configured")

    token = credentials.credentials
    if not constant_time_compare(token, config.STAFF_API_KEY):
        logger.warning(f"⚠️ Rejected staff token {mask_sensitive_data(token)}")
        raise HTTPException(status_code=401, detail="Invalid staff credentials")

    return token
