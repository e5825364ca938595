import logging
from typing import Callable

from fastapi import Depends, HTTPException
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy.orm import Session

from settlement.db.session import get_db
from settlement.core.security import decode_token, bearer_matches
from settlement.models.user import User
from settlement.services.job_context import JobContext, build_job_context

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)

JobContextFactory = Callable[[Session, str], JobContext]


def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    user = db.get(User, user_id) if user_id else None
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


def require_roles(*roles: str):
    def _guard(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return _guard


def get_job_context_factory() -> JobContextFactory:
    """Build the job context only after the caller is authenticated. Overridden in tests."""
    return build_job_context


def check_shared_secret(authorization: str | None, secret: str, name: str) -> JSONResponse | None:
    """None when the bearer matches; otherwise the error response for a cron-style trigger."""
    if not secret:
        logger.error("%s is not configured, refusing to run", name)
        return JSONResponse(status_code=500, content={"error": "Server misconfigured"})
    if not bearer_matches(authorization, secret):
        logger.warning("unauthorized trigger attempt (%s)", name)
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})
    return None
