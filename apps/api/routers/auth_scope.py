"""Request authentication: user sessions and the job-runner trigger."""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


logger = logging.getLogger(__name__)
auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


@dataclass
class RunnerContext:
    caller: str


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return the session user and reject requests made on behalf of another user."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def require_job_runner(
    x_supabase_caller: Optional[str] = Header(default=None),
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> RunnerContext:
    """Allow trusted schedulers by caller name, or any caller holding the service key."""
    caller = (x_supabase_caller or "").strip()
    if caller and caller in settings.JOB_RUNNER_ALLOWED_CALLERS:
        return RunnerContext(caller=caller)

    service_key = settings.JOB_RUNNER_SERVICE_KEY
    if (
        service_key
        and credentials
        and credentials.scheme.lower() == "bearer"
        and hmac.compare_digest(credentials.credentials, service_key)
    ):
        return RunnerContext(caller=caller or "service_key")

    logger.warning("Rejected job runner trigger from caller=%r", caller or None)
    raise HTTPException(status_code=401, detail="Unauthorized")


async def require_billing_admin(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> None:
    """Guard credit grants behind the operator key; users cannot top themselves up."""
    admin_key = settings.BILLING_ADMIN_KEY
    if not admin_key:
        raise HTTPException(status_code=503, detail="Manual top-ups are disabled. Configure BILLING_ADMIN_KEY.")
    if (
        credentials
        and credentials.scheme.lower() == "bearer"
        and hmac.compare_digest(credentials.credentials, admin_key)
    ):
        return None
    logger.warning("Rejected manual credit top-up without a valid admin key")
    raise HTTPException(status_code=401, detail="Unauthorized")
