"""Caller identity: JWTs issued by the auth provider, plus the operator token.

The billing core never issues user tokens. It verifies them and uses the
``sub`` claim as the opaque account id.
"""

import hmac
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.config import settings
from billing_core.database import get_db
from billing_core.models import Account
from billing_core.services.unit_of_work import AccountRepository

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBearer()


# --- JWT helpers ---

def decode_caller_token(token: str) -> dict | None:
    """Verified claims, or None if the token is invalid or expired."""
    options = {"verify_aud": bool(settings.auth_jwt_audience)}
    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience or None,
            options=options,
        )
    except JWTError:
        return None
    if not claims.get("sub"):
        return None
    return claims


# --- Dependencies ---

async def get_current_account(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Resolve the caller's account, creating the trial account on first sign-in."""
    claims = decode_caller_token(credentials.credentials)
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    account = await AccountRepository(db).get_or_create(str(claims["sub"]), claims.get("email"))
    await db.commit()
    return account


def require_ops_token(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> None:
    """Operator/scheduler endpoints: bearer token must equal the cron secret."""
    if not settings.cron_secret:
        raise HTTPException(status_code=503, detail="Operations endpoints not configured")
    if not hmac.compare_digest(credentials.credentials.encode(), settings.cron_secret.encode()):
        logger.warning("Rejected operations request with invalid token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


# --- Endpoints ---

class AccountResponse(BaseModel):
    id: str
    email: str | None
    tier: str
    usage_count: int
    trial_started_at: datetime
    created_at: datetime


@router.get("/me", response_model=AccountResponse)
async def get_me(account: Account = Depends(get_current_account)):
    """The caller's account (created on first call)."""
    return AccountResponse(
        id=account.id,
        email=account.email,
        tier=account.tier.value,
        usage_count=account.usage_count,
        trial_started_at=account.trial_started_at,
        created_at=account.created_at,
    )
