"""
Identity for incoming requests.

Sign-up and login happen with the external identity provider; this module only
verifies the bearer JWT it issues and exposes `(user_id, email)` to the routes.
`create_access_token` exists for scripts and tests.
"""

from typing import Optional
from datetime import datetime, timedelta, timezone
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel

from .config import get_settings

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60

# Use auto_error=False so missing credentials get the same JSON 401 as bad ones.
security = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    sub: str
    email: Optional[str] = None
    exp: Optional[int] = None


class Identity(BaseModel):
    user_id: str
    email: Optional[str] = None


def create_access_token(subject: str, email: Optional[str] = None, expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    to_encode = {"sub": str(subject)}
    if email:
        to_encode["email"] = email
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": int(expire.timestamp())})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> TokenPayload:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        return TokenPayload(**payload)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"X-Auth-Reason": "Invalid token"},
        ) from exc


def identity_from_token(token: str) -> Identity:
    payload = decode_access_token(token)
    return Identity(user_id=payload.sub, email=payload.email)


async def get_current_identity(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Identity:
    if not credentials or not getattr(credentials, "credentials", None):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"X-Auth-Reason": "No credentials"},
        )
    identity = identity_from_token(credentials.credentials)
    logger.debug("Authenticated user %s", identity.user_id)
    return identity
