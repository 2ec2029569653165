"""
Access tokens

Rate endpoints authenticate with a Bearer JWT whose subject is the merchant's
user id. Tokens are issued by the storefront's account service with the
shared SECRET_KEY; create_access_token exists for that service and for tests.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from jose import JWTError, jwt

from app.core.config import settings

ACCESS_TOKEN_TYPE = "access"


def create_access_token(subject: Union[str, int], expires_delta: Optional[timedelta] = None) -> str:
    """Sign an access token for subject (stored as a string claim)."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(subject),
        "type": ACCESS_TOKEN_TYPE,
        "iat": now,
        "exp": now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    """
    Verify signature and expiry.

    Returns the claims, or None for an invalid, expired or non-access token.
    """
    try:
        claims = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"verify_sub": False},
        )
    except JWTError:
        return None
    if claims.get("type") != ACCESS_TOKEN_TYPE or not claims.get("sub"):
        return None
    return claims
