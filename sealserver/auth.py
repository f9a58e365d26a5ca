"""
Authentication module for JWT token management.

Provides token creation and verification for registered users.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from .config import ServerSettings, settings


class Token(BaseModel):
    """Token response model"""
    access_token: str
    token_type: str
    username: str


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None,
    config: ServerSettings = settings,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in the token
        expires_delta: Token expiration time
        config: Settings holding the signing secret

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=config.access_token_expire_minutes)

    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, config.secret_key, algorithm=config.jwt_algorithm)


def verify_token(token: str, config: ServerSettings = settings) -> Optional[str]:
    """
    Verify a JWT token and extract username.

    Args:
        token: JWT token to verify
        config: Settings holding the signing secret

    Returns:
        Username if valid, None otherwise
    """
    try:
        payload = jwt.decode(token, config.secret_key, algorithms=[config.jwt_algorithm])
    except JWTError:
        return None
    username = payload.get("sub")
    if not isinstance(username, str):
        return None
    return username
