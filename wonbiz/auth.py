"""Bearer token issuing and verification."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from .errors import AuthenticationError
from .models import Config


@dataclass(slots=True, frozen=True)
class AuthenticatedUser:
    user_id: str
    username: str


def issue_token(config: Config, user_id: str, username: Optional[str] = None) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "username": username or user_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=config.token_ttl_hours)).timestamp()),
    }
    return jwt.encode(claims, config.jwt_secret, algorithm=config.jwt_algorithm)


def decode_token(config: Config, token: Optional[str]) -> AuthenticatedUser:
    if not token:
        raise AuthenticationError("Access token required", missing=True)
    try:
        claims = jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except JWTError as exc:
        raise AuthenticationError("Invalid or expired token") from exc
    user_id = claims.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid or expired token")
    return AuthenticatedUser(user_id=str(user_id), username=str(claims.get("username") or user_id))
