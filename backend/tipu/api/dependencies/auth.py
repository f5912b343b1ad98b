# backend/tipu/api/dependencies/auth.py
"""
Authentication dependencies.

Bearer tokens are issued by the identity service; this backend only
verifies them (HS256, ``sub`` = user id) and loads the matching user.
"""

import logging
from typing import Any, Dict, Optional, cast

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from jwt import PyJWTError
from sqlalchemy.orm import Session

from ...core.config import Settings
from ...core.exceptions import UnauthorizedException
from ...models.user import User
from ...repositories.factory import RepositoryFactory
from .database import get_app_settings, get_db

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str, settings: Settings) -> Dict[str, Any]:
    payload = jwt.decode(
        token,
        settings.secret_key.get_secret_value(),
        algorithms=[settings.jwt_algorithm],
        options={"verify_aud": False},
    )
    return cast(Dict[str, Any], payload)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> User:
    """
    Resolve the caller from the ``Authorization: Bearer`` header.

    Raises:
        UnauthorizedException: Missing, invalid or expired token, or unknown user
    """
    if credentials is None or not credentials.credentials:
        raise UnauthorizedException("Not authenticated", code="NOT_AUTHENTICATED")

    try:
        payload = decode_access_token(credentials.credentials, settings)
    except PyJWTError as e:
        logger.warning(f"JWT validation error: {str(e)}")
        raise UnauthorizedException("Could not validate credentials", code="INVALID_TOKEN")

    user_id = payload.get("sub")
    if not isinstance(user_id, str):
        logger.warning("Token payload missing 'sub' field")
        raise UnauthorizedException("Could not validate credentials", code="INVALID_TOKEN")

    user = RepositoryFactory.create_user_repository(db).get_by_id(user_id)
    if user is None:
        raise UnauthorizedException("User not found", code="INVALID_TOKEN")
    return user
