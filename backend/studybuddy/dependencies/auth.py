"""
Bearer-token dependencies.

Almost every route also serves guests, so most depend on
`get_current_user_optional`: no token, a bad token or an unknown user all
mean guest mode. Only /api/auth/me insists on a user.

Usage:
    @router.get("/me")
    async def me(current_user: User = Depends(get_current_user)):
        return {"user": current_user.to_dict()}
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from studybuddy.database import get_db
from studybuddy.models.models import User
from studybuddy.services.auth import TokenError, get_user_id_from_token

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


def _user_for_token(db: Session, credentials: Optional[HTTPAuthorizationCredentials]) -> User:
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Access token required")

    try:
        user_id = get_user_id_from_token(credentials.credentials)
    except TokenError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise _unauthorized("Invalid or expired token")

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise _unauthorized("Invalid token - user not found")
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> User:
    """The authenticated user; 401 otherwise."""
    return _user_for_token(db, credentials)


async def get_current_user_optional(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> Optional[User]:
    """The authenticated user, or None for a guest."""
    try:
        return _user_for_token(db, credentials)
    except HTTPException:
        return None
