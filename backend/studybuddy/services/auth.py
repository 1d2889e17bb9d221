"""
Account service: password hashing, access tokens, registration and login.

Tokens are stateless HS256 JWTs carrying the user id in `sub`. There is no
server-side session table, so logging out is the client dropping its token.
"""
import logging
import os
from datetime import datetime, timedelta
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import or_
from sqlalchemy.orm import Session

from studybuddy.models.models import User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "").strip()
if len(JWT_SECRET_KEY) < 32:
    raise RuntimeError(
        "JWT_SECRET_KEY must be set to at least 32 characters, e.g. "
        "python -c 'import secrets; print(secrets.token_urlsafe(32))'"
    )
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(7 * 24 * 60)))

MIN_PASSWORD_LENGTH = 6
TOKEN_TYPE = "access"


class TokenError(Exception):
    """Access token is malformed, tampered with or expired."""
    pass


class RegistrationError(ValueError):
    """Registration data rejected; the message is safe to show the client."""
    pass


# ==================== Passwords ====================

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def validate_password(password: str) -> Optional[str]:
    """Error message for an unacceptable password, else None."""
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    return None


# ==================== Tokens ====================

def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    issued_at = datetime.utcnow()
    lifetime = expires_delta if expires_delta is not None else timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {
        "sub": user_id,
        "type": TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    return jwt.encode(claims, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def get_user_id_from_token(token: str) -> str:
    """
    Decode an access token and return its user id.

    Raises:
        TokenError: bad signature, wrong token type, missing subject or expired
    """
    try:
        claims = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise TokenError("Token has expired")
    except JWTError as e:
        raise TokenError(f"Invalid token: {e}")

    if claims.get("type") != TOKEN_TYPE or not claims.get("sub"):
        raise TokenError("Not an access token")
    return claims["sub"]


# ==================== Accounts ====================

def find_by_login(db: Session, login: str) -> Optional[User]:
    """`login` may be either the username or the email address."""
    return db.query(User).filter(or_(User.username == login, User.email == login)).first()


def register_user(
    db: Session,
    username: str,
    email: str,
    password: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None
) -> User:
    """
    Create an account.

    Raises:
        RegistrationError: weak password, or the username/email is taken
    """
    problem = validate_password(password)
    if problem:
        raise RegistrationError(problem)

    taken = db.query(User).filter(or_(User.email == email, User.username == username)).first()
    if taken:
        raise RegistrationError("User with this email or username already exists")

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        preferences={},
        study_stats={},
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Registered user {user.id}")
    return user


def authenticate(db: Session, login: str, password: str) -> Optional[User]:
    """The active user matching `login` and `password`, with lastLoginDate stamped; else None."""
    user = find_by_login(db, login)
    if user is None or not user.is_active or not verify_password(password, user.password_hash):
        return None

    # JSON columns only notice reassignment, not in-place mutation
    user.study_stats = {**(user.study_stats or {}), "lastLoginDate": datetime.utcnow().isoformat()}
    db.commit()
    db.refresh(user)
    return user
