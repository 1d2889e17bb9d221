"""
Authentication Router
Handles user registration, login, logout and the current-user lookup.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from studybuddy.database import get_db
from studybuddy.dependencies.auth import get_current_user
from studybuddy.models.models import User
from studybuddy.services.auth import RegistrationError, authenticate, create_access_token, register_user

router = APIRouter(prefix="/api/auth", tags=["authentication"])
logger = logging.getLogger(__name__)


# ==================== Request/Response Models ====================

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")

    class Config:
        populate_by_name = True


class LoginRequest(BaseModel):
    login: str = Field(..., min_length=1)  # username or email
    password: str = Field(..., min_length=1)


class AuthResponse(BaseModel):
    message: str
    user: Dict[str, Any]
    token: str


class MessageResponse(BaseModel):
    message: str


# ==================== Auth Endpoints ====================

@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    db: Session = Depends(get_db)
):
    """
    Register a new user.
    Returns the public user record and an access token.
    """
    try:
        new_user = register_user(
            db,
            username=request.username,
            email=request.email,
            password=request.password,
            first_name=request.first_name,
            last_name=request.last_name
        )
    except RegistrationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return AuthResponse(
        message="User registered successfully",
        user=new_user.to_dict(),
        token=create_access_token(new_user.id)
    )


@router.post("/login", response_model=AuthResponse)
async def login(
    request: LoginRequest,
    db: Session = Depends(get_db)
):
    """
    Login with username or email and password.
    """
    user = authenticate(db, request.login, request.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )

    return AuthResponse(
        message="Login successful",
        user=user.to_dict(),
        token=create_access_token(user.id)
    )


@router.post("/logout", response_model=MessageResponse)
async def logout():
    """
    Tokens are stateless; the client discards its copy.
    """
    return MessageResponse(message="Logout successful")


@router.get("/me")
async def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """
    Get current authenticated user's information.
    """
    return {"user": current_user.to_dict()}
