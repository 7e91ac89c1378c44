"""
Auth router: /auth/token issues operator bearer tokens.

OAuth2 "password" grant: the client posts
``username=<operator>&password=<secret>`` as a form and gets a JWT back.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel

from winnode.config import settings
from winnode.services.auth import authenticate_user, create_access_token

router = APIRouter(prefix="/auth", tags=["Authentication"])


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


@router.post(
    "/token",
    response_model=TokenResponse,
    summary="Obtain an operator token",
    description="Exchange operator credentials for a Bearer token used by /windows-node.",
)
def login(form_data: OAuth2PasswordRequestForm = Depends()) -> TokenResponse:
    if not authenticate_user(form_data.username, form_data.password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return TokenResponse(
        access_token=create_access_token(form_data.username),
        expires_in=settings.jwt_expire_minutes * 60,
    )
