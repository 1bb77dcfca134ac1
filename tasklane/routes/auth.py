"""Account endpoints, forwarded to the identity provider."""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tasklane.auth import require_principal
from tasklane.deps import get_identity_client
from tasklane.identity import IdentityClient, Principal

router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1)
    user_metadata: dict[str, Any] = Field(default_factory=dict)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1)


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class UpdateProfileRequest(BaseModel):
    user_metadata: dict[str, Any]


@router.post("/register", status_code=201)
async def register(
    body: RegisterRequest, identity: IdentityClient = Depends(get_identity_client)
):
    result = await identity.sign_up(body.email, body.password, body.user_metadata)
    return {"message": "User registered successfully", **result}


@router.post("/login")
async def login(body: LoginRequest, identity: IdentityClient = Depends(get_identity_client)):
    result = await identity.sign_in_with_password(body.email, body.password)
    return {"message": "Login successful", **result}


@router.post("/logout")
async def logout(
    principal: Principal = Depends(require_principal),
    identity: IdentityClient = Depends(get_identity_client),
):
    """Revoke the caller's session at the identity provider."""
    await identity.sign_out(principal.token)
    return {"message": "Logout successful"}


@router.get("/profile")
async def get_profile(principal: Principal = Depends(require_principal)):
    return {"user": principal.user}


@router.put("/profile")
async def update_profile(
    body: UpdateProfileRequest,
    principal: Principal = Depends(require_principal),
    identity: IdentityClient = Depends(get_identity_client),
):
    user = await identity.update_user(principal.token, body.user_metadata)
    return {"message": "Profile updated successfully", "user": user}


@router.post("/refresh")
async def refresh(
    body: RefreshTokenRequest, identity: IdentityClient = Depends(get_identity_client)
):
    session = await identity.refresh_session(body.refresh_token)
    return {"message": "Token refreshed successfully", "session": session}
