"""Schemas for authentication endpoints."""

from pydantic import BaseModel, Field, constr


class UserCreate(BaseModel):
    """Payload for creating a new user via registration."""

    username: constr(strip_whitespace=True, min_length=3, max_length=20) = Field(
        ..., description="Unique username consisting of 3-20 characters"
    )
    password: constr(min_length=8, max_length=128) = Field(
        ..., description="Plain text password that will be hashed before storing"
    )


class LoginRequest(BaseModel):
    """Payload for user login."""

    username: constr(strip_whitespace=True, min_length=3, max_length=20) = Field(
        ..., description="Username, matched case-insensitively"
    )
    password: constr(min_length=1, max_length=128) = Field(..., description="User password")


class Token(BaseModel):
    """Access token returned after successful authentication."""

    access_token: str = Field(..., description="JWT access token")
    token_type: str = Field(default="bearer", description="Token type, always 'bearer'")
    expires_in: int | None = Field(
        default=None,
        description="Number of seconds until the access token expires",
    )
