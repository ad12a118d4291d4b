import re
from pydantic import BaseModel, SecretStr, field_validator
from typing import Optional

from chatline.profiles.schemas import Profile


USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")


class Principal(BaseModel):
    """The authenticated caller, taken from a verified access token."""

    id: str
    email: Optional[str] = None
    token: Optional[str] = None


"""
auth/register
"""


class UserRegistrationModel(BaseModel):
    email: str
    username: str
    display_name: Optional[str] = None
    password: SecretStr

    @field_validator("username")
    @classmethod
    def validate_username(cls, username: str) -> str:
        # Length check (min 3, max 30)
        if not (3 <= len(username) <= 30):
            raise ValueError(
                f"Username must be between 3 and 30 characters long (got {len(username)})."
            )

        # Letters, numbers and underscores only; mirrors the profiles check constraint
        if not USERNAME_PATTERN.match(username):
            raise ValueError(
                "Username must only contain letters, numbers, and underscores."
            )

        return username

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, display_name: Optional[str]) -> Optional[str]:
        if display_name is None:
            return None
        return display_name.strip() or None

    @field_validator("password")
    @classmethod
    def validate_password(cls, password: SecretStr) -> SecretStr:
        if len(password.get_secret_value()) < 8:
            raise ValueError("Password must be at least 8 characters long.")

        return password


class UserRegistrationResponseModel(BaseModel):
    id: str
    email: str
    username: str


"""
auth/login
"""


class UserLoginModel(BaseModel):
    email: str
    password: SecretStr


class UserLoginResponseModel(BaseModel):
    access_token: str
    expires_in: int
    user_id: str
    email: str


"""
auth/access
"""


class AccessTokenResponseModel(BaseModel):
    access_token: str


"""
auth/me
"""


class MeResponseModel(BaseModel):
    id: str
    email: Optional[str] = None
    profile: Optional[Profile] = None
