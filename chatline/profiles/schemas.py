from pydantic import BaseModel, field_validator
from typing import List, Optional
from datetime import datetime


class Profile(BaseModel):
    id: str
    username: str
    display_name: str
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Search
class ProfileSearchResponseModel(BaseModel):
    profiles: List[Profile]


# Update own profile
class UpdateProfileModel(BaseModel):
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, display_name: Optional[str]) -> Optional[str]:
        if display_name is None:
            return None

        display_name = display_name.strip()
        if not display_name:
            raise ValueError("Display name cannot be empty.")

        return display_name
