import logging

from fastapi import APIRouter, HTTPException, Depends, Query
from supabase import Client

from chatline.auth.schemas import Principal
from chatline.core.errors import ChatError
from chatline.core.supabase_client import get_supabase
from chatline.core.dependencies import get_current_principal

from . import service
from .schemas import Profile, ProfileSearchResponseModel, UpdateProfileModel


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/search", response_model=ProfileSearchResponseModel, status_code=200)
def search_profiles(
    q: str = Query(..., min_length=1, max_length=30),
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """
    Search other users by username to start a conversation with.

    Performs a case-insensitive substring match on `username` and never
    returns the caller. At most 20 profiles are returned, ordered by username.

    **Errors**
    - 401: Invalid or expired token
    - 500: Database error
    """
    try:
        return {"profiles": service.search_profiles(client, principal.id, q)}

    except Exception:
        logger.exception("profile_search_failed")
        raise HTTPException(status_code=500, detail="Failed to search users.")


@router.patch("/me", response_model=Profile, status_code=200)
def update_my_profile(
    data: UpdateProfileModel,
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """
    Update the caller's display name and/or avatar.

    A profile is only ever mutated by its owner; the username is fixed.

    **Errors**
    - 400: Nothing to update
    - 401: Invalid or expired token
    - 404: Profile not found
    - 500: Database error
    """
    try:
        return service.update_own_profile(
            client,
            principal.id,
            display_name=data.display_name,
            avatar_url=data.avatar_url,
        )

    except ChatError as error:
        raise error.to_http()
    except Exception:
        logger.exception("profile_update_failed")
        raise HTTPException(status_code=500, detail="Failed to update profile.")


@router.get("/{user_id}", response_model=Profile, status_code=200)
def get_profile(
    user_id: str,
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """Public profile of any user."""
    try:
        profile = service.get_profile(client, user_id)
    except Exception:
        logger.exception("profile_lookup_failed")
        raise HTTPException(status_code=500, detail="Failed to load profile.")

    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found.")

    return profile
