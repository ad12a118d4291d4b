import os
import logging

from fastapi.responses import JSONResponse
from fastapi import APIRouter, status, HTTPException, Request, Response, Depends

from supabase import AuthApiError, Client

from chatline.core.supabase_client import get_supabase
from chatline.core.dependencies import get_current_principal
from chatline.utils.env_helper import env_bool, env_none_or_str
from chatline.profiles import service as profiles
from .schemas import (
    Principal,
    UserRegistrationModel,
    UserRegistrationResponseModel,
    UserLoginModel,
    UserLoginResponseModel,
    AccessTokenResponseModel,
    MeResponseModel,
)


logger = logging.getLogger(__name__)
router = APIRouter()

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/auth/access"


def _set_refresh_cookie(response: Response, refresh_token: str):
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=refresh_token,
        httponly=env_bool("HTTPONLY", default=True),
        secure=env_bool("SECURE", default=False),
        samesite=os.getenv("SAMESITE", "Lax"),
        domain=env_none_or_str("COOKIE_DOMAIN", None),
        max_age=60 * 60 * 24 * 7,  # 7 days
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response):
    response.delete_cookie(
        key=REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,  # must match set_cookie()
        domain=env_none_or_str("COOKIE_DOMAIN", None),
    )


@router.post("/register", response_model=UserRegistrationResponseModel, status_code=201)
def register_user(data: UserRegistrationModel, client: Client = Depends(get_supabase)):
    """
    Register a new user.

    Creates a Supabase Auth user. The matching profile row is created by the
    database (`handle_new_user` trigger) from the username and display name
    passed as user metadata; clients never insert profiles themselves.

    **Input Fields**
    - **email**: A valid user email. Must not already exist in Supabase Auth.
    - **username**: 3–30 characters, letters, numbers and underscores only.
    - **display_name**: Optional, defaults to "User".
    - **password**: Minimum 8 characters.

    **Errors**
    - 400: Failed to create user
    - 409: Email or username already registered
    - 500: Unexpected Supabase or server error
    """
    username_check = (
        client.table("profiles").select("id").eq("username", data.username).execute()
    )

    if username_check.data:
        raise HTTPException(status_code=409, detail="Username already taken.")

    metadata = {"username": data.username}
    if data.display_name:
        metadata["display_name"] = data.display_name

    try:
        res = client.auth.sign_up(
            {
                "email": data.email,
                "password": data.password.get_secret_value(),
                "options": {"data": metadata},
            }
        )
    except AuthApiError as error:
        logger.error(f"supabase_error={error}")
        raise HTTPException(status_code=409, detail=str(error))

    if not res.user:
        raise HTTPException(status_code=400, detail="Failed to create user")

    logger.info(f"user_registered user_id={res.user.id} username={data.username}")

    return {
        "id": res.user.id,
        "email": res.user.email,
        "username": data.username,
    }


@router.post("/login", response_model=UserLoginResponseModel, status_code=200)
def login_user(
    user_data: UserLoginModel, response: Response, client: Client = Depends(get_supabase)
):
    """
    Authenticate a user with email and password.

    Returns a short-lived access token and sets the refresh token in an
    HttpOnly cookie scoped to `/auth/access`.

    **Errors**
    - 401: Invalid email or password
    - 500: Supabase or internal server error
    """
    try:
        res = client.auth.sign_in_with_password(
            {
                "email": user_data.email,
                "password": user_data.password.get_secret_value(),
            }
        )

    except AuthApiError as error:
        raise HTTPException(status_code=401, detail=error.message)

    except Exception:
        logger.exception("login_failed")
        raise HTTPException(
            status_code=500, detail="An internal server error occurred during login."
        )

    if not res.session:
        raise HTTPException(
            status_code=500,
            detail="Supabase authentication returned an unexpected response.",
        )

    _set_refresh_cookie(response, res.session.refresh_token)
    logger.info(f"user_login_success user_id={res.user.id}")

    return {
        "access_token": res.session.access_token,
        "expires_in": res.session.expires_in,
        "user_id": res.user.id,
        "email": res.user.email,
    }


@router.get("/access", response_model=AccessTokenResponseModel, status_code=200)
def get_new_access(
    request: Request, response: Response, client: Client = Depends(get_supabase)
):
    """
    Issue a new access token using the refresh token stored in the
    HttpOnly cookie. The rotated refresh token replaces the cookie.

    **Errors**
    - 401: Missing, expired, revoked, or invalid refresh token
    """
    refresh_token = request.cookies.get(REFRESH_COOKIE)

    if not refresh_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No refresh token provided.",
        )

    try:
        session = client.auth.refresh_session(refresh_token)
        _set_refresh_cookie(response, session.session.refresh_token)
        return {"access_token": session.session.access_token}

    except Exception:
        logger.info("refresh_token_rejected")
        failed = JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Refresh token invalid or expired. Please log in again."},
        )
        _clear_refresh_cookie(failed)
        return failed


@router.get("/me", response_model=MeResponseModel, status_code=200)
def get_me(
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """
    The current principal and their public profile.

    `profile` is null when the profile row cannot be found.

    **Errors**
    - 401: Invalid or expired token
    - 500: Database error
    """
    try:
        profile = profiles.get_profile(client, principal.id)
    except Exception:
        logger.exception("me_lookup_failed")
        raise HTTPException(500, detail="Failed to load profile.")

    return {"id": principal.id, "email": principal.email, "profile": profile}


@router.post("/logout")
def logout(
    principal: Principal = Depends(get_current_principal),
    client: Client = Depends(get_supabase),
):
    """
    Sign the caller out.

    Revokes the caller's refresh tokens in Supabase and clears the
    refresh_token cookie. Access tokens already issued stay valid until
    they expire.
    """
    try:
        client.auth.admin.sign_out(principal.token)
    except AuthApiError as error:
        # The session may already be gone; the cookie is cleared regardless.
        logger.warning(f"sign_out_failed user_id={principal.id} error={error.message}")

    response = JSONResponse({"logged_out": True})
    _clear_refresh_cookie(response)
    return response
