import os
import logging

import jwt
from dotenv import load_dotenv
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from chatline.auth.schemas import Principal
from chatline.core.errors import Unauthenticated

load_dotenv()
logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    """Verify a Supabase access token and return its claims."""
    try:
        return jwt.decode(
            token,
            os.getenv("SUPABASE_JWT_SECRET"),
            algorithms=["HS256"],
            issuer=f"{os.getenv('PUBLIC_SUPABASE_URL')}/auth/v1",
            options={"verify_aud": False},
            leeway=60,
        )

    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired")

    except jwt.InvalidTokenError as e:
        logger.info(f"jwt_verification_failed error={e}")
        raise Unauthenticated("Invalid token")


def principal_from_token(token: str | None) -> Principal:
    if not token:
        raise Unauthenticated("Not authenticated")

    payload = decode_token(token)

    if not payload.get("sub"):
        raise Unauthenticated("Token has no subject")

    return Principal(id=payload["sub"], email=payload.get("email"), token=token)


def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Principal:
    """The authenticated caller; every chat operation receives it explicitly."""
    try:
        return principal_from_token(credentials.credentials if credentials else None)
    except Unauthenticated as error:
        raise HTTPException(
            status_code=401,
            detail=error.detail,
            headers={"WWW-Authenticate": "Bearer"},
        )
