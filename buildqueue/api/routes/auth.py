"""
Authentication routes.
"""

from fastapi import APIRouter, HTTPException, status

from buildqueue.api.auth import create_access_token, validate_api_key
from buildqueue.config import get_settings
from buildqueue.types.api import AuthRequest, TokenResponse

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post(
    "/token",
    response_model=TokenResponse,
    summary="Get access token",
    description="Exchange an API key for a JWT access token.",
)
async def get_token(request: AuthRequest) -> TokenResponse:
    """
    Get an access token using API key authentication.

    Args:
        request: Authentication request with API key and owner ID.

    Returns:
        TokenResponse with JWT access token.

    Raises:
        HTTPException: If authentication fails.
    """
    role = validate_api_key(request.api_key)
    if role is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    settings = get_settings()
    access_token = create_access_token(owner_id=request.owner_id, role=role)

    return TokenResponse(
        access_token=access_token,
        expires_in=settings.api_access_token_expire_minutes * 60,
    )
