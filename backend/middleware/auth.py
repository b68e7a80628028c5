from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_account_token

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Account claims from the Bearer token, or None."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return decode_account_token(auth_header.split(" ", 1)[1])

async def require_auth(request: Request) -> dict:
    """Require valid authentication. Caches the user on request.state."""
    user = getattr(request.state, "user", None)
    if user:
        return user
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    request.state.user = user
    return user
