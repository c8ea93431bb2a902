"""Principal resolution for owner-scoped endpoints."""

from fastapi import HTTPException, Request, status

from app.core.config import get_settings


def get_owner_id(request: Request) -> str:
    """Return the authenticated owner id forwarded by the identity layer."""
    settings = get_settings()
    owner_id = (request.headers.get(settings.principal_header) or "").strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    return owner_id
