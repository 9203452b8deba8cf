"""
Admin authentication via the X-Admin-Key shared secret.

All admin actions are logged with a hashed actor identity.
"""
import hashlib
from dataclasses import dataclass
from typing import Optional

from fastapi import Request, HTTPException

from paygate.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "key:<hash>"
    actor_display: str = "Admin Key"


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Return AdminActor if the X-Admin-Key header matches, None otherwise."""
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or header_key != expected_key:
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.post("/v1/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = verify_admin_key(request)
    if actor:
        return actor

    if not settings.ADMIN_KEY:
        raise HTTPException(status_code=503, detail="Admin authentication not configured")
    raise HTTPException(status_code=401, detail="Unauthorized: invalid or missing admin credentials")
