"""
Admin authentication for payment operations.

Admin routes are guarded by a shared secret sent in the X-Admin-Key header
and compared against settings.ADMIN_KEY. When ADMIN_KEY is unset every admin
request is refused.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from pixsettle.core.config import settings
from pixsettle.core.errors import PermissionError


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin_key:<hash>"
    auth_mechanism: str = "x_admin_key"


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Return an AdminActor when X-Admin-Key matches ADMIN_KEY, else None."""
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin_key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require a valid X-Admin-Key.

    Usage:
        @router.post("/v1/admin/payments/reconcile")
        def reconcile(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = verify_admin_key(request)
    if actor is None:
        raise PermissionError("Admin credentials missing or invalid", code="admin_forbidden")
    return actor
