"""
Admin authentication for billing operations.

X-Admin-Key shared secret compared in constant time. Every admin action is
audited with a hashed actor identity, never the key itself.
"""
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request
from sqlalchemy import insert
from sqlalchemy.orm import Session

from resumesaas.core.config import settings
from resumesaas.core.database import billing_admin_audit
from resumesaas.core.errors import AppError, UnauthorizedError


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "key:<hash>"
    auth_mechanism: str = "x_admin_key"


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    expected_key = settings.ADMIN_API_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key.encode(), expected_key.encode()):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.get("/v1/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    if not settings.ADMIN_API_KEY:
        raise AppError(
            "Admin authentication not configured",
            code="admin_auth_unconfigured",
            status_code=503,
        )

    actor = verify_admin_key(request)
    if actor is None:
        raise UnauthorizedError("Invalid or missing admin credentials", code="admin_unauthorized")
    return actor


def create_audit_log(
    session: Session,
    actor: AdminActor,
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Insert an admin audit entry into the caller's transaction (not committed here).

    Returns:
        Audit log ID
    """
    result = session.execute(
        insert(billing_admin_audit).values(
            actor=actor.actor_id,
            action=action,
            target_user_id=target_user_id,
            target_resource=target_resource,
            payload_json=json.dumps(payload, default=str) if payload else None,
        )
    )
    return result.inserted_primary_key[0]
