# supportchat/api/deps.py
"""
API dependencies for identity and database access.

Attendants authenticate with a JWT issued by the platform (tenant + user
claims) or, when no JWT secret is configured (development), with
X-Tenant-Id / X-User-Id headers. Visitors act through the widget with
X-Tenant-Id and their visitor_token.
"""
from typing import Optional, Dict, Any, Mapping
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from supportchat.core.config import DEFAULT_TENANT_ID
from supportchat.core.jwt_auth import JWTAuth
from supportchat.db.session import get_db
from supportchat.models.attendant import AttendantProfile
from supportchat.services import ChatService, get_chat_service
from supportchat.services.assignment import get_attendant_by_user

# Security scheme (optional to allow development headers)
security = HTTPBearer(auto_error=False)


# ────────────────────────────────────────────
# Attendant identity (JWT or development headers)
# ────────────────────────────────────────────

def identify_staff(token: Optional[str], headers: Mapping[str, str]) -> Dict[str, Any]:
    """
    Resolve a staff user from a bearer token or development headers.

    Shared by the REST dependencies and the websocket endpoints.

    Priority:
    1. JWT token
    2. X-Tenant-Id + X-User-Id headers, only while JWT_SECRET_KEY is unset

    Raises:
        HTTPException: 401 without a usable identity, 403 without the chat module
    """
    if token:
        payload = JWTAuth.decode_token(token)

        if not JWTAuth.grants_chat(payload):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Chat module not enabled for this user"
            )

        user_id = JWTAuth.get_user_id(payload)
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no user claim")
        return {
            "auth_type": "jwt",
            "user_id": user_id,
            "tenant_id": JWTAuth.get_tenant_id(payload) or DEFAULT_TENANT_ID,
            "username": payload.get("email") or payload.get("username"),
            "payload": payload
        }

    # For development: Allow requests with X-Tenant-Id / X-User-Id headers
    tenant_id = headers.get("x-tenant-id")
    user_id = headers.get("x-user-id")
    if tenant_id and user_id and not JWTAuth.enabled():
        return {
            "auth_type": "development",
            "user_id": user_id,
            "tenant_id": tenant_id,
            "username": f"dev-{user_id}"
        }

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required. Provide a JWT token, or X-Tenant-Id and X-User-Id headers for development."
    )


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Dict[str, Any]:
    """Calling staff user: auth_type, user_id, tenant_id"""
    token = credentials.credentials if credentials else None
    return identify_staff(token, request.headers)


async def get_tenant_id(user: Dict[str, Any] = Depends(get_current_user)) -> str:
    return user["tenant_id"]


def get_current_attendant(
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> AttendantProfile:
    """Attendant profile of the calling user within their tenant"""
    attendant = get_attendant_by_user(db, user["tenant_id"], user["user_id"])
    if attendant is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No attendant profile for this user"
        )
    return attendant


def get_optional_attendant(
    user: Dict[str, Any] = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Optional[AttendantProfile]:
    return get_attendant_by_user(db, user["tenant_id"], user["user_id"])


# ────────────────────────────────────────────
# Widget (visitor) scope
# ────────────────────────────────────────────

def get_widget_tenant_id(request: Request) -> str:
    """Tenant of a widget request (X-Tenant-Id header)"""
    tenant_id = request.headers.get("x-tenant-id")
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-Id header is required"
        )
    return tenant_id


# ────────────────────────────────────────────
# Services
# ────────────────────────────────────────────

def get_service() -> ChatService:
    return get_chat_service()
