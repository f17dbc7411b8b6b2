# supportchat/core/jwt_auth.py
"""
JWT Authentication for multi-tenant attendant access.
Validates tokens issued by the surrounding platform (tenant + user claims).
"""
import jwt
from typing import Optional, Dict, Any
from fastapi import HTTPException

from supportchat.core.config import JWT_SECRET_KEY, JWT_ALGORITHM

CHAT_MODULE = "chat"
MODULE_CLAIMS = ("modules", "enabled_modules", "permissions")


class JWTAuth:
    """Decodes platform tokens and answers the chat-specific questions about them"""

    @staticmethod
    def decode_token(token: str) -> Dict[str, Any]:
        """
        Decode and validate a platform token.

        Raises:
            HTTPException: 401 when the token is expired or malformed
        """
        try:
            # PyJWT verifies 'exp' itself
            return jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token has expired")
        except jwt.InvalidTokenError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def get_tenant_id(payload: Dict[str, Any]) -> Optional[str]:
        """tenant_id, tenant or tenantId; nested tenant objects carry an id"""
        tenant = payload.get('tenant_id') or payload.get('tenant') or payload.get('tenantId')
        if isinstance(tenant, dict):
            tenant = tenant.get('id') or tenant.get('tenant_id')
        return str(tenant) if tenant else None

    @staticmethod
    def get_user_id(payload: Dict[str, Any]) -> Optional[str]:
        user_id = payload.get('user_id') or payload.get('sub') or payload.get('id')
        return str(user_id) if user_id else None

    @staticmethod
    def grants_chat(payload: Dict[str, Any]) -> bool:
        """
        Whether the token may use the chat console.

        Tokens without any module claim predate module gating and are
        accepted; otherwise 'chat' must appear in modules, enabled_modules
        or as 'chat.access' in permissions.
        """
        if not any(claim in payload for claim in MODULE_CLAIMS):
            return True
        return (
            CHAT_MODULE in payload.get('modules', [])
            or CHAT_MODULE in payload.get('enabled_modules', [])
            or f'{CHAT_MODULE}.access' in payload.get('permissions', [])
        )

    @staticmethod
    def enabled() -> bool:
        """Tokens are verified only once JWT_SECRET_KEY is configured"""
        return bool(JWT_SECRET_KEY)
