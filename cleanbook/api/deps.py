"""
Request identity - Bearer JWT issued by the identity service.

Payload carries {"user_id", "role"}. Endpoints that need an identity depend on
get_token_payload; admin-only endpoints depend on require_admin. Public
endpoints (subscription purchase, the payment webhook) take neither.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from cleanbook.config import get_settings
from cleanbook.models.user import ROLE_ADMIN, ROLE_USER

logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class TokenPayload:
    user_id: uuid.UUID
    user_role: str

    @property
    def is_admin(self) -> bool:
        return self.user_role == ROLE_ADMIN


def create_access_token(user_id: uuid.UUID, role: str = ROLE_USER) -> str:
    """Mint a token in the identity service's format. Used by scripts and tests."""
    import jwt as pyjwt
    settings = get_settings()
    return pyjwt.encode(
        {
            "user_id": str(user_id),
            "role": role,
            "exp": datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expiry_hours),
        },
        settings.jwt_signing_secret,
        algorithm=settings.jwt_algorithm,
    )


async def get_token_payload(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> TokenPayload:
    """Dependency to extract and verify the caller's identity from the JWT Bearer token."""
    import jwt as pyjwt
    settings = get_settings()

    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = pyjwt.decode(
            credentials.credentials,
            settings.jwt_signing_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    try:
        user_uuid = uuid.UUID(str(user_id))
    except (ValueError, AttributeError):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    return TokenPayload(user_id=user_uuid, user_role=payload.get("role") or ROLE_USER)


async def require_admin(
    token: TokenPayload = Depends(get_token_payload),
) -> TokenPayload:
    """Dependency that only lets admins through."""
    if not token.is_admin:
        logger.warning("Admin endpoint refused for user %s", str(token.user_id)[:8],
                       extra={"user_id": str(token.user_id)})
        raise HTTPException(status_code=403, detail="Admin access required")
    return token
