import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, List

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings
from ..schemas.auth import Actor


http_bearer = HTTPBearer(auto_error=False)


def create_access_token(
    user_id: str,
    name: str,
    email: Optional[str] = None,
    roles: Optional[List[str]] = None,
    permissions: Optional[List[str]] = None,
    ttl_seconds: Optional[int] = None,
) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": user_id,
        "name": name,
        "email": email,
        "roles": roles or [],
        "permissions": permissions or [],
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds or settings.jwt_ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_actor(creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer)) -> Actor:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    return Actor(
        id=str(payload["sub"]),
        name=payload.get("name") or str(payload["sub"]),
        email=payload.get("email"),
        roles=payload.get("roles") or [],
        permissions=payload.get("permissions") or [],
    )


def require_permissions(*required_permissions: str):
    """
    Require at least one of the specified permissions (OR logic).
    Admins pass every check.
    """
    def _dep(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.is_admin:
            return actor
        if not any(perm in actor.permissions for perm in required_permissions):
            raise HTTPException(status_code=403, detail="Forbidden")
        return actor

    return _dep
