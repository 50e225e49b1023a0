import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, List, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings


http_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as described by the bearer token claims."""
    id: uuid.UUID
    roles: FrozenSet[str] = field(default_factory=frozenset)
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return "admin" in {r.lower() for r in self.roles}


def create_access_token(
    user_id: str,
    roles: Optional[List[str]] = None,
    permissions: Optional[List[str]] = None,
    ttl_seconds: int = 3600,
) -> str:
    # Tokens are normally issued by the auth service; this is used by tests and local tooling
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
        "roles": roles or [],
        "permissions": permissions or [],
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer)) -> Actor:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    return Actor(
        id=user_id,
        roles=frozenset(payload.get("roles") or []),
        permissions=frozenset(payload.get("permissions") or []),
    )


def require_permissions(*required_permissions: str):
    """
    Require at least one of the specified permissions (OR logic).
    Admins pass every check.
    """
    def _dep(user: Actor = Depends(get_current_user)) -> Actor:
        if user.is_admin:
            return user
        if not any(_has_permission(user, perm) for perm in required_permissions):
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return _dep


def _has_permission(user: Actor, perm: str) -> bool:
    if perm in user.permissions:
        return True
    # area wildcard, e.g. "orders:*" grants "orders:write"
    area = perm.split(":", 1)[0]
    return f"{area}:*" in user.permissions
