import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from bistro_pos.config import settings

logger = logging.getLogger(__name__)

ROLES = ("merchant", "manager", "supervisor", "staff")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Not authorized, no token")
    try:
        payload = decode_token(credentials.credentials)
    except jwt.PyJWTError as exc:
        logger.warning("rejected token: %s", exc)
        raise HTTPException(status_code=401, detail="Not authorized, token failed") from exc
    user_id = payload.get("id") or payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in ROLES:
        raise HTTPException(status_code=401, detail="Not authorized, token failed")
    return CurrentUser(id=str(user_id), role=role)


def authorize(*roles: str):
    def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            logger.warning("authorization failed for role %s", user.role)
            raise HTTPException(
                status_code=403,
                detail=f"User role {user.role} is not authorized to access this route",
            )
        return user

    return dependency
