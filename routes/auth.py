"""
Request authentication: bearer JWTs issued by the external auth service.

Tokens are HS256 with ``sub`` = user id and ``type`` = "access". This service
only verifies them; it never issues or refreshes tokens.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from config import AUTH_CONFIG
from database import get_db
from errors import ServiceError
from models import User
from services.identity import Capability, has_capability

ERROR_STATUS = {
    "VALIDATION_ERROR": 400,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "DATABASE_ERROR": 500,
}


def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)) -> User:
    """Dependency to extract current user from JWT Bearer token."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = authorization.split(" ")[1]
    try:
        payload = jwt.decode(token, AUTH_CONFIG["secret_key"], algorithms=[AUTH_CONFIG["algorithm"]])
        if payload.get("type") != "access":
            raise HTTPException(status_code=401, detail="Invalid token type")
        sub = payload.get("sub")
        if sub is None:
            raise HTTPException(status_code=401, detail="Invalid token")
        user_id = int(sub)
    except JWTError:
        raise HTTPException(status_code=401, detail="Token expired or invalid")
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")

    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


def require_capability(capability: Capability):
    """Dependency factory: the current user must hold ``capability``."""
    def dependency(current_user: User = Depends(get_current_user)) -> User:
        if not has_capability(current_user, capability):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return current_user
    return dependency


def http_error(exc: ServiceError) -> HTTPException:
    return HTTPException(status_code=exc.http_status, detail=exc.message)


def unwrap_result(result: dict) -> dict:
    """Turn an admin {"success", ...} result into a response or an HTTPException."""
    if not result["success"]:
        raise HTTPException(status_code=ERROR_STATUS.get(result["error"], 400), detail=result["message"])
    return result
