from typing import Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from billing.config import settings
from billing.domain import CallContext


def get_call_context(authorization: Optional[str] = Header(None)) -> CallContext:
    """Bearer token -> call context; the token's tenant scopes every query of the request."""
    try:
        if authorization is None:
            raise ValueError("missing authorization header")
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError(scheme)
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
        return CallContext(
            tenant_id=str(claims["tenant_id"]),
            user_name=str(claims.get("sub", "api")),
            reason_code=claims.get("reason_code"),
        )
    except (ValueError, KeyError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
