from datetime import datetime, timedelta
from typing import Optional
import jwt
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import os

# Tokens are issued by the identity service; this service only verifies them.
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-in-production-2024")
ALGORITHM = "HS256"
ISSUER = os.getenv("JWT_ISSUER")  # checked only when configured

ACCESS_TOKEN_EXPIRE_MINUTES = 30

# HTTP Bearer for token extraction
security = HTTPBearer()


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Issue a token in the identity service's format.
    Only the seed script and tests mint tokens locally.

    data: user_id, role, name, optional active_status
    """
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "type": "access"})
    if ISSUER:
        to_encode.setdefault("iss", ISSUER)
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode and validate an identity-service access token"""
    options = {"require": ["exp"]}
    try:
        if ISSUER:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], issuer=ISSUER, options=options)
        else:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], options=options)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token has expired"
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials"
        )

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )
    return payload


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    Claims of the calling user.

    Returns: user_id, role, name, active_status
    """
    payload = decode_access_token(credentials.credentials)

    if payload.get("user_id") is None or not payload.get("role"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is missing user_id or role"
        )

    return {
        "user_id": str(payload["user_id"]),
        "role": payload["role"],
        "name": payload.get("name"),
        "active_status": payload.get("active_status", True),
    }
