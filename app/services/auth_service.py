from fastapi import HTTPException, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from loguru import logger

from app.core.config import settings


# Security setup
security = HTTPBearer()


class AuthService:
    def __init__(self):
        self.secret_key = settings.jwt_secret_key
        self.algorithm = settings.jwt_algorithm

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verify JWT token and return payload"""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
            return payload
        except JWTError as e:
            logger.error(f"JWT verification failed: {e}")
            return None


# Global auth service instance
auth_service = AuthService()


# Dependency to get current user from JWT token
async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """
    Dependency to extract and validate current user from JWT token
    Returns user info if valid, raises HTTPException if invalid
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = auth_service.verify_token(credentials.credentials)
    user_id = (payload or {}).get("user_id") or (payload or {}).get("sub")
    if not user_id:
        raise credentials_exception

    return {
        "user_id": str(user_id),
        "email": payload.get("email", ""),
        "role": payload.get("role", "instructor"),
        "name": payload.get("name"),
    }


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"
