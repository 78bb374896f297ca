import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel

from creditscribe.config.settings import Settings, get_settings
from creditscribe.ledger.models import UserRole

logger = logging.getLogger(__name__)

TOKEN_TYPE = "access"


class Principal(BaseModel):
    """The authenticated caller"""
    user_id: str
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN


class TokenValidator:
    """Issues and validates HS256 bearer tokens"""

    def __init__(self, secret: str, algorithm: str = "HS256", ttl_seconds: int = 7 * 24 * 3600):
        if not secret:
            raise ValueError("JWT secret not configured")
        self.secret = secret
        self.algorithm = algorithm
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenValidator":
        return cls(settings.jwt_secret, settings.jwt_algorithm, settings.access_token_ttl_seconds)

    def issue_token(self, user_id: str, role: UserRole = UserRole.USER) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "role": role.value,
            "type": TOKEN_TYPE,
            "iat": now,
            "exp": now + timedelta(seconds=self.ttl_seconds),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def validate_token(self, token: str) -> Optional[Principal]:
        """Return the principal for a valid token, None otherwise"""
        try:
            payload: Dict = jwt.decode(token, self.secret, algorithms=[self.algorithm])

            if payload.get("type") != TOKEN_TYPE:
                raise jwt.InvalidTokenError("Invalid token type")

            return Principal(
                user_id=payload["sub"],
                role=UserRole(payload.get("role", UserRole.USER.value))
            )

        except jwt.ExpiredSignatureError:
            logger.info("Token expired")
            return None
        except (jwt.InvalidTokenError, KeyError, ValueError) as e:
            logger.info(f"Invalid token: {e}")
            return None


def get_token_validator(request: Request) -> TokenValidator:
    return request.app.state.token_validator


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    validator: TokenValidator = Depends(get_token_validator)
) -> Principal:
    token = _bearer_token(authorization)
    principal = validator.validate_token(token) if token else None
    if principal is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return principal


async def require_admin(principal: Principal = Depends(get_current_user)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


async def require_internal_secret(
    x_internal_secret: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_app_settings)
) -> None:
    if not x_internal_secret or not hmac.compare_digest(
        x_internal_secret, settings.backend_shared_secret
    ):
        raise HTTPException(status_code=401, detail="Unauthorized")
