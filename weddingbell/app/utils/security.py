"""
Security utilities for the WeddingBell notification service.

Socket connections authenticate with a JWT access token issued by the main
application. The claims carry the user's role and the weddings they belong
to; room access is derived from them once, at authentication time.

Room Access:
- ``user:{sub}``: always
- ``wedding:{id}``: for each wedding in the ``wedding_ids`` claim
- ``wedding:{id}:dj``: for DJs of that wedding
- ``admin`` and every ``wedding:*`` room: for admins
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import jwt

from weddingbell.app.core.exceptions import AuthenticationError, ErrorCode
from weddingbell.app.utils.logging import get_logger
from weddingbell.config.settings import SecuritySettings

logger = get_logger(__name__)

ADMIN_ROOM = "admin"
WEDDING_WILDCARD = "wedding:*"


class UserRole(str, Enum):
    """Roles carried in access tokens."""
    ADMIN = "admin"
    COUPLE = "couple"
    PLANNER = "planner"
    VENDOR = "vendor"
    DJ = "dj"
    GUEST = "guest"


@dataclass
class TokenClaims:
    """Verified identity of a socket or API caller."""
    user_id: str
    role: UserRole = UserRole.GUEST
    wedding_ids: List[str] = field(default_factory=list)
    name: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class TokenManager:
    """JWT access token issuing and verification."""

    def __init__(self, settings: Optional[SecuritySettings] = None):
        self.settings = settings or SecuritySettings()
        self.secret_key = self.settings.jwt_secret
        self.algorithm = self.settings.jwt_algorithm

    def create_access_token(
        self,
        user_id: str,
        role: UserRole = UserRole.GUEST,
        wedding_ids: Optional[List[str]] = None,
        additional_claims: Optional[Dict[str, Any]] = None,
        expires_minutes: Optional[int] = None
    ) -> str:
        """
        Create a JWT access token.

        Args:
            user_id: User identifier, stored as ``sub``
            role: User role
            wedding_ids: Weddings the user belongs to
            additional_claims: Extra claims merged into the payload
            expires_minutes: Lifetime override; may be negative in tests

        Returns:
            Encoded token
        """
        now = datetime.now(timezone.utc)
        lifetime = self.settings.access_token_expire_minutes if expires_minutes is None else expires_minutes

        payload = {
            "sub": user_id,
            "role": UserRole(role).value,
            "wedding_ids": [str(w) for w in wedding_ids or []],
            "iat": now,
            "exp": now + timedelta(minutes=lifetime),
            "type": "access",
        }
        if additional_claims:
            payload.update(additional_claims)

        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: Optional[str]) -> TokenClaims:
        """
        Verify and decode an access token.

        Raises:
            AuthenticationError: If the token is missing, malformed, expired
                or not an access token
        """
        if not token:
            raise AuthenticationError("Missing access token")

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired", error_code=ErrorCode.AUTH_TOKEN_EXPIRED)
        except jwt.InvalidTokenError as e:
            logger.warning("Invalid token", error=str(e))
            raise AuthenticationError("Invalid token")

        if payload.get("type") != "access":
            raise AuthenticationError("Invalid token type")
        if not payload.get("sub"):
            raise AuthenticationError("Token has no subject")

        try:
            role = UserRole(payload.get("role", UserRole.GUEST.value))
        except ValueError:
            raise AuthenticationError(f"Unknown role: {payload.get('role')}")

        wedding_ids = payload.get("wedding_ids") or []
        if payload.get("wedding_id"):
            wedding_ids = list(wedding_ids) + [payload["wedding_id"]]

        return TokenClaims(
            user_id=str(payload["sub"]),
            role=role,
            wedding_ids=[str(w) for w in dict.fromkeys(wedding_ids)],
            name=payload.get("name"),
            raw=payload,
        )


class AccessControl:
    """Room permissions derived from token claims."""

    @staticmethod
    def permitted_rooms(claims: TokenClaims) -> Set[str]:
        rooms = {f"user:{claims.user_id}"}
        for wedding_id in claims.wedding_ids:
            rooms.add(f"wedding:{wedding_id}")
            if claims.role == UserRole.DJ:
                rooms.add(f"wedding:{wedding_id}:dj")
        if claims.is_admin:
            rooms.update({ADMIN_ROOM, WEDDING_WILDCARD})
        return rooms

    @staticmethod
    def can_join(permitted: Set[str], room: str) -> bool:
        if room in permitted:
            return True
        return WEDDING_WILDCARD in permitted and room.startswith("wedding:")
