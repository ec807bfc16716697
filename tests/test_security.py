"""
Unit tests for token verification and room access.
"""

import jwt
import pytest

from weddingbell.app.core.exceptions import AuthenticationError, ErrorCode
from weddingbell.app.utils.security import AccessControl, TokenClaims, TokenManager, UserRole
from weddingbell.config.settings import SecuritySettings


class TestTokenManager:
    """Test suite for access tokens."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.manager = TokenManager(SecuritySettings(jwt_secret="test-secret"))

    def test_round_trip(self):
        """Issued tokens verify back to the same claims."""
        token = self.manager.create_access_token(
            "u1", role=UserRole.COUPLE, wedding_ids=["w1", 42], additional_claims={"name": "Camille"}
        )

        claims = self.manager.verify_token(token)

        assert claims.user_id == "u1"
        assert claims.role == UserRole.COUPLE
        assert claims.wedding_ids == ["w1", "42"]
        assert claims.name == "Camille"

    def test_single_wedding_claim_is_merged(self):
        """A legacy wedding_id claim joins the wedding list."""
        token = self.manager.create_access_token("u1", wedding_ids=["w1"], additional_claims={"wedding_id": "w2"})

        assert self.manager.verify_token(token).wedding_ids == ["w1", "w2"]

    def test_expired_token(self):
        """Expired tokens are refused with their own error code."""
        token = self.manager.create_access_token("u1", expires_minutes=-1)

        with pytest.raises(AuthenticationError) as exc_info:
            self.manager.verify_token(token)

        assert exc_info.value.error_code == ErrorCode.AUTH_TOKEN_EXPIRED

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    def test_missing_or_malformed(self, token):
        """Missing and malformed tokens are refused."""
        with pytest.raises(AuthenticationError):
            self.manager.verify_token(token)

    def test_wrong_secret_and_type(self):
        """Tokens signed elsewhere or of another type are refused."""
        foreign = TokenManager(SecuritySettings(jwt_secret="other")).create_access_token("u1")
        refresh = jwt.encode({"sub": "u1", "type": "refresh"}, "test-secret", algorithm="HS256")

        for token in (foreign, refresh):
            with pytest.raises(AuthenticationError):
                self.manager.verify_token(token)

    def test_unknown_role(self):
        """Roles outside the known set are refused."""
        token = jwt.encode({"sub": "u1", "type": "access", "role": "emperor"}, "test-secret", algorithm="HS256")

        with pytest.raises(AuthenticationError):
            self.manager.verify_token(token)


class TestAccessControl:
    """Test suite for room permissions."""

    def test_guest_rooms(self):
        """Guests get their personal room and their weddings."""
        claims = TokenClaims(user_id="u1", wedding_ids=["w1"])

        assert AccessControl.permitted_rooms(claims) == {"user:u1", "wedding:w1"}

    def test_dj_rooms(self):
        """DJs also get the DJ room of each wedding."""
        claims = TokenClaims(user_id="dj", role=UserRole.DJ, wedding_ids=["w1"])

        assert "wedding:w1:dj" in AccessControl.permitted_rooms(claims)

    def test_admin_wildcard(self):
        """Admins may join any wedding room but not another user's room."""
        permitted = AccessControl.permitted_rooms(TokenClaims(user_id="root", role=UserRole.ADMIN))

        assert AccessControl.can_join(permitted, "admin")
        assert AccessControl.can_join(permitted, "wedding:w7:dj")
        assert not AccessControl.can_join(permitted, "user:u1")
