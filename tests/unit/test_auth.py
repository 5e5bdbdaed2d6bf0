"""Unit tests for JWT decoding and authentication utilities."""

from unittest.mock import MagicMock, patch

import pytest

from src.api.middleware.auth import (
    AuthError,
    AuthErrorCode,
    decode_jwt,
    extract_bearer_token,
    get_signing_key,
)
from tests.signing import TEST_USER_ID, create_test_token, make_jwk_json, make_signing_key


@pytest.fixture
def signing_key() -> MagicMock:
    with patch("src.api.middleware.auth.get_signing_key", return_value=make_signing_key()) as mock:
        yield mock


class TestExtractBearerToken:
    """Tests for extract_bearer_token."""

    def test_valid_header(self) -> None:
        assert extract_bearer_token("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_scheme_is_case_insensitive(self) -> None:
        assert extract_bearer_token("bearer abc") == "abc"

    @pytest.mark.parametrize("header", [None, "", "abc", "Basic abc", "Bearer a b"])
    def test_invalid_header(self, header: str | None) -> None:
        """Test that missing or malformed headers raise UNAUTHORIZED."""
        with pytest.raises(AuthError) as exc_info:
            extract_bearer_token(header)

        assert exc_info.value.code == AuthErrorCode.UNAUTHORIZED


class TestDecodeJWT:
    """Tests for decode_jwt function."""

    def test_decode_jwt_with_valid_token(self, signing_key: MagicMock) -> None:
        """Test decode_jwt successfully decodes a valid token."""
        payload = decode_jwt(create_test_token())

        assert payload.sub == TEST_USER_ID
        assert payload.email == "test@example.com"
        assert payload.aud == "authenticated"

    def test_decode_jwt_with_expired_token(self, signing_key: MagicMock) -> None:
        """Test decode_jwt raises TOKEN_EXPIRED for expired tokens."""
        with pytest.raises(AuthError) as exc_info:
            decode_jwt(create_test_token(exp_offset=-60))

        assert exc_info.value.code == AuthErrorCode.TOKEN_EXPIRED

    def test_decode_jwt_with_wrong_secret(self, signing_key: MagicMock) -> None:
        """Test decode_jwt raises INVALID_SIGNATURE for tokens signed with another key."""
        token = create_test_token(secret="another-secret-that-is-also-long-enough")

        with pytest.raises(AuthError) as exc_info:
            decode_jwt(token)

        assert exc_info.value.code == AuthErrorCode.INVALID_SIGNATURE

    def test_decode_jwt_with_wrong_audience(self, signing_key: MagicMock) -> None:
        """Test that tokens minted for another audience are rejected."""
        with pytest.raises(AuthError) as exc_info:
            decode_jwt(create_test_token(audience="anon"))

        assert exc_info.value.code == AuthErrorCode.INVALID_TOKEN

    def test_decode_jwt_with_garbage(self, signing_key: MagicMock) -> None:
        """Test decode_jwt raises INVALID_TOKEN for malformed tokens."""
        with pytest.raises(AuthError) as exc_info:
            decode_jwt("not-a-jwt")

        assert exc_info.value.code == AuthErrorCode.INVALID_TOKEN


class TestGetSigningKey:
    """Tests for get_signing_key."""

    def setup_method(self) -> None:
        get_signing_key.cache_clear()

    def teardown_method(self) -> None:
        get_signing_key.cache_clear()

    @patch("src.api.middleware.auth.get_settings")
    def test_loads_jwk(self, mock_settings: MagicMock) -> None:
        """Test that the configured JWK is parsed."""
        mock_settings.return_value.supabase_signing_key_jwk = make_jwk_json()

        key = get_signing_key()

        assert key.algorithm_name == "HS256"

    @patch("src.api.middleware.auth.get_settings")
    def test_missing_jwk(self, mock_settings: MagicMock) -> None:
        """Test that an unconfigured key raises AuthError."""
        mock_settings.return_value.supabase_signing_key_jwk = ""

        with pytest.raises(AuthError, match="not configured"):
            get_signing_key()

    @patch("src.api.middleware.auth.get_settings")
    def test_invalid_jwk(self, mock_settings: MagicMock) -> None:
        """Test that malformed JWK JSON raises AuthError."""
        mock_settings.return_value.supabase_signing_key_jwk = "{not json"

        with pytest.raises(AuthError, match="Invalid signing key"):
            get_signing_key()
