#!/usr/bin/env python3

import datetime
import jwt
import pytest
from jwt_auth import JWTValidator, create_bridge_token, generate_bridge_secret, SECRET_PREFIX


def _now():
    return datetime.datetime.now(datetime.timezone.utc)


class TestJWTValidation:
    """Simple, focused tests without mocking"""

    def setup_method(self):
        self.secret = "sk_test_secret_12345_with_enough_length"
        self.validator = JWTValidator(self.secret)

    def test_valid_bridge_token(self):
        token = create_bridge_token(self.secret, expires_in_hours=1, name="ui-shell")

        is_valid, result, error = self.validator.validate_bridge_token(token)

        assert is_valid
        assert result["scope"] == "bridge"
        assert result["aud"] == "bridge-endpoint"
        assert result["name"] == "ui-shell"
        assert error is None

    def test_expired_token(self):
        payload = {
            "iat": _now() - datetime.timedelta(hours=2),
            "exp": _now() - datetime.timedelta(hours=1),
            "scope": "bridge",
            "aud": "bridge-endpoint",
        }
        token = jwt.encode(payload, self.secret[3:], algorithm="HS256")

        is_valid, result, error_msg = self.validator.validate_bridge_token(token)

        assert not is_valid
        assert "expired" in error_msg.lower()

    def test_wrong_signature(self):
        token = create_bridge_token("sk_some_other_secret_of_enough_length", expires_in_hours=1)

        is_valid, result, error_msg = self.validator.validate_bridge_token(token)

        assert not is_valid
        assert "invalid" in error_msg.lower()

    def test_wrong_audience(self):
        payload = {
            "iat": _now(),
            "exp": _now() + datetime.timedelta(hours=1),
            "scope": "bridge",
            "aud": "wrong-audience",
        }
        token = jwt.encode(payload, self.secret[3:], algorithm="HS256")

        is_valid, result, error_msg = self.validator.validate_bridge_token(token)

        assert not is_valid
        assert "invalid" in error_msg.lower()

    def test_wrong_scope(self):
        payload = {
            "iat": _now(),
            "exp": _now() + datetime.timedelta(hours=1),
            "scope": "admin",
            "aud": "bridge-endpoint",
        }
        token = jwt.encode(payload, self.secret[3:], algorithm="HS256")

        is_valid, result, error_msg = self.validator.validate_bridge_token(token)

        assert not is_valid
        assert "scope" in error_msg.lower()

    def test_garbage_token(self):
        is_valid, result, error_msg = self.validator.validate_bridge_token("not-a-jwt")

        assert not is_valid
        assert result is None

    def test_generated_secret(self):
        secret = generate_bridge_secret()

        assert secret.startswith(SECRET_PREFIX)
        assert secret != generate_bridge_secret()
        token = create_bridge_token(secret)
        assert JWTValidator(secret).validate_bridge_token(token)[0]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
