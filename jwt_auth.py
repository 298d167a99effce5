#!/usr/bin/env python3

import base64
import datetime
import secrets
import jwt
from typing import Tuple, Dict, Any, Optional

BRIDGE_SCOPE = "bridge"
SECRET_PREFIX = "sk_"


def generate_bridge_secret() -> str:
    """Generate a secure bridge token signing secret"""
    secret_bytes = secrets.token_bytes(32)
    secret_key = base64.urlsafe_b64encode(secret_bytes).decode("utf-8").rstrip("=")
    return f"{SECRET_PREFIX}{secret_key}"


def _signing_secret(secret: str) -> str:
    if secret.startswith(SECRET_PREFIX):
        return secret[len(SECRET_PREFIX):]
    return secret


def create_bridge_token(secret: str, expires_in_hours: float = 24, name: Optional[str] = None) -> str:
    """Create a token the UI presents on every bridge call"""
    now = datetime.datetime.now(datetime.timezone.utc)
    exp = now + datetime.timedelta(hours=expires_in_hours)

    payload = {"iat": now, "exp": exp, "scope": BRIDGE_SCOPE, "aud": f"{BRIDGE_SCOPE}-endpoint"}

    if name:
        payload["name"] = name

    return jwt.encode(payload, _signing_secret(secret), algorithm="HS256")


class JWTValidator:
    """Bridge token validation"""

    def __init__(self, signing_secret: str):
        self.signing_secret = _signing_secret(signing_secret)

    def validate_bridge_token(
        self, token: str
    ) -> Tuple[bool, Optional[Dict[str, Any]], Optional[str]]:
        """
        Validate a bridge token

        Returns:
            (is_valid, payload, error_message)
        """
        try:
            payload = jwt.decode(
                token,
                self.signing_secret,
                algorithms=["HS256"],
                audience=f"{BRIDGE_SCOPE}-endpoint",
            )

            if payload.get("scope") != BRIDGE_SCOPE:
                return False, None, "Invalid token scope for bridge endpoint"

            return True, payload, None

        except jwt.ExpiredSignatureError:
            return False, None, "Token has expired"
        except jwt.InvalidTokenError:
            return False, None, "Invalid token"
