#!/usr/bin/env python3

import logging
from typing import List, Optional, Callable
from functools import wraps
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.requests import Request
from jwt_auth import JWTValidator, BRIDGE_SCOPE

logger = logging.getLogger(__name__)


class DefaultRejectMiddleware(BaseHTTPMiddleware):
    """Answers 401 for any route that declares neither @noauth nor @bridge_auth"""

    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # Flags are set by the route decorators while the handler runs
        auth_explicitly_disabled = getattr(request.state, "auth_explicitly_disabled", False)
        auth_explicitly_required = getattr(request.state, "auth_explicitly_required", False)

        # If neither @noauth nor @require_auth/@bridge_auth was used, reject
        if not auth_explicitly_disabled and not auth_explicitly_required:
            return JSONResponse(
                {"error": "Endpoint requires explicit authentication configuration"},
                status_code=401,
            )

        return response


class AuthMiddleware(BaseHTTPMiddleware):
    """Bridge token extraction; decorators do the validation"""

    def __init__(self, app, bridge_secret: Optional[str]):
        super().__init__(app)
        self.jwt_validator = JWTValidator(bridge_secret) if bridge_secret else None

    async def dispatch(self, request: Request, call_next):
        request.state.user = None
        request.state.auth_error = None

        if self.jwt_validator is not None:
            self._extract_jwt_token(request)

        return await call_next(request)

    def _extract_jwt_token(self, request: Request):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return  # No token provided - let decorators handle

        token = auth_header[7:]  # Remove 'Bearer ' prefix
        if not token:
            return

        # Store token and validator for later validation by decorators
        request.state.jwt_token = token
        request.state.jwt_validator = self.jwt_validator


def _split_args(args):
    # Handle both instance methods (self, request) and standalone functions (request)
    if len(args) == 2:
        return args[0], args[1]
    if len(args) == 1:
        return None, args[0]
    raise ValueError("Expected 1 or 2 positional arguments")


def noauth(func: Callable) -> Callable:
    """Decorator to explicitly allow unauthenticated access"""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        self_arg, request = _split_args(args)

        request.state.auth_explicitly_disabled = True

        if self_arg is not None:
            return await func(self_arg, request)
        return await func(request)

    # Marker for public routes
    wrapper._no_auth_required = True
    return wrapper


def require_auth(scopes: Optional[List[str]] = None) -> Callable:
    """
    Decorator to require a valid bridge token

    Args:
        scopes: Accepted token scopes (e.g., ['bridge'])
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            self_arg, request = _split_args(args)

            # Seen by DefaultRejectMiddleware after the handler returns
            request.state.auth_explicitly_required = True

            jwt_token = getattr(request.state, "jwt_token", None)
            jwt_validator = getattr(request.state, "jwt_validator", None)
            user = getattr(request.state, "user", None)
            auth_error = getattr(request.state, "auth_error", None)

            if jwt_token and not user and not auth_error and jwt_validator:
                is_valid, payload, error_msg = jwt_validator.validate_bridge_token(jwt_token)
                if is_valid:
                    request.state.user = payload
                    user = payload
                else:
                    auth_error = error_msg

            if not user:
                error_detail = "Authentication required"
                if auth_error:
                    error_detail = f"Authentication failed: {auth_error}"
                return JSONResponse({"error": error_detail}, status_code=401)

            if scopes:
                user_scope = user.get("scope")
                if not user_scope or user_scope not in scopes:
                    return JSONResponse(
                        {"error": f"Insufficient scope. Required: {scopes}, Got: {user_scope}"},
                        status_code=403,
                    )

            if self_arg is not None:
                return await func(self_arg, request)
            return await func(request)

        return wrapper

    return decorator


def bridge_auth(func: Callable) -> Callable:
    """Shorthand for endpoints the UI calls with its bridge token"""
    return require_auth(scopes=[BRIDGE_SCOPE])(func)
