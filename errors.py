#!/usr/bin/env python3

from typing import Optional


class BridgeError(Exception):
    """Base class for errors raised by the storage and session layers"""


class InvalidPathError(BridgeError, ValueError):
    """Malformed or wrong-parity document path"""

    def __init__(self, path: Optional[str], reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid path {path!r}: {reason}")


class BackendError(BridgeError):
    """Non-2xx response from the document, object or token backend"""

    def __init__(self, code: Optional[int], message: str):
        self.code = code
        self.message = message
        super().__init__(f"Backend error {code}: {message}")

    @property
    def not_found(self) -> bool:
        return self.code == 404


class ConflictError(BackendError):
    """A write precondition (document version) no longer holds"""


class SessionError(BridgeError):
    """No usable session token"""


class SessionExpiredError(SessionError):
    """No valid token could be obtained, e.g. nobody is signed in"""


class SessionInvalidError(SessionError):
    """Token refresh was rejected; terminal until the user signs in again"""

    def __init__(self, message: str = "Session is no longer valid, sign out and sign in again"):
        super().__init__(message)


class NetworkTimeoutError(SessionError):
    """Token refresh retry ceiling exceeded"""
