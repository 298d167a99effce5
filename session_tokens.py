#!/usr/bin/env python3

import asyncio
import logging
import time
import traceback
from typing import Optional, Dict, Any, Callable, Awaitable

import jwt
import requests

from errors import SessionExpiredError, SessionInvalidError, NetworkTimeoutError, SessionError
from models import SessionToken, TokenState

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = "https://securetoken.googleapis.com/v1/token"


class RefreshRejected(Exception):
    """The token endpoint answered with an HTTP error status"""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Token refresh rejected with status {status_code}")


class SessionTokenManager:
    """
    Owns the access token lifecycle for the one session of this process.

    States:
        FRESH              token valid outside the grace window
        EXPIRING           token valid but inside the grace window, a background refresh starts
        EXPIRED            no token yet, or the token lifetime elapsed
        REFRESH_IN_FLIGHT  a refresh task is running; every caller awaits that same task
        INVALID            refresh was rejected or retries ran out; fails fast until a new sign-in
    """

    EXPIRY_MARGIN = 600  # seconds subtracted from the reported token lifetime
    MIN_LIFETIME = 30
    GRACE_WINDOW = 60
    RETRY_CEILING = 6
    BACKOFF_FACTOR = 4

    def __init__(
        self,
        api_key: str,
        refresh_token: Optional[str] = None,
        auto_refresh: bool = False,
        retry_base: float = 0.5,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        on_refresh: Optional[Callable[[SessionToken], None]] = None,
    ):
        if not api_key:
            raise ValueError("api_key is required for token refresh")
        self.api_key = api_key
        self.auto_refresh = auto_refresh
        self.retry_base = retry_base
        self.timeout = timeout
        self.session = session or requests.Session()
        self._clock = clock or time.time
        self._sleep = sleep or asyncio.sleep
        self._on_refresh = on_refresh

        self._refresh_token = refresh_token
        self._token: Optional[SessionToken] = None
        self._failure: Optional[SessionError] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._auto_task: Optional[asyncio.Task] = None
        self.error_count = 0
        self.refresh_count = 0

    @property
    def token(self) -> Optional[SessionToken]:
        return self._token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._refresh_token

    @property
    def state(self) -> TokenState:
        if self._failure is not None:
            return TokenState.INVALID
        if self._refresh_task is not None and not self._refresh_task.done():
            return TokenState.REFRESH_IN_FLIGHT
        if self._token is None:
            return TokenState.EXPIRED

        now = self._clock()
        if now >= self._token.expires_at:
            return TokenState.EXPIRED
        if now >= self._token.expires_at - self.GRACE_WINDOW:
            return TokenState.EXPIRING
        return TokenState.FRESH

    def _token_usable(self) -> bool:
        return self._token is not None and self._clock() < self._token.expires_at

    def set_refresh_token(self, refresh_token: str):
        """Start over with a refresh token from a new sign-in"""
        if not refresh_token:
            raise ValueError("refresh_token is required")
        self._cancel_tasks()
        self._refresh_token = refresh_token
        self._token = None
        self._failure = None
        self.error_count = 0
        logger.info("Session token manager armed with a new refresh token")

    def reset(self):
        """Forget every credential, e.g. on sign-out"""
        self._cancel_tasks()
        self._refresh_token = None
        self._token = None
        self._failure = None
        self.error_count = 0
        logger.info("Session token manager reset")

    def _cancel_tasks(self):
        for task in (self._refresh_task, self._auto_task):
            if task is not None and not task.done():
                task.cancel()
        self._refresh_task = None
        self._auto_task = None

    def _raise_failure(self):
        failure = self._failure
        raise type(failure)(str(failure))

    async def get_valid_token(self) -> SessionToken:
        """
        Return a usable session token, refreshing it when needed.

        Raises:
            SessionExpiredError: nobody is signed in (no refresh token)
            SessionInvalidError: the refresh token was rejected
            NetworkTimeoutError: refresh retries ran out
        """
        if self._failure is not None:
            self._raise_failure()

        state = self.state
        if state is TokenState.FRESH:
            return self._token
        if state is TokenState.EXPIRING:
            self._start_refresh()
            return self._token
        if state is TokenState.REFRESH_IN_FLIGHT and self._token_usable():
            return self._token

        if not self._refresh_token:
            raise SessionExpiredError("No signed-in user, sign in to continue")

        # Shield the shared task so one caller going away does not cancel it for the others
        return await asyncio.shield(self._start_refresh())

    async def refresh(self) -> SessionToken:
        """Force a refresh, joining one already in flight"""
        if self._failure is not None:
            self._raise_failure()
        if not self._refresh_token:
            raise SessionExpiredError("No signed-in user, sign in to continue")
        return await asyncio.shield(self._start_refresh())

    def _start_refresh(self) -> asyncio.Task:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_with_retry())
            self._refresh_task.add_done_callback(self._refresh_done)
        return self._refresh_task

    @staticmethod
    def _refresh_done(task: asyncio.Task):
        # Background refreshes have no awaiting caller; retrieve the outcome so it is not lost
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Token refresh finished with error: {error}")

    async def _refresh_with_retry(self) -> SessionToken:
        while True:
            try:
                token = await self._request_token()
            except RefreshRejected as e:
                logger.error(f"❌ Token refresh rejected ({e.status_code}): {e.body}")
                self._failure = SessionInvalidError()
                self._token = None
                raise SessionInvalidError() from e
            except asyncio.CancelledError:
                raise
            except (requests.exceptions.RequestException, ValueError, KeyError) as e:
                self.error_count += 1
                if self._token is not None:
                    self._token.error_count = self.error_count
                logger.warning(
                    f"Token refresh attempt failed ({self.error_count}/{self.RETRY_CEILING}): {e}"
                )
                if self.error_count >= self.RETRY_CEILING:
                    message = f"Token refresh failed {self.error_count} times in a row"
                    self._failure = NetworkTimeoutError(message)
                    self._token = None
                    raise NetworkTimeoutError(message) from e

                delay = self.retry_base * self.BACKOFF_FACTOR ** (self.error_count - 1)
                logger.info(f"Retrying token refresh in {delay:.2f}s")
                await self._sleep(delay)
                continue

            self.error_count = 0
            self.refresh_count += 1
            self._token = token
            if token.refresh_token and token.refresh_token != self._refresh_token:
                self._refresh_token = token.refresh_token
            logger.info(f"Session token refreshed for user {token.user_id}")

            if self._on_refresh:
                try:
                    self._on_refresh(token)
                except Exception as e:
                    logger.error(f"Error in token refresh callback: {e}")
                    logger.error(f"Refresh callback traceback: {traceback.format_exc()}")

            if self.auto_refresh:
                self._schedule_auto_refresh(token)
            return token

    async def _request_token(self) -> SessionToken:
        data = {"grant_type": "refresh_token", "refresh_token": self._refresh_token}
        params = {"key": self.api_key}

        logger.debug(f"🌐 TOKEN REFRESH REQUEST: POST {TOKEN_ENDPOINT}")
        response = await asyncio.to_thread(
            self.session.post, TOKEN_ENDPOINT, params=params, data=data, timeout=self.timeout
        )
        logger.debug(f"✅ TOKEN REFRESH RESPONSE: {response.status_code}")

        if response.status_code >= 400:
            raise RefreshRejected(response.status_code, response.text)

        return self._token_from_response(response.json())

    def _token_from_response(self, payload: Dict[str, Any]) -> SessionToken:
        id_token = payload["id_token"]
        reported = int(payload.get("expires_in", 3600))
        lifetime = max(self.MIN_LIFETIME, reported - self.EXPIRY_MARGIN)

        user_id = payload.get("user_id")
        if not user_id:
            claims = self.read_claims(id_token)
            user_id = claims.get("user_id") or claims.get("sub")

        return SessionToken(
            access_token=payload.get("access_token", id_token),
            id_token=id_token,
            token_type=payload.get("token_type", "Bearer"),
            expires_at=self._clock() + lifetime,
            user_id=user_id,
            project_id=payload.get("project_id"),
            refresh_token=payload.get("refresh_token"),
        )

    @staticmethod
    def read_claims(id_token: str) -> Dict[str, Any]:
        """Read identity token claims; the token was just received from the token endpoint over TLS"""
        try:
            return jwt.decode(id_token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return {}

    def _schedule_auto_refresh(self, token: SessionToken):
        if self._auto_task is not None and not self._auto_task.done():
            self._auto_task.cancel()
        delay = max(0.0, token.expires_at - self._clock())
        self._auto_task = asyncio.get_running_loop().create_task(self._auto_refresh_after(delay))
        logger.debug(f"Next automatic token refresh in {delay:.0f}s")

    async def _auto_refresh_after(self, delay: float):
        await asyncio.sleep(delay)
        try:
            # The refresh re-arms this timer on success; rescheduling must not cancel the shared task
            await asyncio.shield(self._start_refresh())
        except SessionError as e:
            logger.error(f"Automatic token refresh failed: {e}")

    @property
    def auto_refresh_pending(self) -> bool:
        return self._auto_task is not None and not self._auto_task.done()

    async def close(self):
        self._cancel_tasks()
