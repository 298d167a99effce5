#!/usr/bin/env python3

import inspect
import logging
import traceback
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List, Callable, Tuple

from errors import SessionError, SessionInvalidError
from models import SignInState, StoredCredential
from session_context import SessionContext

logger = logging.getLogger(__name__)

SESSION_READY = "session-ready"
SESSION_ENDED = "session-ended"

# Token material the login page may include in the user object; never persisted with the profile
_TOKEN_FIELDS = ("stsTokenManager", "refreshToken", "accessToken", "idToken")


class SignInSurface(ABC):
    """What the sign-in flow needs from the UI host"""

    @abstractmethod
    async def present_sign_in(self) -> None:
        """Show the interactive sign-in page"""

    @abstractmethod
    async def confirm_sign_out(self, provider_id: Optional[str]) -> Tuple[bool, bool]:
        """
        Ask the user to confirm sign-out.

        Args:
            provider_id: Provider offering a logout page, None if there is none to offer

        Returns:
            (confirmed, also_sign_out_from_provider)
        """

    @abstractmethod
    async def open_url(self, url: str, title: Optional[str] = None) -> None:
        """Open an external page"""

    @abstractmethod
    async def show_error(self, title: str, message: str) -> None:
        """Blocking error message"""


def refresh_token_of(auth_result: Dict[str, Any]) -> Optional[str]:
    """Find the refresh token in the payload posted by the login page"""
    if auth_result.get("refreshToken"):
        return auth_result["refreshToken"]
    user = auth_result.get("user") or {}
    if user.get("refreshToken"):
        return user["refreshToken"]
    return (user.get("stsTokenManager") or {}).get("refreshToken")


def provider_id_of(auth_result: Dict[str, Any]) -> Optional[str]:
    if auth_result.get("providerId"):
        return auth_result["providerId"]
    provider_data = (auth_result.get("user") or {}).get("providerData") or []
    if provider_data and isinstance(provider_data[0], dict):
        return provider_data[0].get("providerId")
    return None


def public_user(auth_result: Dict[str, Any]) -> Dict[str, Any]:
    """User profile from the login payload, without token material"""
    user = {k: v for k, v in (auth_result.get("user") or {}).items() if k not in _TOKEN_FIELDS}
    for key in ("profile", "account"):
        if auth_result.get(key) and key not in user:
            user[key] = auth_result[key]
    return user


class SignInSessionController:
    """
    Sign-in state machine: SIGNED_OUT -> AUTHENTICATING -> SIGNED_IN -> SIGNING_OUT -> SIGNED_OUT.

    Emits "session-ready" with the user once the storage scopes are open and
    "session-ended" after sign-out.
    """

    def __init__(self, context: SessionContext, surface: SignInSurface):
        self.context = context
        self.surface = surface
        self.state = SignInState.SIGNED_OUT
        self.provider_id: Optional[str] = None
        self._handlers: Dict[str, List[Callable]] = {}

    def on(self, event: str, handler: Callable):
        self._handlers.setdefault(event, []).append(handler)

    async def emit(self, event: str, *args):
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in {event} handler: {e}")
                logger.error(f"Handler traceback: {traceback.format_exc()}")

    def _set_state(self, state: SignInState):
        if state is not self.state:
            logger.info(f"Sign-in state {self.state.value} -> {state.value}")
        self.state = state

    async def _session_ready(self, user_id: str, user: Dict[str, Any]):
        self.context.open_scopes(user_id, user)
        self._set_state(SignInState.SIGNED_IN)
        logger.info(f"✅ Session ready for {user.get('displayName') or user_id}")
        await self.emit(SESSION_READY, self.context.user)

    async def start(self) -> bool:
        """
        Resume the previous session from the stored credential.

        Returns:
            True if the session was resumed; otherwise the sign-in page was presented
        """
        self._set_state(SignInState.AUTHENTICATING)
        credential = self.context.secrets.load_credential()
        if credential is None:
            logger.info("No stored credential, starting interactive sign-in")
            self._set_state(SignInState.SIGNED_OUT)
            await self.surface.present_sign_in()
            return False

        self.context.tokens.set_refresh_token(credential.refresh_token)
        try:
            token = await self.context.tokens.get_valid_token()
        except SessionError as e:
            logger.warning(f"Silent sign-in failed: {e}")
            if isinstance(e, SessionInvalidError):
                self.context.secrets.delete_credential()
            self.context.tokens.reset()
            self._set_state(SignInState.SIGNED_OUT)
            await self.surface.present_sign_in()
            return False

        self.provider_id = credential.provider_id
        await self._session_ready(token.user_id or credential.user_id, credential.user)
        return True

    async def complete_sign_in(self, auth_result: Dict[str, Any]) -> bool:
        """Finish an interactive sign-in with the payload posted by the login page"""
        if self.state is SignInState.SIGNED_IN:
            logger.warning("New sign-in while a session is open, replacing it")
            self.context.close_scopes()
        self._set_state(SignInState.AUTHENTICATING)

        try:
            refresh_token = refresh_token_of(auth_result)
            if not refresh_token:
                raise ValueError("Sign-in result carries no refresh token")
            user = public_user(auth_result)

            tokens = self.context.tokens
            tokens.set_refresh_token(refresh_token)
            token = await tokens.get_valid_token()

            user_id = token.user_id or user.get("uid")
            if not user_id:
                raise ValueError("Sign-in result carries no user id")
            if user.get("uid") and token.user_id and user["uid"] != token.user_id:
                raise ValueError("Sign-in result does not belong to the refreshed session")

            provider_id = provider_id_of(auth_result)
            credential = StoredCredential(
                user_id=user_id,
                refresh_token=tokens.refresh_token,
                provider_id=provider_id,
                user=user,
            )
            self.context.secrets.save_credential(credential)
        except (ValueError, SessionError) as e:
            logger.error(f"❌ Sign-in failed: {e}")
            self.context.tokens.reset()
            self._set_state(SignInState.SIGNED_OUT)
            await self.surface.show_error("Sign-in failed", str(e))
            return False

        self.provider_id = provider_id
        await self._session_ready(user_id, user)
        return True

    async def sign_out(self, confirm: bool = True) -> bool:
        """
        Sign the user out after confirmation.

        Returns:
            True if the user was signed out, False if cancelled or nobody was signed in
        """
        if self.state is not SignInState.SIGNED_IN:
            logger.info("Sign-out requested with no open session")
            return False

        logout_url = self.context.config.logout_url(self.provider_id)
        also_provider = False
        if confirm:
            confirmed, also_provider = await self.surface.confirm_sign_out(
                self.provider_id if logout_url else None
            )
            if not confirmed:
                return False

        self._set_state(SignInState.SIGNING_OUT)
        if also_provider and logout_url:
            await self.surface.open_url(logout_url, f"Sign out from {self.provider_id}")

        await self._end_session()
        await self.surface.present_sign_in()
        return True

    async def handle_session_error(self, error: SessionError):
        """An operation hit an unrecoverable session error: drop the session and ask for a new sign-in"""
        logger.error(f"Session lost: {error}")
        await self._end_session()
        await self.surface.show_error("Session expired", str(error))
        await self.surface.present_sign_in()

    async def _end_session(self):
        self.context.secrets.delete_credential()
        self.context.tokens.reset()
        self.context.close_scopes()
        self.provider_id = None
        self._set_state(SignInState.SIGNED_OUT)
        await self.emit(SESSION_ENDED)
