#!/usr/bin/env python3

import asyncio
import shutil
import tempfile

import pytest

from conftest import FakeTokens, FakeSurface, LOGIN_RESULT, make_context
from errors import NetworkTimeoutError, SessionExpiredError, SessionInvalidError
from models import SignInState, StoredCredential
from signin_session import (
    SignInSessionController,
    SESSION_READY,
    SESSION_ENDED,
    refresh_token_of,
    provider_id_of,
    public_user,
)


class TestLoginPayload:

    def test_refresh_token_locations(self):
        assert refresh_token_of({"refreshToken": "top"}) == "top"
        assert refresh_token_of({"user": {"refreshToken": "user"}}) == "user"
        assert refresh_token_of(LOGIN_RESULT) == "refresh-from-login"
        assert refresh_token_of({}) is None

    def test_provider_id(self):
        assert provider_id_of({"providerId": "github.com"}) == "github.com"
        assert provider_id_of(LOGIN_RESULT) == "google.com"
        assert provider_id_of({"user": {}}) is None

    def test_public_user_strips_token_material(self):
        user = public_user(LOGIN_RESULT)

        assert user["uid"] == "user-1"
        assert "stsTokenManager" not in user


class SessionTestCase:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.tokens = FakeTokens()
        self.context = make_context(
            self.temp_dir, tokens=self.tokens, logout={"google.com": "https://accounts.google.com/Logout"}
        )
        self.surface = FakeSurface()
        self.controller = SignInSessionController(self.context, self.surface)
        self.events = []
        self.controller.on(SESSION_READY, lambda user: self.events.append((SESSION_READY, user)))
        self.controller.on(SESSION_ENDED, lambda: self.events.append((SESSION_ENDED, None)))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir)

    def store_credential(self, refresh_token="stored-refresh"):
        self.context.secrets.save_credential(
            StoredCredential(
                user_id="user-1",
                refresh_token=refresh_token,
                provider_id="google.com",
                user={"uid": "user-1", "displayName": "Ann Example"},
            )
        )


class TestStart(SessionTestCase):

    def test_without_credential_presents_sign_in(self):
        assert asyncio.run(self.controller.start()) is False

        assert self.surface.sign_in_prompts == 1
        assert self.controller.state is SignInState.SIGNED_OUT
        assert not self.context.is_open

    def test_resumes_stored_session(self):
        self.store_credential()

        assert asyncio.run(self.controller.start()) is True

        assert self.tokens.refresh_token == "stored-refresh"
        assert self.controller.state is SignInState.SIGNED_IN
        assert self.controller.provider_id == "google.com"
        assert self.context.is_open
        assert self.events == [(SESSION_READY, {"uid": "user-1", "displayName": "Ann Example"})]
        assert self.surface.sign_in_prompts == 0

    def test_rejected_credential_is_forgotten(self):
        self.store_credential()
        self.tokens.error = SessionInvalidError()

        assert asyncio.run(self.controller.start()) is False

        assert self.context.secrets.load_credential() is None
        assert self.tokens.resets == 1
        assert self.surface.sign_in_prompts == 1
        assert self.controller.state is SignInState.SIGNED_OUT

    def test_network_failure_keeps_credential(self):
        self.store_credential()
        self.tokens.error = NetworkTimeoutError("offline")

        assert asyncio.run(self.controller.start()) is False

        assert self.context.secrets.load_credential() is not None
        assert self.surface.sign_in_prompts == 1


class TestCompleteSignIn(SessionTestCase):

    def test_successful_sign_in_stores_credential(self):
        assert asyncio.run(self.controller.complete_sign_in(LOGIN_RESULT)) is True

        credential = self.context.secrets.load_credential()
        assert credential.user_id == "user-1"
        assert credential.refresh_token == "refresh-from-login"
        assert credential.provider_id == "google.com"
        assert "stsTokenManager" not in credential.user
        assert self.controller.state is SignInState.SIGNED_IN
        assert self.context.user_id == "user-1"
        assert self.events[0][0] == SESSION_READY

    def test_missing_refresh_token_fails(self):
        result = asyncio.run(self.controller.complete_sign_in({"user": {"uid": "user-1"}}))

        assert result is False
        assert self.surface.errors[0][0] == "Sign-in failed"
        assert self.controller.state is SignInState.SIGNED_OUT
        assert self.context.secrets.load_credential() is None

    def test_foreign_user_is_rejected(self):
        payload = {"refreshToken": "r", "user": {"uid": "someone-else", "displayName": "Eve"}}

        assert asyncio.run(self.controller.complete_sign_in(payload)) is False
        assert not self.context.is_open

    def test_refresh_failure_is_reported(self):
        self.tokens.error = SessionInvalidError()

        assert asyncio.run(self.controller.complete_sign_in(LOGIN_RESULT)) is False
        assert self.tokens.resets == 1
        assert len(self.surface.errors) == 1


class TestSignOut(SessionTestCase):

    def setup_method(self):
        super().setup_method()
        asyncio.run(self.controller.complete_sign_in(LOGIN_RESULT))
        self.events.clear()

    def test_cancelled_sign_out_keeps_session(self):
        self.surface.confirm = (False, False)

        assert asyncio.run(self.controller.sign_out()) is False

        assert self.controller.state is SignInState.SIGNED_IN
        assert self.context.secrets.load_credential() is not None
        assert self.events == []

    def test_sign_out_clears_everything(self):
        assert asyncio.run(self.controller.sign_out()) is True

        assert self.surface.confirm_requests == ["google.com"]
        assert self.surface.opened == []
        assert self.context.secrets.load_credential() is None
        assert not self.context.is_open
        assert self.controller.state is SignInState.SIGNED_OUT
        assert self.events == [(SESSION_ENDED, None)]
        assert self.surface.sign_in_prompts == 1
        with pytest.raises(SessionExpiredError):
            self.context.documents_for("file")

    def test_sign_out_from_provider(self):
        self.surface.confirm = (True, True)

        asyncio.run(self.controller.sign_out())

        assert self.surface.opened[0][0] == "https://accounts.google.com/Logout"

    def test_no_provider_offer_without_logout_page(self):
        self.context.config.logout.clear()

        asyncio.run(self.controller.sign_out())

        assert self.surface.confirm_requests == [None]

    def test_unconfirmed_sign_out(self):
        assert asyncio.run(self.controller.sign_out(confirm=False)) is True
        assert self.surface.confirm_requests == []

    def test_sign_out_when_signed_out(self):
        asyncio.run(self.controller.sign_out(confirm=False))

        assert asyncio.run(self.controller.sign_out()) is False

    def test_session_error_ends_session(self):
        asyncio.run(self.controller.handle_session_error(SessionInvalidError()))

        assert self.controller.state is SignInState.SIGNED_OUT
        assert self.surface.errors[0][0] == "Session expired"
        assert self.surface.sign_in_prompts == 1


class TestEvents(SessionTestCase):

    def test_failing_handler_does_not_stop_others(self):
        seen = []

        def broken(user):
            raise RuntimeError("boom")

        async def later(user):
            seen.append(user["uid"])

        self.controller.on(SESSION_READY, broken)
        self.controller.on(SESSION_READY, later)

        asyncio.run(self.controller.complete_sign_in(LOGIN_RESULT))

        assert seen == ["user-1"]
        assert len(self.events) == 1
