#!/usr/bin/env python3

import asyncio
import contextlib
import json
import logging
import traceback
from typing import Optional, Callable, Awaitable, Set

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect
import uvicorn

from answer_browser import BrowserAnswers, INFO_REQUEST_TOPIC, SHOW_FILE_TOPIC
from app_config import AppConfig
from auth_middleware import AuthMiddleware, DefaultRejectMiddleware, noauth, bridge_auth
from jwt_auth import JWTValidator
from local_channel import LocalChannel
from signin_session import SignInSessionController

logger = logging.getLogger(__name__)

SIGNOUT_TOPIC = "user-signout"


def to_json(content) -> str:
    # Document values may hold timestamps
    return json.dumps(content, ensure_ascii=False, separators=(",", ":"), default=str)


class BridgeJSONResponse(JSONResponse):
    def render(self, content) -> bytes:
        return to_json(content).encode("utf-8")


class BridgeServer:
    """Local Starlette server the sandboxed UI talks to, with default reject authentication"""

    def __init__(
        self,
        config: AppConfig,
        controller: SignInSessionController,
        answers: BrowserAnswers,
        channel: LocalChannel,
        bridge_secret: str,
        on_login_ready: Optional[Callable[[], Awaitable[None]]] = None,
        on_startup: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        if not bridge_secret:
            raise ValueError("bridge_secret is required")
        self.config = config
        self.controller = controller
        self.answers = answers
        self.channel = channel
        self.jwt_validator = JWTValidator(bridge_secret)
        self.on_login_ready = on_login_ready
        self.on_startup = on_startup
        self._startup_task: Optional[asyncio.Task] = None
        self._channel_tasks: Set[asyncio.Task] = set()

        # UI-initiated messages arriving over the channel socket
        channel.subscribe(INFO_REQUEST_TOPIC, self._channel_info_request)
        channel.subscribe(SHOW_FILE_TOPIC, self._channel_show_file)
        channel.subscribe(SIGNOUT_TOPIC, self._channel_signout)

        middleware = [
            Middleware(AuthMiddleware, bridge_secret=bridge_secret),
            Middleware(DefaultRejectMiddleware),
        ]

        self.app = Starlette(
            routes=[
                Route("/health", self.health_check, methods=["GET"]),
                Route("/api/firebaseconfig", self.firebase_config, methods=["GET"]),
                Route("/api/loginready", self.login_ready, methods=["GET"]),
                Route("/api/logintoken", self.login_token, methods=["POST"]),
                Route("/api/info-request", self.info_request, methods=["POST"]),
                Route("/api/show-file", self.show_file, methods=["POST"]),
                Route("/api/signout", self.signout, methods=["POST"]),
                WebSocketRoute("/channel", self.channel_socket),
            ],
            middleware=middleware,
            lifespan=self.lifespan,
        )

    @contextlib.asynccontextmanager
    async def lifespan(self, app):
        if self.on_startup is not None:
            self._startup_task = asyncio.create_task(self.on_startup())
        try:
            yield
        finally:
            if self._startup_task is not None and not self._startup_task.done():
                self._startup_task.cancel()
            await self.controller.context.tokens.close()

    @staticmethod
    async def _json_body(request: Request):
        body = await request.body()
        if not body:
            return {}
        return json.loads(body.decode("utf-8"))

    @noauth
    async def health_check(self, request: Request):
        """Health check endpoint - no authentication required"""
        return JSONResponse(
            {"status": "healthy", "session": self.controller.state.value, "ui_connected": self.channel.connected}
        )

    @noauth
    async def firebase_config(self, request: Request):
        """Client configuration for the login page - no authentication required"""
        return JSONResponse(self.config.firebase_config())

    @bridge_auth
    async def login_ready(self, request: Request):
        """The login page finished loading and needs to be shown"""
        if self.on_login_ready is not None:
            await self.on_login_ready()
        return JSONResponse({"status": "ok"})

    @bridge_auth
    async def login_token(self, request: Request):
        """Sign-in result posted at the end of the login workflow"""
        try:
            auth_result = await self._json_body(request)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Invalid JSON payload: {e}")
            return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)

        if not isinstance(auth_result, dict):
            return JSONResponse({"error": "Invalid sign-in payload"}, status_code=400)

        if await self.controller.complete_sign_in(auth_result):
            return JSONResponse({"status": "signed-in", "uid": self.controller.context.user_id})
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    async def _request_kind(self, request: Request):
        data = await self._json_body(request)
        if not isinstance(data, dict) or not data.get("kind"):
            raise ValueError("Request must name a kind")
        params = data.get("params") or []
        if not isinstance(params, list):
            raise ValueError("params must be a list")
        return data["kind"], params

    @bridge_auth
    async def info_request(self, request: Request):
        try:
            kind, params = await self._request_kind(request)
        except (ValueError, UnicodeDecodeError) as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            return BridgeJSONResponse(await self.answers.info_request(kind, *params))
        except Exception as e:
            logger.error(f"Error answering info request {kind}: {e}")
            logger.error(f"Info request traceback: {traceback.format_exc()}")
            return JSONResponse({"error": "Internal server error"}, status_code=500)

    @bridge_auth
    async def show_file(self, request: Request):
        try:
            kind, params = await self._request_kind(request)
        except (ValueError, UnicodeDecodeError) as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            return BridgeJSONResponse(await self.answers.show_file(kind, *params))
        except Exception as e:
            logger.error(f"Error showing file {kind}: {e}")
            logger.error(f"Show file traceback: {traceback.format_exc()}")
            return JSONResponse({"error": "Internal server error"}, status_code=500)

    @bridge_auth
    async def signout(self, request: Request):
        try:
            data = await self._json_body(request)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)
        confirm = bool(data.get("confirm", True)) if isinstance(data, dict) else True
        signed_out = await self.controller.sign_out(confirm=confirm)
        return JSONResponse({"signed_out": signed_out})

    async def channel_socket(self, websocket: WebSocket):
        """Message channel to the UI; the bridge token travels as a query parameter"""
        token = websocket.query_params.get("token", "")
        is_valid, _, error_msg = self.jwt_validator.validate_bridge_token(token)
        if not is_valid:
            logger.warning(f"Rejected UI channel connection: {error_msg}")
            await websocket.close(code=1008)
            return

        await websocket.accept()
        async def sink(message):
            await websocket.send_text(to_json(message))

        self.channel.attach(sink)
        try:
            while True:
                message = await websocket.receive_json()
                if not isinstance(message, dict) or not message.get("topic"):
                    logger.warning(f"Ignoring malformed channel message: {message}")
                    continue
                # Handlers may wait for replies that arrive through this same loop
                task = asyncio.create_task(self.channel.deliver(message["topic"], message.get("value")))
                self._channel_tasks.add(task)
                task.add_done_callback(self._channel_task_done)
        except WebSocketDisconnect:
            pass
        finally:
            self.channel.detach(sink)

    def _channel_task_done(self, task: asyncio.Task):
        self._channel_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Error delivering UI message: {error}")

    async def _channel_info_request(self, value):
        params = value if isinstance(value, list) else [value]
        if params:
            await self.answers.info_request(*params)

    async def _channel_show_file(self, value):
        params = value if isinstance(value, list) else [value]
        if params:
            await self.answers.show_file(*params)

    async def _channel_signout(self, value):
        await self.controller.sign_out()

    def uvicorn_config(self, host: str = "127.0.0.1") -> uvicorn.Config:
        return uvicorn.Config(
            self.app,
            host=host,
            port=self.config.port,
            ssl_certfile=self.config.tls_cert_file,
            ssl_keyfile=self.config.tls_key_file,
            log_level="debug" if self.config.debug else "info",
        )

    def run(self, host: str = "127.0.0.1"):
        """Run the server"""
        logger.info(f"Starting bridge server on {host}:{self.config.port}")
        logger.info(f"TLS: {'enabled' if self.config.tls_enabled else 'disabled'}")
        uvicorn.Server(self.uvicorn_config(host)).run()


def create_server(
    config: AppConfig,
    controller: SignInSessionController,
    answers: BrowserAnswers,
    channel: LocalChannel,
    bridge_secret: str,
    on_login_ready: Optional[Callable[[], Awaitable[None]]] = None,
    on_startup: Optional[Callable[[], Awaitable[None]]] = None,
) -> BridgeServer:
    """Create and configure the bridge server"""
    return BridgeServer(
        config, controller, answers, channel, bridge_secret, on_login_ready, on_startup
    )
