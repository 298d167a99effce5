#!/usr/bin/env python3

import argparse
import dataclasses
import os
import logging
import webbrowser
from typing import Optional, Tuple

from answer_browser import BrowserAnswers, WindowHost
from app_config import load_config, AppConfig
from bridge_server import create_server
from jwt_auth import create_bridge_token, generate_bridge_secret
from local_channel import LocalChannel
from session_context import SessionContext
from signin_session import SignInSessionController, SignInSurface, SESSION_READY, SESSION_ENDED
from user_docs import update_user_docs

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


class DesktopSurface(SignInSurface, WindowHost):
    """Reaches the UI shell through the local channel and the system browser"""

    def __init__(self, channel: LocalChannel, config: AppConfig, bridge_token: str):
        self.channel = channel
        self.config = config
        self.bridge_token = bridge_token

    async def present_sign_in(self) -> None:
        delivered = await self.channel.send("start-new-signin", "login", {"token": self.bridge_token})
        if not delivered:
            logger.info(f"Waiting for the UI shell to connect at {self.config.host_url}/channel")

    async def confirm_sign_out(self, provider_id: Optional[str]) -> Tuple[bool, bool]:
        answer = await self.channel.request(
            "confirm-signout",
            "dialog",
            value={"message": "Do you want to sign out from this application?", "provider": provider_id},
        )
        if not isinstance(answer, dict):
            return False, False
        return bool(answer.get("confirmed")), bool(provider_id and answer.get("provider"))

    async def open_url(self, url: str, title: Optional[str] = None) -> None:
        logger.info(f"Opening {title or url}")
        webbrowser.open(url)

    async def show_error(self, title: str, message: str) -> None:
        logger.error(f"{title}: {message}")
        await self.channel.send("modal", "error", {"title": title, "message": message})

    async def open_window(self, url: str, title: str, content_type: Optional[str] = None) -> None:
        await self.open_url(url, title)


def build_server(config: AppConfig, bridge_secret: str):
    bridge_token = create_bridge_token(bridge_secret, name="ui-shell")
    context = SessionContext.from_config(config)
    channel = LocalChannel()
    surface = DesktopSurface(channel, config, bridge_token)
    controller = SignInSessionController(context, surface)
    answers = BrowserAnswers(context, channel, surface)

    async def on_session_ready(user):
        await update_user_docs(context)
        await channel.send("app-ready", "user", {"uid": context.user_id})

    async def on_session_ended():
        await channel.send("user-signout", "done", None)

    controller.on(SESSION_READY, on_session_ready)
    controller.on(SESSION_ENDED, on_session_ended)

    server = create_server(
        config, controller, answers, channel, bridge_secret, on_startup=controller.start
    )
    return server, bridge_token


def run_server(config: AppConfig, bridge_secret: Optional[str] = None):
    print(f"Firebase project: {config.project_id}")
    print(f"Data directory: {config.data_dir}")
    print(f"Bridge URL: {config.host_url}")

    if not bridge_secret:
        bridge_secret = generate_bridge_secret()
        logger.info("No BRIDGE_SECRET configured, using a secret for this run only")

    try:
        server, bridge_token = build_server(config, bridge_secret)
        print("\nUI shell bridge token:")
        print("=" * 50)
        print(bridge_token)
        print("=" * 50)

        server.run()

    except KeyboardInterrupt:
        print("\nBridge shutting down...")
    except Exception as e:
        logger.error(f"Error starting bridge: {e}")
        raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Firebase desk bridge")
    parser.add_argument(
        "--config",
        default=os.getenv("BRIDGE_CONFIG"),
        help="TOML configuration file (default: from BRIDGE_CONFIG env var or ./bridge.toml)",
    )
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (overrides config)")
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Directory for the local secret store (overrides config and BRIDGE_DATA_DIR)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    try:
        app_config = load_config(args.config)
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}")
        print("Set FIREBASE_PROJECT_ID and FIREBASE_API_KEY or provide a bridge.toml file.")
        exit(1)

    overrides = {}
    if args.port:
        overrides["port"] = args.port
        # derived host_url follows the port
        if app_config.host_url.endswith(f"//localhost:{app_config.port}"):
            overrides["host_url"] = ""
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if overrides:
        app_config = dataclasses.replace(app_config, **overrides)

    if args.verbose or app_config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    run_server(app_config, app_config.bridge_secret)
