#!/usr/bin/env python3

import base64
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional
from urllib.parse import urlparse, unquote

from errors import BridgeError
from local_channel import LocalChannel
from models import Scope
from session_context import SessionContext
from user_docs import ABOUTME_FOLDER

logger = logging.getLogger(__name__)

INFO_REQUEST_TOPIC = "info-request"
SHOW_FILE_TOPIC = "show-file"


class InfoRequestKind(Enum):
    USER = "user"
    DOCS = "docs"
    FOLDER_LIST = "folder-list"
    FILE_LIST = "file-list"


class ShowFileKind(Enum):
    PATH = "path"
    URL = "url"


class UserInfoKind(Enum):
    PROFILE = "profile"
    PROVIDER = "provider"
    CONTEXT = "context"


class WindowHost(ABC):
    """Opens content windows on behalf of the UI"""

    @abstractmethod
    async def open_window(self, url: str, title: str, content_type: Optional[str] = None) -> None:
        pass


def _last_login(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).isoformat()
    except (TypeError, ValueError):
        return str(value)


def build_profile(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "Name": user.get("displayName"),
        "Email": user.get("email"),
        "User ID": user.get("uid"),
        "Photo": user.get("photoURL"),
        "Last Login": _last_login(user.get("lastLoginAt")),
    }


def _transportable(content: Any) -> Any:
    """Binary content cannot travel as JSON text"""
    if isinstance(content, (bytes, bytearray)):
        return {"encoding": "base64", "data": base64.b64encode(bytes(content)).decode("ascii")}
    return content


class BrowserAnswers:
    """Answers the UI's information queries and file display requests"""

    def __init__(self, context: SessionContext, channel: LocalChannel, window_host: WindowHost):
        self.context = context
        self.channel = channel
        self.window_host = window_host

    def user_info(self, kind: UserInfoKind) -> Any:
        user = self.context.user
        if kind is UserInfoKind.PROFILE:
            return build_profile(user)
        if kind is UserInfoKind.PROVIDER:
            provider_data = user.get("providerData") or [{}]
            return provider_data[0]
        return self.context.app_context

    async def docs(self, name: str) -> Dict[str, Any]:
        try:
            content = await self.context.documents_for(Scope.USER).read(f"{ABOUTME_FOLDER}/{name}")
        except (BridgeError, ValueError) as e:
            logger.error(f"Error reading {ABOUTME_FOLDER}/{name}: {e}")
            return {}
        return content or {}

    async def folder_list(self, domain: Optional[str] = None) -> list:
        try:
            return await self.context.files_for(domain or "file").folders()
        except (BridgeError, ValueError) as e:
            logger.error(f"Error listing folders in {domain}: {e}")
            return []

    async def file_list(self, folder_path: str = "", domain: Optional[str] = None) -> list:
        try:
            records = await self.context.files_for(domain or "file").list(folder_path or "")
        except (BridgeError, ValueError) as e:
            logger.error(f"Error listing files of '{folder_path}' in {domain}: {e}")
            return []
        return [record.to_dict() for record in records]

    async def info_request(self, kind: str, *params) -> Any:
        """Answer an information query and send the answer on the info-request topic"""
        try:
            request = InfoRequestKind(kind)
        except ValueError:
            logger.warning(f"Unknown info request kind: {kind}")
            return {}

        if request is InfoRequestKind.USER:
            try:
                content = self.user_info(UserInfoKind(params[0] if params else "profile"))
            except ValueError:
                logger.warning(f"Unknown user info kind: {params[0]}")
                content = {}
        elif request is InfoRequestKind.DOCS:
            content = await self.docs(params[0]) if params else {}
        elif request is InfoRequestKind.FOLDER_LIST:
            content = await self.folder_list(*params[:1])
        else:
            content = await self.file_list(*params[:2])

        await self.channel.send(INFO_REQUEST_TOPIC, request.value, content)
        return content

    async def file_content(self, path: str, domain: Optional[str] = None) -> Any:
        if not path:
            return {}
        try:
            content = await self.context.files_for(domain or "file").download(path)
        except (BridgeError, ValueError) as e:
            logger.error(f"Error downloading {path} from {domain}: {e}")
            return {}
        return {} if content is None else content

    async def open_with_url(self, url: str, content_type: Optional[str] = None) -> str:
        resource = unquote(urlparse(url).path.rstrip("/").split("/")[-1])
        await self.window_host.open_window(url, resource, content_type)
        return resource

    async def show_file(self, kind: str, *params) -> Any:
        try:
            request = ShowFileKind(kind)
        except ValueError:
            logger.warning(f"Unknown show-file kind: {kind}")
            return {}
        if not params:
            return {}

        if request is ShowFileKind.PATH:
            content = _transportable(await self.file_content(*params[:2]))
            await self.channel.send(SHOW_FILE_TOPIC, request.value, content)
            return content

        title = await self.open_with_url(*params[:2])
        return {"opened": params[0], "title": title}
