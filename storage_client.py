#!/usr/bin/env python3

import asyncio
import logging
from typing import Optional, Dict, Any, Tuple
from urllib.parse import quote

import requests

from errors import BackendError

logger = logging.getLogger(__name__)

STORAGE_HOST = "https://firebasestorage.googleapis.com"


class StorageClient:
    """
    REST client for the object store of one bucket.

    The store has no listing or search. Objects are addressed by their full
    name, e.g. "users/abc/docs/report.json", url-encoded as one path segment.
    """

    def __init__(self, bucket: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        if not bucket:
            raise ValueError("storage bucket is required")
        self.bucket = bucket
        self.timeout = timeout
        self.session = session or requests.Session()

    def object_url(self, object_name: str = "") -> str:
        base = f"{STORAGE_HOST}/v0/b/{self.bucket}/o"
        if object_name:
            return f"{base}/{quote(object_name, safe='')}"
        return base

    def download_url(self, object_name: str, download_token: Optional[str]) -> str:
        """Public download link, usable without further authentication"""
        return f"{self.object_url(object_name)}?alt=media&token={download_token or ''}"

    async def _request(self, method: str, url: str, id_token: str, **kwargs) -> requests.Response:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Firebase {id_token}"
        logger.debug(f"🌐 STORAGE REQUEST: {method} {url}")
        try:
            response = await asyncio.to_thread(
                self.session.request, method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"❌ STORAGE REQUEST FAILED: {method} {url}: {e}")
            raise BackendError(None, str(e)) from e

        logger.debug(f"✅ STORAGE RESPONSE: {response.status_code}")
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response):
        if response.status_code < 400:
            return
        message = response.text
        try:
            message = response.json().get("error", {}).get("message", message)
        except (ValueError, AttributeError):
            pass
        raise BackendError(response.status_code, message)

    async def upload(self, id_token: str, object_name: str, body: bytes, content_type: str) -> Dict[str, Any]:
        """Simple upload; returns the remote object metadata"""
        response = await self._request(
            "POST",
            self.object_url(),
            id_token,
            params={"name": object_name},
            data=body,
            headers={"Content-Type": content_type},
        )
        self._raise_for_status(response)
        return response.json()

    async def download(self, id_token: str, object_name: str) -> Optional[Tuple[bytes, str]]:
        """Raw object content and its content type, None if the object does not exist"""
        response = await self._request(
            "GET", self.object_url(object_name), id_token, params={"alt": "media"}
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        content_type = response.headers.get("Content-Type", "application/octet-stream")
        return response.content, content_type

    async def get_metadata(self, id_token: str, object_name: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", self.object_url(object_name), id_token)
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return response.json()

    async def update_metadata(self, id_token: str, object_name: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request("PATCH", self.object_url(object_name), id_token, json=metadata)
        self._raise_for_status(response)
        return response.json()

    async def delete(self, id_token: str, object_name: str) -> bool:
        """Delete an object; returns False if it was already gone"""
        response = await self._request("DELETE", self.object_url(object_name), id_token)
        if response.status_code == 404:
            logger.debug(f"Object {object_name} was already deleted")
            return False
        self._raise_for_status(response)
        return True
