#!/usr/bin/env python3

import asyncio
import base64
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from urllib.parse import quote

import requests
from dateutil.parser import isoparse

from errors import BackendError, ConflictError
from models import Snapshot

logger = logging.getLogger(__name__)

FIRESTORE_HOST = "https://firestore.googleapis.com/v1"

QUERY_OPERATORS = {
    "==": "EQUAL",
    "!=": "NOT_EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
}

_SIMPLE_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")


def quote_field_path(name: str) -> str:
    """Quote a top-level field name for use in a field path"""
    if _SIMPLE_FIELD_NAME.match(name):
        return name
    escaped = name.replace("\\", "\\\\").replace("`", "\\`")
    return f"`{escaped}`"


def encode_value(value: Any) -> Dict[str, Any]:
    """Convert a Python value to the database's typed value representation"""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (bytes, bytearray)):
        return {"bytesValue": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        stamp = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return {"timestampValue": stamp}
    if isinstance(value, (list, tuple)):
        values = [encode_value(item) for item in value]
        return {"arrayValue": {"values": values} if values else {}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"Cannot store value of type {type(value).__name__}")


def encode_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {str(key): encode_value(value) for key, value in data.items()}


def decode_value(value: Dict[str, Any]) -> Any:
    """Convert a typed database value back to a Python value"""
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "bytesValue" in value:
        return base64.b64decode(value["bytesValue"])
    if "timestampValue" in value:
        return isoparse(value["timestampValue"])
    if "referenceValue" in value:
        return value["referenceValue"]
    if "geoPointValue" in value:
        return dict(value["geoPointValue"])
    if "arrayValue" in value:
        return [decode_value(item) for item in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    raise ValueError(f"Unknown value type: {list(value.keys())}")


def decode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: decode_value(value) for key, value in fields.items()}


def snapshot_from_document(document: Dict[str, Any]) -> Snapshot:
    name = document.get("name", "")
    return Snapshot(
        exists=True,
        id=name.rsplit("/", 1)[-1],
        data=decode_fields(document.get("fields", {})),
        update_time=document.get("updateTime"),
        create_time=document.get("createTime"),
    )


class DocumentBackend(ABC):
    """
    Call contract of the remote hierarchical document database.

    Paths are absolute document paths below the database root, e.g.
    "users/abc/docs/report". Every call carries the caller's ID token.
    """

    @abstractmethod
    async def get_document(self, id_token: str, doc_path: str) -> Optional[Snapshot]:
        """Return the document snapshot, or None if it does not exist"""

    @abstractmethod
    async def set_document(
        self,
        id_token: str,
        doc_path: str,
        data: Dict[str, Any],
        merge_fields: Optional[List[str]] = None,
        must_exist: Optional[bool] = None,
        update_time: Optional[str] = None,
    ) -> None:
        """
        Write a document.

        Args:
            merge_fields: None replaces the whole document; a list writes only those top-level fields
            must_exist: True fails with a 404 BackendError if the document is missing,
                False fails with ConflictError if it already exists
            update_time: Fail with ConflictError unless the stored document has this update time
        """

    @abstractmethod
    async def delete_document(self, id_token: str, doc_path: str) -> None:
        """Delete a document; deleting a missing document is not an error"""

    @abstractmethod
    async def run_query(
        self,
        id_token: str,
        parent_path: str,
        collection_id: str,
        field_name: str,
        operator: str,
        value: Any,
    ) -> List[Snapshot]:
        """Return documents of a collection whose field matches value under operator"""

    @abstractmethod
    async def transform_array(
        self,
        id_token: str,
        doc_path: str,
        field_name: str,
        append: Optional[List[Any]] = None,
        remove: Optional[List[Any]] = None,
    ) -> None:
        """Atomically add missing elements to, or remove elements from, an array field"""


class FirestoreBackend(DocumentBackend):
    """REST client for Cloud Firestore"""

    def __init__(
        self,
        project_id: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        database: str = "(default)",
    ):
        if not project_id:
            raise ValueError("project_id is required")
        self.project_id = project_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.database_name = f"projects/{project_id}/databases/{database}"
        self.documents_root = f"{self.database_name}/documents"

    def _document_name(self, doc_path: str) -> str:
        return f"{self.documents_root}/{doc_path}"

    def _url(self, doc_path: str = "", suffix: str = "") -> str:
        quoted = "/".join(quote(part, safe="") for part in doc_path.split("/") if part)
        base = f"{FIRESTORE_HOST}/{self.documents_root}"
        if quoted:
            base = f"{base}/{quoted}"
        return f"{base}{suffix}"

    async def _request(self, method: str, url: str, id_token: str, **kwargs) -> requests.Response:
        headers = {"Authorization": f"Bearer {id_token}"}
        logger.debug(f"🌐 FIRESTORE REQUEST: {method} {url}")
        try:
            response = await asyncio.to_thread(
                self.session.request, method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"❌ FIRESTORE REQUEST FAILED: {method} {url}: {e}")
            raise BackendError(None, str(e)) from e

        logger.debug(f"✅ FIRESTORE RESPONSE: {response.status_code}")
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response):
        if response.status_code < 400:
            return

        status = None
        message = response.text
        try:
            error = response.json().get("error", {})
            status = error.get("status")
            message = error.get("message", message)
        except (ValueError, AttributeError):
            pass

        if status in ("FAILED_PRECONDITION", "ABORTED", "ALREADY_EXISTS") or response.status_code == 409:
            raise ConflictError(response.status_code, message)
        raise BackendError(response.status_code, message)

    async def _commit(self, id_token: str, writes: List[Dict[str, Any]]) -> Dict[str, Any]:
        url = f"{FIRESTORE_HOST}/{self.documents_root}:commit"
        response = await self._request("POST", url, id_token, json={"writes": writes})
        self._raise_for_status(response)
        return response.json()

    async def get_document(self, id_token: str, doc_path: str) -> Optional[Snapshot]:
        response = await self._request("GET", self._url(doc_path), id_token)
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return snapshot_from_document(response.json())

    async def set_document(
        self,
        id_token: str,
        doc_path: str,
        data: Dict[str, Any],
        merge_fields: Optional[List[str]] = None,
        must_exist: Optional[bool] = None,
        update_time: Optional[str] = None,
    ) -> None:
        write: Dict[str, Any] = {
            "update": {"name": self._document_name(doc_path), "fields": encode_fields(data)}
        }
        if merge_fields is not None:
            write["updateMask"] = {"fieldPaths": [quote_field_path(f) for f in merge_fields]}
        if update_time:
            write["currentDocument"] = {"updateTime": update_time}
        elif must_exist is not None:
            write["currentDocument"] = {"exists": must_exist}

        await self._commit(id_token, [write])

    async def delete_document(self, id_token: str, doc_path: str) -> None:
        await self._commit(id_token, [{"delete": self._document_name(doc_path)}])

    async def run_query(
        self,
        id_token: str,
        parent_path: str,
        collection_id: str,
        field_name: str,
        operator: str,
        value: Any,
    ) -> List[Snapshot]:
        if operator not in QUERY_OPERATORS:
            raise ValueError(
                f"Unsupported query operator '{operator}'. Expected one of: {', '.join(QUERY_OPERATORS)}"
            )

        structured_query = {
            "from": [{"collectionId": collection_id}],
            "where": {
                "fieldFilter": {
                    "field": {"fieldPath": quote_field_path(field_name)},
                    "op": QUERY_OPERATORS[operator],
                    "value": encode_value(value),
                }
            },
        }
        url = self._url(parent_path, ":runQuery")
        response = await self._request(
            "POST", url, id_token, json={"structuredQuery": structured_query}
        )
        self._raise_for_status(response)

        # The response is a stream of results, some only carrying a readTime
        return [
            snapshot_from_document(item["document"])
            for item in response.json()
            if isinstance(item, dict) and "document" in item
        ]

    async def transform_array(
        self,
        id_token: str,
        doc_path: str,
        field_name: str,
        append: Optional[List[Any]] = None,
        remove: Optional[List[Any]] = None,
    ) -> None:
        field_transform: Dict[str, Any] = {"fieldPath": quote_field_path(field_name)}
        if append is not None:
            field_transform["appendMissingElements"] = {"values": [encode_value(v) for v in append]}
        elif remove is not None:
            field_transform["removeAllFromArray"] = {"values": [encode_value(v) for v in remove]}
        else:
            raise ValueError("Either append or remove values are required")

        write = {
            "transform": {
                "document": self._document_name(doc_path),
                "fieldTransforms": [field_transform],
            }
        }
        await self._commit(id_token, [write])
