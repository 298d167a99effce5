#!/usr/bin/env python3

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple, Callable, Union

from dateutil.parser import isoparse

from document_store import ScopedDocumentStore
from errors import BackendError, InvalidPathError
from models import FileMetadataRecord, Scope, folder_of, folder_names, utc_now_iso
from path_resolver import split_path, new_document_id
from storage_client import StorageClient

logger = logging.getLogger(__name__)

FILES_COLLECTION = "files"
FOLDER_INDEX_PATH = "folders/index"
FOLDER_FIELD = "folders"

JSON_CONTENT_TYPE = "application/json"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"
BINARY_CONTENT_TYPE = "application/octet-stream"

Content = Union[bytes, bytearray, str, Dict[str, Any], List[Any]]


def _parses_as_json(text: str) -> bool:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return False
    try:
        return isinstance(json.loads(stripped), (dict, list))
    except ValueError:
        return False


def encode_content(content: Content, content_type: Optional[str] = None) -> Tuple[bytes, str]:
    """Serialize upload content and pick its content type"""
    if isinstance(content, (bytes, bytearray)):
        return bytes(content), content_type or BINARY_CONTENT_TYPE
    if isinstance(content, (dict, list)):
        return json.dumps(content).encode("utf-8"), content_type or JSON_CONTENT_TYPE
    if isinstance(content, str):
        if content_type is None and _parses_as_json(content):
            return content.encode("utf-8"), JSON_CONTENT_TYPE
        return content.encode("utf-8"), content_type or TEXT_CONTENT_TYPE
    raise TypeError(f"Cannot upload content of type {type(content).__name__}")


def decode_content(body: bytes, content_type: str) -> Any:
    media_type = (content_type or "").split(";")[0].strip().lower()
    if media_type == JSON_CONTENT_TYPE or media_type.endswith("+json"):
        return json.loads(body.decode("utf-8"))
    if media_type.startswith("text/"):
        return body.decode("utf-8")
    return body


def _timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    try:
        stamp = isoparse(value)
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


def newest_record(records: List[FileMetadataRecord]) -> Optional[FileMetadataRecord]:
    if not records:
        return None
    return max(records, key=lambda record: _timestamp(record.updated))


class TrackedObjectStore:
    """
    Object storage for one scope, with a shadow index kept in the document store.

    The object store cannot list or search, so every stored object has a
    record in the scope's files collection and every folder holding objects
    is listed in the folder index document. The remote object and its index
    entries are not updated atomically; the index may lag behind the remote
    state after a failure between the two calls.
    """

    def __init__(
        self,
        scope: Scope,
        prefix: str,
        documents: ScopedDocumentStore,
        storage: StorageClient,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self.scope = scope
        self.prefix = prefix.strip("/")
        self.documents = documents
        self.storage = storage
        self.tokens = documents.tokens
        self._now = clock

    def __repr__(self) -> str:
        return f"TrackedObjectStore({self.scope.value}, {self.prefix})"

    @staticmethod
    def _clean_path(path: str) -> str:
        parts = split_path(path)
        if not parts:
            raise InvalidPathError(path, "file path cannot be blank")
        return "/".join(parts)

    def _object_name(self, clean_path: str) -> str:
        return f"{self.prefix}/{clean_path}"

    async def _id_token(self) -> str:
        token = await self.tokens.get_valid_token()
        return token.id_token

    def _fixup(self, meta: Dict[str, Any], existing: Optional[FileMetadataRecord]) -> FileMetadataRecord:
        """Turn remote object metadata into an index record"""
        object_name = meta.get("name") or ""
        if not object_name.startswith(f"{self.prefix}/"):
            raise BackendError(None, f"Object {object_name!r} is outside the {self.prefix} storage prefix")

        path = object_name[len(self.prefix) + 1:]
        now = self._now()
        download_token = (meta.get("downloadTokens") or "").split(",")[0] or None

        return FileMetadataRecord(
            path=path,
            name=path.rsplit("/", 1)[-1],
            folder=folder_of(path),
            content_type=meta.get("contentType") or "",
            size=int(meta.get("size") or 0),
            md5_hash=meta.get("md5Hash") or "",
            time_created=existing.time_created if existing else (meta.get("timeCreated") or now),
            updated=now,
            download_url=self.storage.download_url(object_name, download_token),
            doc_id=existing.doc_id if existing and existing.doc_id else new_document_id(),
        )

    async def _matching_records(self, clean_path: str) -> List[FileMetadataRecord]:
        rows = await self.documents.query(FILES_COLLECTION, "path", clean_path, raise_errors=True)
        records = []
        for row in rows:
            try:
                records.append(FileMetadataRecord.from_dict(row))
            except ValueError as e:
                logger.warning(f"Skipping malformed file record: {e}")
        return records

    async def _save_record(self, record: FileMetadataRecord):
        await self.documents.write(f"{FILES_COLLECTION}/{record.doc_id}", record.to_dict())

    async def upload(
        self, path: str, content: Content, content_type: Optional[str] = None
    ) -> FileMetadataRecord:
        """
        Store content under path and record it in the shadow index.

        Re-uploading to an existing path keeps the record's docId and
        timeCreated.
        """
        clean_path = self._clean_path(path)
        body, resolved_type = encode_content(content, content_type)
        id_token = await self._id_token()

        meta = await self.storage.upload(id_token, self._object_name(clean_path), body, resolved_type)

        existing = newest_record(await self._matching_records(clean_path))
        record = self._fixup(meta, existing)
        await self._save_record(record)
        if record.folder:
            await self.documents.union(FOLDER_INDEX_PATH, FOLDER_FIELD, record.folder)

        logger.info(f"📤 Uploaded {self.scope.value}:{record.path} ({record.size} bytes)")
        return record

    async def download(self, path: str) -> Any:
        """Object content, decoded by content type; None if the object does not exist"""
        clean_path = self._clean_path(path)
        id_token = await self._id_token()
        result = await self.storage.download(id_token, self._object_name(clean_path))
        if result is None:
            return None
        body, content_type = result
        return decode_content(body, content_type)

    async def find(self, path: str) -> Optional[FileMetadataRecord]:
        """Newest index record for path"""
        clean_path = self._clean_path(path)
        try:
            return newest_record(await self._matching_records(clean_path))
        except BackendError as e:
            logger.error(f"Error looking up file record for {clean_path}: {e}")
            return None

    async def about(self, path: str) -> Dict[str, Any]:
        record = await self.find(path)
        if record is None:
            return {"exists": False}
        about = record.to_dict()
        about["exists"] = True
        return about

    async def list(self, folder_path: str = "") -> List[FileMetadataRecord]:
        """Index records of the files directly inside folder_path, sorted by path"""
        folder = "/".join(split_path(folder_path))
        try:
            rows = await self.documents.query(FILES_COLLECTION, "folder", folder, raise_errors=True)
        except BackendError as e:
            logger.error(f"Error listing files in folder '{folder}': {e}")
            return []

        newest: Dict[str, FileMetadataRecord] = {}
        for row in rows:
            try:
                record = FileMetadataRecord.from_dict(row)
            except ValueError as e:
                logger.warning(f"Skipping malformed file record: {e}")
                continue
            current = newest.get(record.path)
            if current is None or _timestamp(record.updated) > _timestamp(current.updated):
                newest[record.path] = record

        return [newest[path] for path in sorted(newest)]

    async def folders(self, prefix: str = "") -> List[str]:
        """Folder index entries starting with prefix"""
        values = await self.documents.field(FOLDER_INDEX_PATH, FOLDER_FIELD)
        names = folder_names(values if isinstance(values, list) else [])
        return sorted({name for name in names if name.startswith(prefix or "")})

    async def update(self, path: str, metadata: Dict[str, Any]) -> FileMetadataRecord:
        """Change remote object metadata, e.g. contentType, and rewrite its index record"""
        clean_path = self._clean_path(path)
        id_token = await self._id_token()
        meta = await self.storage.update_metadata(id_token, self._object_name(clean_path), metadata)

        existing = newest_record(await self._matching_records(clean_path))
        record = self._fixup(meta, existing)
        await self._save_record(record)
        return record

    async def delete(self, path: str) -> None:
        """
        Delete the remote object and its index records.

        The folder leaves the folder index only when no remaining record
        references it. Two concurrent deletes of the last files in a folder
        may both remove it; the removal is idempotent.
        """
        clean_path = self._clean_path(path)
        id_token = await self._id_token()
        existed = await self.storage.delete(id_token, self._object_name(clean_path))
        if not existed:
            logger.info(f"Remote object {self.scope.value}:{clean_path} was already gone, cleaning index")

        for record in await self._matching_records(clean_path):
            if not record.doc_id:
                logger.warning(f"File record for {clean_path} has no docId, leaving it in place")
                continue
            await self.documents.delete(f"{FILES_COLLECTION}/{record.doc_id}")

        folder = folder_of(clean_path)
        if folder:
            remaining = await self.documents.query(FILES_COLLECTION, "folder", folder, raise_errors=True)
            if not remaining:
                await self.documents.splice(FOLDER_INDEX_PATH, FOLDER_FIELD, folder)
                logger.debug(f"Folder '{folder}' removed from the folder index")

        logger.info(f"🗑️ Deleted {self.scope.value}:{clean_path}")
