#!/usr/bin/env python3

import logging
from typing import Optional, Dict, Any, List, Callable, Tuple

from errors import BackendError, ConflictError
from firestore_backend import DocumentBackend, QUERY_OPERATORS
from models import DocumentAddress, Scope, Snapshot
from path_resolver import resolve, resolve_collection, new_document_id

logger = logging.getLogger(__name__)


class ScopedDocumentStore:
    """
    Path-scoped access to the document database for one storage scope.

    Every path is relative to the scope root; it is resolved before any
    network call and every backend call carries a token obtained from the
    session token manager. Read-style operations log backend errors and
    return an empty value, write-style operations let them propagate.
    """

    def __init__(
        self,
        scope: Scope,
        scope_root: str,
        backend: DocumentBackend,
        tokens,
        max_retries: int = 5,
    ):
        self.scope = scope
        self.scope_root = scope_root
        self.backend = backend
        self.tokens = tokens
        self.max_retries = max_retries

    def __repr__(self) -> str:
        return f"ScopedDocumentStore({self.scope.value}, {self.scope_root})"

    async def _id_token(self) -> str:
        token = await self.tokens.get_valid_token()
        return token.id_token

    def _resolve(self, path: Optional[str]) -> DocumentAddress:
        return resolve(self.scope_root, path)

    async def about(self, path: Optional[str]) -> Snapshot:
        """Existence and raw data of a document"""
        address = self._resolve(path)
        id_token = await self._id_token()
        try:
            snapshot = await self.backend.get_document(id_token, address.path)
        except BackendError as e:
            logger.error(f"Error reading document {address}: {e}")
            return Snapshot(exists=False, id=address.document_id)

        if snapshot is None:
            return Snapshot(exists=False, id=address.document_id)
        return snapshot

    async def read(self, path: Optional[str]) -> Optional[Dict[str, Any]]:
        snapshot = await self.about(path)
        if not snapshot.exists:
            return None
        return snapshot.data or {}

    async def write(self, path: Optional[str], contents: Dict[str, Any]) -> DocumentAddress:
        """Replace the whole document, creating it if needed"""
        address = self._resolve(path)
        id_token = await self._id_token()
        await self.backend.set_document(id_token, address.path, dict(contents))
        logger.debug(f"Wrote document {address}")
        return address

    async def merge(self, path: Optional[str], contents: Dict[str, Any]) -> DocumentAddress:
        """Shallow merge of top-level fields, creating the document if needed"""
        address = self._resolve(path)
        id_token = await self._id_token()
        await self.backend.set_document(
            id_token, address.path, dict(contents), merge_fields=list(contents.keys())
        )
        logger.debug(f"Merged {len(contents)} fields into {address}")
        return address

    async def update(self, path: Optional[str], contents: Dict[str, Any]) -> Optional[DocumentAddress]:
        """Merge into an existing document; returns None and creates nothing if it is missing"""
        address = self._resolve(path)
        id_token = await self._id_token()
        try:
            await self.backend.set_document(
                id_token,
                address.path,
                dict(contents),
                merge_fields=list(contents.keys()),
                must_exist=True,
            )
        except BackendError as e:
            if e.not_found:
                logger.debug(f"Skipped update of missing document {address}")
                return None
            raise
        return address

    async def delete(self, path: Optional[str]) -> None:
        address = self._resolve(path)
        id_token = await self._id_token()
        await self.backend.delete_document(id_token, address.path)
        logger.debug(f"Deleted document {address}")

    async def add(self, collection_path: str, contents: Dict[str, Any]) -> DocumentAddress:
        """Create a document with a generated id in a collection"""
        parent, collection_id = resolve_collection(self.scope_root, collection_path)
        address = DocumentAddress(f"{parent}/{collection_id}", new_document_id())
        id_token = await self._id_token()
        await self.backend.set_document(id_token, address.path, dict(contents), must_exist=False)
        logger.debug(f"Added document {address}")
        return address

    async def query(
        self,
        collection_path: str,
        field_name: str,
        value: Any,
        operator: str = "==",
        raise_errors: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Documents of a collection whose field compares to value.

        Args:
            collection_path: Collection below the scope root (odd segment count)
            operator: One of ==, !=, <, <=, >, >=
            raise_errors: Propagate backend errors instead of returning []

        Returns:
            Document contents ordered by document id
        """
        if operator not in QUERY_OPERATORS:
            raise ValueError(
                f"Unsupported query operator '{operator}'. Expected one of: {', '.join(QUERY_OPERATORS)}"
            )
        parent, collection_id = resolve_collection(self.scope_root, collection_path)
        id_token = await self._id_token()
        try:
            snapshots = await self.backend.run_query(
                id_token, parent, collection_id, field_name, operator, value
            )
        except BackendError as e:
            if raise_errors:
                raise
            logger.error(f"Error querying {parent}/{collection_id} where {field_name} {operator} {value!r}: {e}")
            return []

        snapshots.sort(key=lambda snapshot: snapshot.id)
        return [snapshot.data or {} for snapshot in snapshots]

    async def field(self, path: Optional[str], field_name: str) -> Any:
        data = await self.read(path)
        if data is None:
            return None
        return data.get(field_name)

    async def _array_after(self, address: DocumentAddress, field_name: str) -> List[Any]:
        id_token = await self._id_token()
        snapshot = await self.backend.get_document(id_token, address.path)
        if snapshot is None:
            return []
        values = (snapshot.data or {}).get(field_name)
        return list(values) if isinstance(values, list) else []

    async def union(self, path: Optional[str], field_name: str, value: Any) -> List[Any]:
        """Add value to an array field unless already present"""
        address = self._resolve(path)
        id_token = await self._id_token()
        await self.backend.transform_array(id_token, address.path, field_name, append=[value])
        return await self._array_after(address, field_name)

    async def splice(self, path: Optional[str], field_name: str, value: Any) -> List[Any]:
        """Remove every occurrence of value from an array field"""
        address = self._resolve(path)
        id_token = await self._id_token()
        await self.backend.transform_array(id_token, address.path, field_name, remove=[value])
        return await self._array_after(address, field_name)

    async def _rewrite_array(
        self,
        path: Optional[str],
        field_name: str,
        mutate: Callable[[List[Any]], Tuple[Optional[List[Any]], Any]],
        guarded: bool,
    ) -> Any:
        address = self._resolve(path)
        attempts = self.max_retries if guarded else 1

        for attempt in range(1, attempts + 1):
            id_token = await self._id_token()
            snapshot = await self.backend.get_document(id_token, address.path)
            current = (snapshot.data or {}).get(field_name) if snapshot else None
            values = list(current) if isinstance(current, list) else []

            new_values, result = mutate(values)
            if new_values is None:
                return result

            update_time = None
            must_exist = None
            if guarded:
                if snapshot is not None:
                    update_time = snapshot.update_time
                else:
                    must_exist = False

            try:
                await self.backend.set_document(
                    id_token,
                    address.path,
                    {field_name: new_values},
                    merge_fields=[field_name],
                    must_exist=must_exist,
                    update_time=update_time,
                )
                return result
            except ConflictError:
                if attempt >= attempts:
                    raise
                logger.warning(
                    f"Concurrent change to {address}.{field_name}, retrying ({attempt}/{attempts})"
                )

    async def push(self, path: Optional[str], field_name: str, value: Any, guarded: bool = False) -> List[Any]:
        """
        Append value to an array field, duplicates allowed.

        This is a plain read-modify-write; two concurrent pushes on the same
        field can lose one of the values. guarded=True writes under an
        update-time precondition and retries on conflict, raising
        ConflictError after max_retries.
        """

        def append(values):
            values.append(value)
            return values, values

        return await self._rewrite_array(path, field_name, append, guarded)

    async def pop(self, path: Optional[str], field_name: str, guarded: bool = False) -> Any:
        """Remove and return the last element of an array field, None if empty"""

        def take_last(values):
            if not values:
                return None, None
            last = values.pop()
            return values, last

        return await self._rewrite_array(path, field_name, take_last, guarded)
