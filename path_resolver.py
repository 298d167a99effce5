#!/usr/bin/env python3

import re
import secrets
import string
from typing import List, Optional, Tuple

from errors import InvalidPathError
from models import DocumentAddress

AUTO_ID_ALPHABET = string.ascii_letters + string.digits
AUTO_ID_LENGTH = 20


def new_document_id() -> str:
    """Generate a 20 character document id, the same shape the database client SDKs use"""
    return "".join(secrets.choice(AUTO_ID_ALPHABET) for _ in range(AUTO_ID_LENGTH))


def split_path(path: Optional[str]) -> List[str]:
    """
    Normalize a slash-separated path and split it into segments.

    Backslashes become slashes, duplicate slashes collapse, and leading or
    trailing slashes are dropped. "." and ".." segments are rejected.
    """
    if path is None:
        return []
    if not isinstance(path, str):
        raise InvalidPathError(str(path), "path must be a string")

    clean_path = re.sub(r"/+", "/", path.replace("\\", "/")).strip("/")
    if not clean_path:
        return []

    parts = clean_path.split("/")
    for part in parts:
        if part in (".", ".."):
            raise InvalidPathError(path, "contains directory traversal")
    return parts


def _split_root(scope_root: str) -> Tuple[str, str]:
    root_parts = split_path(scope_root)
    if len(root_parts) < 2 or len(root_parts) % 2 != 0:
        raise InvalidPathError(scope_root, "scope root must name a document")
    return "/".join(root_parts[:-1]), root_parts[-1]


def resolve(scope_root: str, relative_path: Optional[str]) -> DocumentAddress:
    """
    Resolve a path relative to a scope root into a document address.

    Args:
        scope_root: Document path of the scope's top-level document, e.g. "users/abc"
        relative_path: Path below the scope root; empty or None means the top-level document

    Returns:
        DocumentAddress whose collection path always lies below scope_root

    Raises:
        InvalidPathError: odd number of segments, traversal segments, or a non-string path
    """
    parts = split_path(relative_path)
    if not parts:
        root_collection, root_document = _split_root(scope_root)
        return DocumentAddress(root_collection, root_document)

    if len(parts) % 2 != 0:
        raise InvalidPathError(
            relative_path, f"expected an even number of segments, got {len(parts)}"
        )

    document_id = parts.pop()
    collection_path = "/".join(parts)
    if not collection_path:
        raise InvalidPathError(relative_path, "missing collection")

    root = "/".join(split_path(scope_root))
    return DocumentAddress(f"{root}/{collection_path}", document_id)


def resolve_collection(scope_root: str, collection_path: Optional[str]) -> Tuple[str, str]:
    """
    Resolve a collection path relative to a scope root.

    Returns:
        (parent_document_path, collection_id)

    Raises:
        InvalidPathError: empty path or an even number of segments
    """
    parts = split_path(collection_path)
    if not parts:
        raise InvalidPathError(collection_path, "collection path cannot be blank")
    if len(parts) % 2 != 1:
        raise InvalidPathError(
            collection_path, f"expected an odd number of segments, got {len(parts)}"
        )

    collection_id = parts.pop()
    parent = "/".join(split_path(scope_root) + parts)
    return parent, collection_id
