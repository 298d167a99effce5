#!/usr/bin/env python3

from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum


class Scope(Enum):
    """Isolated storage partitions, each with its own document root and storage prefix"""
    USER = "user"
    APP = "app"
    PUBLIC = "public"


# Names the UI uses for a storage domain. "file" is the historical name of the user scope.
DOMAIN_SCOPES: Dict[str, Scope] = {
    "file": Scope.USER,
    "user": Scope.USER,
    "doc": Scope.USER,
    "app": Scope.APP,
    "public": Scope.PUBLIC,
}


def scope_from_domain(domain: Optional[str]) -> Scope:
    """
    Map a UI domain name to a Scope.

    Args:
        domain: One of 'file', 'user', 'app', 'public'; None means the user scope

    Returns:
        The matching Scope
    """
    if domain is None:
        return Scope.USER
    if isinstance(domain, Scope):
        return domain
    try:
        return DOMAIN_SCOPES[domain.lower()]
    except KeyError:
        valid = ", ".join(sorted(DOMAIN_SCOPES))
        raise ValueError(f"Unknown storage domain '{domain}'. Expected one of: {valid}")


# Project id reserved for the public scope root
PUBLIC_PROJECT_ID = "public"


def scope_root(scope: Scope, user_id: Optional[str], project_id: Optional[str]) -> str:
    """Document root (and storage prefix) of a scope"""
    if scope is Scope.USER:
        if not user_id:
            raise ValueError("user_id is required for the user scope")
        return f"users/{user_id}"
    if scope is Scope.APP:
        if not project_id:
            raise ValueError("project_id is required for the app scope")
        if project_id == PUBLIC_PROJECT_ID:
            raise ValueError(f"project_id '{project_id}' would share the public scope root")
        return f"apps/{project_id}"
    return f"apps/{PUBLIC_PROJECT_ID}"


class TokenState(Enum):
    FRESH = "fresh"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    REFRESH_IN_FLIGHT = "refresh_in_flight"
    INVALID = "invalid"


class SignInState(Enum):
    SIGNED_OUT = "signed_out"
    AUTHENTICATING = "authenticating"
    SIGNED_IN = "signed_in"
    SIGNING_OUT = "signing_out"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DocumentAddress:
    """A resolved document location, absolute below the database root"""
    collection_path: str
    document_id: str

    @property
    def path(self) -> str:
        return f"{self.collection_path}/{self.document_id}"

    def __str__(self) -> str:
        return self.path


@dataclass
class Snapshot:
    """Existence and raw data of a document without further interpretation"""
    exists: bool
    id: str
    data: Optional[Dict[str, Any]] = None
    update_time: Optional[str] = None
    create_time: Optional[str] = None


@dataclass
class SessionToken:
    access_token: str
    id_token: str
    token_type: str
    expires_at: float
    user_id: Optional[str] = None
    project_id: Optional[str] = None
    refresh_token: Optional[str] = None
    error_count: int = 0


@dataclass
class StoredCredential:
    """Long-lived identity credential kept in the encrypted secret store"""
    user_id: str
    refresh_token: str
    provider_id: Optional[str] = None
    user: Dict[str, Any] = field(default_factory=dict)
    created: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "refresh_token": self.refresh_token,
            "provider_id": self.provider_id,
            "user": self.user,
            "created": self.created,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredCredential":
        if not data.get("user_id") or not data.get("refresh_token"):
            raise ValueError("Stored credential is missing user_id or refresh_token")
        return cls(
            user_id=data["user_id"],
            refresh_token=data["refresh_token"],
            provider_id=data.get("provider_id"),
            user=data.get("user") or {},
            created=data.get("created") or utc_now_iso(),
        )


@dataclass
class FileMetadataRecord:
    """Shadow index entry for one stored object"""
    path: str
    name: str
    folder: str
    content_type: str = ""
    size: int = 0
    md5_hash: str = ""
    time_created: Optional[str] = None
    updated: Optional[str] = None
    download_url: Optional[str] = None
    doc_id: Optional[str] = None

    # Stored field name -> attribute name
    FIELDS = {
        "path": "path",
        "name": "name",
        "folder": "folder",
        "contentType": "content_type",
        "size": "size",
        "md5Hash": "md5_hash",
        "timeCreated": "time_created",
        "updated": "updated",
        "downloadUrl": "download_url",
        "docId": "doc_id",
    }

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for key, attr in self.FIELDS.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileMetadataRecord":
        values = {attr: data.get(key) for key, attr in cls.FIELDS.items() if key in data}
        for required in ("path", "name", "folder"):
            if values.get(required) is None:
                raise ValueError(f"Missing '{required}' field in file record: {data}")
        values["size"] = int(values.get("size") or 0)
        return cls(**values)


def folder_of(path: str) -> str:
    """Parent folder of a relative object path, '' for top-level objects"""
    parts = [part for part in path.strip("/").split("/") if part]
    return "/".join(parts[:-1])


def folder_names(values: Optional[List[Any]]) -> List[str]:
    return [value for value in (values or []) if isinstance(value, str)]
