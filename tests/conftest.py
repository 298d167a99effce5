#!/usr/bin/env python3

import base64
import copy
import hashlib
import operator
import uuid
from typing import Optional, Dict, Any, List

import pytest

from app_config import AppConfig
from document_store import ScopedDocumentStore
from errors import BackendError, ConflictError
from firestore_backend import DocumentBackend
from models import Scope, SessionToken, Snapshot, scope_root
from object_store import TrackedObjectStore
from secret_store import SecretStore, KeyChain
from session_context import SessionContext
from signin_session import SignInSurface
from storage_client import StorageClient

COMPARISONS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class InMemoryDocumentBackend(DocumentBackend):
    """Document database double with update-time preconditions"""

    def __init__(self):
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.update_times: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.fail_with: Dict[str, Exception] = {}
        self._clock = 0

    def _tick(self) -> str:
        self._clock += 1
        return f"2024-01-01T00:00:{self._clock:02d}.000000Z"

    def _maybe_fail(self, method: str):
        error = self.fail_with.pop(method, None)
        if error is not None:
            raise error

    async def get_document(self, id_token, doc_path):
        self.calls.append(("get", doc_path))
        self._maybe_fail("get_document")
        if doc_path not in self.docs:
            return None
        return Snapshot(
            exists=True,
            id=doc_path.rsplit("/", 1)[-1],
            data=copy.deepcopy(self.docs[doc_path]),
            update_time=self.update_times[doc_path],
        )

    async def set_document(self, id_token, doc_path, data, merge_fields=None, must_exist=None, update_time=None):
        self.calls.append(("set", doc_path))
        self._maybe_fail("set_document")
        exists = doc_path in self.docs
        if update_time is not None and (not exists or self.update_times[doc_path] != update_time):
            raise ConflictError(400, "FAILED_PRECONDITION")
        if must_exist is True and not exists:
            raise BackendError(404, f"No document to update: {doc_path}")
        if must_exist is False and exists:
            raise ConflictError(409, f"Document already exists: {doc_path}")

        if merge_fields is None or not exists:
            contents = {}
            if merge_fields is None:
                contents = copy.deepcopy(data)
            else:
                contents = {name: copy.deepcopy(data[name]) for name in merge_fields if name in data}
        else:
            contents = self.docs[doc_path]
            for name in merge_fields:
                if name in data:
                    contents[name] = copy.deepcopy(data[name])
                else:
                    contents.pop(name, None)
        self.docs[doc_path] = contents
        self.update_times[doc_path] = self._tick()

    async def delete_document(self, id_token, doc_path):
        self.calls.append(("delete", doc_path))
        self._maybe_fail("delete_document")
        self.docs.pop(doc_path, None)
        self.update_times.pop(doc_path, None)

    async def run_query(self, id_token, parent_path, collection_id, field_name, op, value):
        self.calls.append(("query", f"{parent_path}/{collection_id}"))
        self._maybe_fail("run_query")
        prefix = f"{parent_path}/{collection_id}/"
        compare = COMPARISONS[op]
        results = []
        for path, data in self.docs.items():
            remainder = path[len(prefix):]
            if not path.startswith(prefix) or "/" in remainder:
                continue
            if field_name not in data:
                continue
            try:
                matched = compare(data[field_name], value)
            except TypeError:
                matched = False
            if matched:
                results.append(
                    Snapshot(exists=True, id=remainder, data=copy.deepcopy(data), update_time=self.update_times[path])
                )
        # Reverse insertion order so callers cannot rely on it
        return list(reversed(results))

    async def transform_array(self, id_token, doc_path, field_name, append=None, remove=None):
        self.calls.append(("transform", doc_path))
        self._maybe_fail("transform_array")
        contents = self.docs.setdefault(doc_path, {})
        values = contents.get(field_name)
        if not isinstance(values, list):
            values = []
        if append is not None:
            for item in append:
                if item not in values:
                    values.append(item)
        if remove is not None:
            values = [item for item in values if item not in remove]
        contents[field_name] = values
        self.update_times[doc_path] = self._tick()


class FakeStorageClient(StorageClient):
    """Object store double keeping objects in memory"""

    def __init__(self, bucket: str = "test-project.appspot.com"):
        super().__init__(bucket)
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.fail_with: Dict[str, Exception] = {}

    def _maybe_fail(self, method: str):
        error = self.fail_with.pop(method, None)
        if error is not None:
            raise error

    def _metadata(self, name: str) -> Dict[str, Any]:
        stored = self.objects[name]
        return {
            "name": name,
            "bucket": self.bucket,
            "contentType": stored["content_type"],
            "size": str(len(stored["body"])),
            "md5Hash": base64.b64encode(hashlib.md5(stored["body"]).digest()).decode("ascii"),
            "timeCreated": stored["time_created"],
            "updated": stored["time_created"],
            "downloadTokens": stored["token"],
        }

    async def upload(self, id_token, object_name, body, content_type):
        self._maybe_fail("upload")
        self.objects[object_name] = {
            "body": body,
            "content_type": content_type,
            "time_created": "2024-05-01T12:00:00.000Z",
            "token": str(uuid.uuid4()),
        }
        return self._metadata(object_name)

    async def download(self, id_token, object_name):
        self._maybe_fail("download")
        if object_name not in self.objects:
            return None
        stored = self.objects[object_name]
        return stored["body"], stored["content_type"]

    async def get_metadata(self, id_token, object_name):
        if object_name not in self.objects:
            return None
        return self._metadata(object_name)

    async def update_metadata(self, id_token, object_name, metadata):
        self._maybe_fail("update_metadata")
        if object_name not in self.objects:
            raise BackendError(404, "Not Found")
        if "contentType" in metadata:
            self.objects[object_name]["content_type"] = metadata["contentType"]
        return self._metadata(object_name)

    async def delete(self, id_token, object_name):
        self._maybe_fail("delete")
        return self.objects.pop(object_name, None) is not None


class FakeTokens:
    """Token manager double that always has a fresh token"""

    def __init__(self, user_id: str = "user-1", error: Optional[Exception] = None):
        self.user_id = user_id
        self.error = error
        self.calls = 0
        self.refresh_token: Optional[str] = None
        self.resets = 0

    def set_refresh_token(self, refresh_token: str):
        self.refresh_token = refresh_token

    def reset(self):
        self.refresh_token = None
        self.resets += 1

    async def get_valid_token(self) -> SessionToken:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return SessionToken(
            access_token="access",
            id_token="test-id-token",
            token_type="Bearer",
            expires_at=4102444800.0,
            user_id=self.user_id,
            project_id="test-project",
        )

    async def close(self):
        pass


class MemoryKeyChain(KeyChain):
    """Keychain double holding passwords in a dict instead of the OS credential store"""

    def __init__(self):
        self.passwords: Dict[tuple, str] = {}

    def get_password(self, service, account):
        return self.passwords.get((service, account))

    def set_password(self, service, account, password):
        self.passwords[(service, account)] = password

    def delete_password(self, service, account):
        return self.passwords.pop((service, account), None) is not None


class FakeClock:
    """Hands out increasing ISO timestamps"""

    def __init__(self):
        self.count = 0

    def __call__(self) -> str:
        self.count += 1
        return f"2024-06-01T00:00:{self.count:02d}.000Z"


LOGIN_RESULT = {
    "user": {
        "uid": "user-1",
        "displayName": "Ann Example",
        "email": "ann@example.com",
        "providerData": [{"providerId": "google.com", "uid": "g-123"}],
        "stsTokenManager": {"refreshToken": "refresh-from-login", "accessToken": "a"},
    },
}


class FakeSurface(SignInSurface):

    def __init__(self, confirm=(True, False)):
        self.confirm = confirm
        self.sign_in_prompts = 0
        self.confirm_requests = []
        self.opened = []
        self.errors = []

    async def present_sign_in(self):
        self.sign_in_prompts += 1

    async def confirm_sign_out(self, provider_id):
        self.confirm_requests.append(provider_id)
        return self.confirm

    async def open_url(self, url, title=None):
        self.opened.append((url, title))

    async def show_error(self, title, message):
        self.errors.append((title, message))


def make_document_store(backend=None, tokens=None, scope=Scope.USER, user_id="user-1"):
    backend = backend or InMemoryDocumentBackend()
    tokens = tokens or FakeTokens(user_id)
    root = scope_root(scope, user_id, "test-project")
    return ScopedDocumentStore(scope, root, backend, tokens)


def make_object_store(backend=None, storage=None, tokens=None, scope=Scope.USER, user_id="user-1"):
    documents = make_document_store(backend, tokens, scope, user_id)
    storage = storage or FakeStorageClient()
    return TrackedObjectStore(scope, documents.scope_root, documents, storage, clock=FakeClock())


def make_context(data_dir, tokens=None, backend=None, storage=None, **config_values):
    """Session context wired to in-memory backends and a secret store in data_dir"""
    values = {"project_id": "test-project", "api_key": "test-key", "data_dir": data_dir}
    values.update(config_values)
    config = AppConfig(**values)
    secrets = SecretStore(data_dir, app_context="bridge_test", keychain=MemoryKeyChain(), machine="machine-test")
    return SessionContext(
        config,
        tokens or FakeTokens(),
        secrets,
        backend or InMemoryDocumentBackend(),
        storage or FakeStorageClient(),
    )


@pytest.fixture
def backend():
    return InMemoryDocumentBackend()


@pytest.fixture
def storage():
    return FakeStorageClient()
