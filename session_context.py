#!/usr/bin/env python3

import logging
from typing import Dict, Any, Optional, Union

from app_config import AppConfig
from document_store import ScopedDocumentStore
from errors import SessionExpiredError
from firestore_backend import DocumentBackend, FirestoreBackend
from models import Scope, scope_from_domain, scope_root
from object_store import TrackedObjectStore
from secret_store import SecretStore
from session_tokens import SessionTokenManager
from storage_client import StorageClient

logger = logging.getLogger(__name__)


class SessionContext:
    """
    The one live session of this process.

    Holds the configuration, the token manager, the local secret store, the
    signed-in user and the per-scope document and object stores. Components
    receive this object instead of reaching for module-level state.
    """

    def __init__(
        self,
        config: AppConfig,
        tokens: SessionTokenManager,
        secrets: SecretStore,
        backend: DocumentBackend,
        storage: StorageClient,
        app_context: Optional[Dict[str, Any]] = None,
    ):
        self.config = config
        self.tokens = tokens
        self.secrets = secrets
        self.backend = backend
        self.storage = storage
        self.app_context = app_context or {}
        self.user: Dict[str, Any] = {}
        self.user_id: Optional[str] = None
        self.documents: Dict[Scope, ScopedDocumentStore] = {}
        self.files: Dict[Scope, TrackedObjectStore] = {}

    @classmethod
    def from_config(cls, config: AppConfig) -> "SessionContext":
        secrets = SecretStore(config.data_dir)

        def remember_rotated_token(token):
            credential = secrets.load_credential()
            if credential and token.refresh_token and credential.refresh_token != token.refresh_token:
                credential.refresh_token = token.refresh_token
                secrets.save_credential(credential)
                logger.info("Stored rotated refresh token")

        tokens = SessionTokenManager(
            api_key=config.api_key,
            auto_refresh=config.auto_refresh,
            retry_base=config.refresh_retry_base,
            timeout=config.request_timeout,
            on_refresh=remember_rotated_token,
        )
        backend = FirestoreBackend(config.project_id, timeout=config.request_timeout)
        storage = StorageClient(config.storage_bucket, timeout=config.request_timeout)
        app_context = {
            "project": config.project_id,
            "domain": config.auth_domain,
            "host": config.host_url,
            "secrets": secrets.app_context,
        }
        return cls(config, tokens, secrets, backend, storage, app_context=app_context)

    @property
    def is_open(self) -> bool:
        return bool(self.documents)

    def open_scopes(self, user_id: str, user: Optional[Dict[str, Any]] = None):
        """Create the user, app and public stores for a signed-in user"""
        if not user_id:
            raise ValueError("user_id is required to open the storage scopes")
        self.user_id = user_id
        self.user = dict(user or {})
        for scope in Scope:
            root = scope_root(scope, user_id, self.config.project_id)
            documents = ScopedDocumentStore(scope, root, self.backend, self.tokens)
            self.documents[scope] = documents
            self.files[scope] = TrackedObjectStore(scope, root, documents, self.storage)
        logger.info(f"Opened storage scopes for user {user_id}")

    def close_scopes(self):
        self.documents.clear()
        self.files.clear()
        self.user = {}
        self.user_id = None
        logger.info("Closed storage scopes")

    def documents_for(self, domain: Union[str, Scope, None] = None) -> ScopedDocumentStore:
        scope = scope_from_domain(domain)
        if scope not in self.documents:
            raise SessionExpiredError("No signed-in user, sign in to continue")
        return self.documents[scope]

    def files_for(self, domain: Union[str, Scope, None] = None) -> TrackedObjectStore:
        scope = scope_from_domain(domain)
        if scope not in self.files:
            raise SessionExpiredError("No signed-in user, sign in to continue")
        return self.files[scope]
