#!/usr/bin/env python3

import getpass
import json
import logging
import os
import threading
import uuid
from typing import Dict, Any, Optional

from cryptography.fernet import Fernet, InvalidToken
import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from models import StoredCredential

logger = logging.getLogger(__name__)

CREDENTIAL_KEY = "credential"
MACHINE_ID_FILES = ("/etc/machine-id", "/var/lib/dbus/machine-id")


def default_app_context(app_name: str = "firebase-desk-bridge") -> str:
    """Keychain service name: one per application and local user"""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "default"
    return f"{app_name}_{user}"


def machine_id() -> str:
    """Stable identifier of this machine"""
    for path in MACHINE_ID_FILES:
        try:
            with open(path, "r") as f:
                value = f.read().strip()
            if value:
                return value
        except OSError:
            continue
    return f"{uuid.getnode():012x}"


class KeyChain:
    """The OS credential store through keyring: (service, account) -> password"""

    def get_password(self, service: str, account: str) -> Optional[str]:
        return keyring.get_password(service, account)

    def set_password(self, service: str, account: str, password: str):
        keyring.set_password(service, account, password)

    def delete_password(self, service: str, account: str) -> bool:
        try:
            keyring.delete_password(service, account)
        except PasswordDeleteError:
            return False
        return True


class SecretStore:
    """
    Encrypted local key/value store for secrets such as the stored credential.

    The encryption key is created on first use and kept in the keychain under
    (app_context, machine id); once written it is never replaced, otherwise
    the stored secrets could no longer be read.
    """

    def __init__(
        self,
        data_dir: str,
        app_context: Optional[str] = None,
        keychain: Optional[KeyChain] = None,
        machine: Optional[str] = None,
    ):
        self.data_dir = data_dir
        self.app_context = app_context or default_app_context()
        self.keychain = keychain or KeyChain()
        self.machine = machine or machine_id()
        self.path = os.path.join(data_dir, f"{self.app_context}.secrets")
        self._fernet: Optional[Fernet] = None
        self._lock = threading.Lock()

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            try:
                key = self.keychain.get_password(self.app_context, self.machine)
                if not key:
                    key = Fernet.generate_key().decode("ascii")
                    self.keychain.set_password(self.app_context, self.machine, key)
                    logger.info(f"Created secret store key for {self.app_context}")
            except KeyringError as e:
                logger.error(f"❌ No usable keychain for the secret store key: {e}")
                raise
            self._fernet = Fernet(key.encode("ascii"))
        return self._fernet

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "rb") as f:
                token = f.read()
            return json.loads(self._cipher().decrypt(token).decode("utf-8"))
        except InvalidToken:
            logger.error(f"Secret store {self.path} cannot be decrypted with this machine's key")
            return {}
        except (OSError, ValueError) as e:
            logger.error(f"Error loading secret store {self.path}: {e}")
            return {}

    def _save(self, data: Dict[str, Any]):
        token = self._cipher().encrypt(json.dumps(data).encode("utf-8"))
        os.makedirs(self.data_dir, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(token)

    def get_secret(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def set_secret(self, key: str, value: Any):
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def remove_secret(self, key: str):
        """Remove key if present"""
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)

    def cleanup(self):
        """Forget the encryption key and the secrets file, e.g. before uninstall"""
        with self._lock:
            self.keychain.delete_password(self.app_context, self.machine)
            if os.path.exists(self.path):
                os.remove(self.path)
            self._fernet = None
        logger.info(f"Secret store for {self.app_context} cleaned up")

    def load_credential(self) -> Optional[StoredCredential]:
        data = self.get_secret(CREDENTIAL_KEY)
        if not data:
            return None
        try:
            return StoredCredential.from_dict(data)
        except ValueError as e:
            logger.warning(f"Ignoring unusable stored credential: {e}")
            return None

    def save_credential(self, credential: StoredCredential):
        self.set_secret(CREDENTIAL_KEY, credential.to_dict())

    def delete_credential(self):
        self.remove_secret(CREDENTIAL_KEY)
