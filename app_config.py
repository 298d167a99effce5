#!/usr/bin/env python3

import os
import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Any

from models import PUBLIC_PROJECT_ID

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "bridge.toml"

# Environment variable -> config key
ENV_OVERRIDES = {
    "FIREBASE_PROJECT_ID": "project_id",
    "FIREBASE_API_KEY": "api_key",
    "FIREBASE_STORAGE_BUCKET": "storage_bucket",
    "BRIDGE_DATA_DIR": "data_dir",
    "BRIDGE_PORT": "port",
    "BRIDGE_SECRET": "bridge_secret",
}


@dataclass(frozen=True)
class AppConfig:
    """Process-wide configuration, loaded once at startup"""

    project_id: str = ""
    api_key: str = ""
    storage_bucket: str = ""
    auth_domain: str = ""
    host_url: str = ""
    port: int = 3303
    providers: List[str] = field(default_factory=lambda: ["google.com"])
    logout: Dict[str, str] = field(default_factory=dict)
    tls_cert_file: Optional[str] = None
    tls_key_file: Optional[str] = None
    data_dir: str = "./data"
    bridge_secret: Optional[str] = None
    auto_refresh: bool = True
    refresh_retry_base: float = 0.5
    request_timeout: float = 30.0
    debug: bool = False

    def __post_init__(self):
        """Validate the configuration and fill derived defaults"""
        if not self.project_id:
            raise ValueError("project_id is required")
        if self.project_id == PUBLIC_PROJECT_ID:
            raise ValueError(f"project_id cannot be '{PUBLIC_PROJECT_ID}', it is reserved for the public scope")
        if not self.api_key:
            raise ValueError("api_key is required")
        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}")
        if self.refresh_retry_base < 0:
            raise ValueError("refresh_retry_base cannot be negative")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if bool(self.tls_cert_file) != bool(self.tls_key_file):
            raise ValueError("tls_cert_file and tls_key_file must be set together")
        if not isinstance(self.providers, list):
            raise ValueError("providers must be a list of provider ids")

        # frozen dataclass, so derived defaults go through object.__setattr__
        if not self.storage_bucket:
            object.__setattr__(self, "storage_bucket", f"{self.project_id}.appspot.com")
        if not self.auth_domain:
            object.__setattr__(self, "auth_domain", f"{self.project_id}.firebaseapp.com")
        if not self.host_url:
            scheme = "https" if self.tls_cert_file else "http"
            object.__setattr__(self, "host_url", f"{scheme}://localhost:{self.port}")

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert_file and self.tls_key_file)

    def logout_url(self, provider_id: Optional[str]) -> Optional[str]:
        if not provider_id:
            return None
        return self.logout.get(provider_id)

    def firebase_config(self) -> Dict[str, Any]:
        """Client configuration handed to the login page"""
        return {
            "apiKey": self.api_key,
            "authDomain": self.auth_domain,
            "projectId": self.project_id,
            "storageBucket": self.storage_bucket,
            "providers": list(self.providers),
        }


def load_config(config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> AppConfig:
    """
    Load configuration from a TOML file, then apply environment overrides.

    Args:
        config_file: Path to the TOML file; defaults to bridge.toml, which may be absent
        environ: Environment mapping, os.environ by default
    """
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    config_path = Path(config_file or DEFAULT_CONFIG_FILE)
    if config_path.exists():
        with open(config_path, "rb") as f:
            values = tomllib.load(f)
        logger.info(f"Loaded configuration from {config_path}")
    elif config_file:
        raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        logger.info(f"Config file not found: {config_path}, using environment only")

    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            values[key] = value

    if "port" in values:
        try:
            values["port"] = int(values["port"])
        except (TypeError, ValueError):
            raise ValueError(f"Invalid port: {values['port']}")

    known = set(AppConfig.__dataclass_fields__)
    unknown = sorted(set(values) - known)
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")

    return AppConfig(**{key: value for key, value in values.items() if key in known})
