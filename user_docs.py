#!/usr/bin/env python3

import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from errors import BackendError
from models import Scope, utc_now_iso
from session_context import SessionContext

logger = logging.getLogger(__name__)

ABOUTME_FOLDER = "aboutme"


def _login_time(value: Any) -> Optional[str]:
    """Login page timestamps come as epoch milliseconds in a string"""
    if value in (None, ""):
        return None
    try:
        stamp = datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return str(value)
    return stamp.isoformat().replace("+00:00", "Z")


def make_user_documents(user: Dict[str, Any], context: SessionContext) -> Optional[Dict[str, Dict[str, Any]]]:
    """Build the aboutme documents for a user; None if the user lacks uid or displayName"""
    if not user or not user.get("uid") or not user.get("displayName"):
        return None

    now = utc_now_iso()
    metadata = user.get("metadata") or {}

    profile = dict(user.get("profile") or {})
    profile.setdefault("email", user.get("email"))
    profile.setdefault("picture", user.get("photoURL"))

    provider_data = user.get("providerData") or [{}]
    provider = dict(provider_data[0] if isinstance(provider_data[0], dict) else {})
    provider.setdefault("displayName", user.get("displayName"))
    provider.setdefault("email", user.get("email"))
    provider.setdefault("phoneNumber", user.get("phoneNumber"))
    provider.setdefault("photoURL", user.get("photoURL"))

    account = {
        "uid": user["uid"],
        "name": user["displayName"],
        "photo": user.get("photoURL"),
        "email": user.get("email"),
        "created": metadata.get("creationTime") or _login_time(user.get("createdAt")),
        "accessed": now,
    }

    config = context.config
    session = {
        "uid": user["uid"],
        "apiKey": config.api_key,
        "project": config.project_id,
        "domain": config.auth_domain,
        "authenticated": metadata.get("lastSignInTime") or _login_time(user.get("lastLoginAt")),
        "start": now,
    }

    return {"profile": profile, "provider": provider, "account": account, "session": session}


async def update_user_docs(context: SessionContext) -> bool:
    """
    Seed the user's aboutme documents the first time they sign in.

    Returns:
        True if the documents were written
    """
    documents = make_user_documents(context.user, context)
    if documents is None:
        logger.info("Signed-in user has no display name, skipping aboutme documents")
        return False

    store = context.documents_for(Scope.USER)
    existing = await store.about(f"{ABOUTME_FOLDER}/profile")
    if existing.exists:
        return False

    try:
        for name, contents in documents.items():
            await store.write(f"{ABOUTME_FOLDER}/{name}", contents)
    except BackendError as e:
        logger.error(f"Error writing aboutme documents: {e}")
        return False

    logger.info(f"Created aboutme documents for {context.user.get('displayName')}")
    return True
